"""Évènements POS (cuisine, suivi client) et journal d'audit.

Les évènements sont émis après commit : un échec d'émission est journalisé puis
ignoré, il ne remet jamais en cause la transaction métier.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from core.data_repository import SETTINGS, get_engine
from backend.services.pos.utils import db_timestamp, dump_json, utcnow

LOGGER = logging.getLogger(__name__)


class EventSink(Protocol):
    def emit(self, event_type: str, payload: dict[str, Any]) -> None: ...


class DatabaseEventSink:
    """Journalise l'évènement et l'ajoute à la table ``pos_events``."""

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled

    def emit(self, event_type: str, payload: dict[str, Any]) -> None:
        LOGGER.info("POS event %s %s", event_type, payload)
        if not self.enabled:
            return
        try:
            with get_engine().begin() as conn:
                conn.execute(
                    text(
                        "INSERT INTO pos_events (event_type, payload, created_at) "
                        "VALUES (:event_type, :payload, :created_at)"
                    ),
                    {
                        "event_type": event_type,
                        "payload": dump_json(payload),
                        "created_at": db_timestamp(utcnow()),
                    },
                )
        except SQLAlchemyError as exc:
            LOGGER.warning("Unable to persist POS event %s: %s", event_type, exc)


DEFAULT_EVENT_SINK = DatabaseEventSink(enabled=SETTINGS.events_enabled)


def emit_safely(sink: EventSink | None, event_type: str, payload: dict[str, Any]) -> None:
    try:
        (sink or DEFAULT_EVENT_SINK).emit(event_type, payload)
    except Exception as exc:  # pragma: no cover - sink tiers
        LOGGER.warning("Event sink failed for %s: %s", event_type, exc)


def record_audit(
    conn: Connection,
    *,
    actor_id: int | None,
    action: str,
    resource: str,
    resource_id: int | str,
    details: dict[str, Any] | None = None,
) -> None:
    """Écrit l'entrée d'audit dans la transaction de l'appelant."""

    conn.execute(
        text(
            """
            INSERT INTO audit_logs (actor_id, action, resource, resource_id, details, created_at)
            VALUES (:actor_id, :action, :resource, :resource_id, :details, :created_at)
            """
        ),
        {
            "actor_id": actor_id,
            "action": action,
            "resource": resource,
            "resource_id": str(resource_id),
            "details": dump_json(details or {}),
            "created_at": db_timestamp(utcnow()),
        },
    )
