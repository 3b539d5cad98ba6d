"""Engine and query helpers shared by the POS services."""

from __future__ import annotations

from functools import lru_cache
from typing import Any

import pandas as pd
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.sql.elements import ClauseElement, TextClause

from .settings import AppSettings

SETTINGS = AppSettings.load()
DATABASE_URL = SETTINGS.database_url
POOL_SIZE = SETTINGS.db_pool_size
POOL_MAX_OVERFLOW = SETTINGS.db_pool_max_overflow


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    """Retourne le moteur SQLAlchemy, mis en cache via functools."""
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if not DATABASE_URL.startswith("sqlite"):
        # SQLite en mémoire/file -> pool par défaut.
        kwargs.update(
            {
                "pool_size": max(1, POOL_SIZE),
                "max_overflow": max(0, POOL_MAX_OVERFLOW),
            }
        )
    return create_engine(DATABASE_URL, **kwargs)


def _normalize_statement(sql: str | ClauseElement) -> ClauseElement:
    if isinstance(sql, str):
        return text(sql)
    if isinstance(sql, ClauseElement):
        return sql
    raise TypeError("sql must be a string or SQLAlchemy ClauseElement")


def query_df(sql: str | ClauseElement, params=None) -> pd.DataFrame:
    """Exécute une requête SELECT et retourne le résultat sous forme de DataFrame Pandas."""
    statement = _normalize_statement(sql)
    if params is not None and not isinstance(params, dict):
        raise TypeError("params must be a mapping when provided")

    bound_statement = statement.bindparams(**params) if params else statement

    with get_engine().begin() as conn:
        try:
            result = conn.execute(bound_statement)
        except TypeError:
            # Certains drivers exigent une chaîne brute : on recompile avec valeurs littérales.
            if not isinstance(bound_statement, TextClause):
                raise
            compiled = bound_statement.compile(compile_kwargs={"literal_binds": True})
            result = conn.exec_driver_sql(str(compiled))

        columns = list(result.keys())
        rows = result.fetchall()

    if not rows:
        return pd.DataFrame(columns=columns)
    return pd.DataFrame([tuple(row) for row in rows], columns=columns)


def supports_row_locks(conn: Connection) -> bool:
    """SQLite serialises writers itself and rejects ``FOR UPDATE``."""

    return conn.dialect.name not in {"sqlite"}


def for_update(conn: Connection) -> str:
    return " FOR UPDATE" if supports_row_locks(conn) else ""


def fetch_one(conn: Connection, sql: str, params: dict[str, Any] | None = None) -> dict[str, Any] | None:
    row = conn.execute(text(sql), params or {}).fetchone()
    return dict(row._mapping) if row else None


def fetch_all(conn: Connection, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
    return [dict(row._mapping) for row in conn.execute(text(sql), params or {})]


__all__ = [
    "get_engine",
    "query_df",
    "supports_row_locks",
    "for_update",
    "fetch_one",
    "fetch_all",
]
