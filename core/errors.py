"""Exceptions métier partagées par les services POS et le client de paiement."""

from __future__ import annotations


class PosError(Exception):
    """Exception de base : porte un code stable et le statut HTTP associé."""

    code = "pos_error"
    http_status = 400

    def __init__(self, message: str = "", **details: object) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details


class ValidationError(PosError):
    """Payload incomplet ou valeur hors bornes."""

    code = "validation_error"
    http_status = 422


class NotFoundError(PosError):
    code = "not_found"
    http_status = 404


class InvalidStateError(PosError):
    """L'entité n'est pas dans un état qui autorise l'opération."""

    code = "invalid_state"
    http_status = 409


class InvalidTransitionError(PosError):
    code = "invalid_transition"
    http_status = 409


class ConflictError(PosError):
    """Écriture concurrente perdue ou contrainte d'unicité violée."""

    code = "conflict"
    http_status = 409


class GatewayError(PosError):
    code = "gateway_error"
    http_status = 502


class UnauthorizedError(PosError):
    code = "unauthorized"
    http_status = 403


__all__ = [
    "PosError",
    "ValidationError",
    "NotFoundError",
    "InvalidStateError",
    "InvalidTransitionError",
    "ConflictError",
    "GatewayError",
    "UnauthorizedError",
]
