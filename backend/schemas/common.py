"""Enveloppe de réponse commune à tous les endpoints POS."""

from __future__ import annotations

from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    success: bool = True
    data: T


class ApiError(BaseModel):
    success: bool = False
    error: str
    message: str
    details: Optional[Any] = None
