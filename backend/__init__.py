"""Backend package exposing the restaurant POS FastAPI application."""

import os

if os.getenv("SKIP_BACKEND_APP"):
    app = None
else:
    from .main import app  # type: ignore[import]

__all__ = ["app"]
