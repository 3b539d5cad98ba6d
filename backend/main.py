"""FastAPI application exposing orders, tabs, settlement and reports."""

from __future__ import annotations

import logging
from functools import lru_cache

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.errors import PosError
from backend.api import orders as orders_router
from backend.api import payments as payments_router
from backend.api import reports as reports_router
from backend.api import tabs as tabs_router
from backend.settings import Settings

logger = logging.getLogger(__name__)


def _load_allowed_origins(settings: Settings) -> list[str]:
    if settings.cors_allowed_origins:
        return settings.cors_allowed_origins
    # Front Next.js / Vite en développement
    return [
        "http://localhost:3000",
        "http://localhost:5173",
    ]


async def _pos_error_handler(_: Request, exc: PosError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error("%s: %s", exc.code, exc.message)
    return JSONResponse(
        status_code=exc.http_status,
        content={
            "success": False,
            "error": exc.code,
            "message": exc.message,
            "details": {key: str(value) for key, value in exc.details.items()} or None,
        },
    )


async def _request_validation_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error": "validation_error",
            "message": "Invalid request payload",
            "details": [
                {"loc": list(error.get("loc", ())), "msg": error.get("msg")}
                for error in exc.errors()
            ],
        },
    )


@lru_cache
def create_app() -> FastAPI:
    """Construit l'application FastAPI ainsi que tous les routeurs de domaine."""

    settings = Settings.load()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    app = FastAPI(
        title="Restaurant POS API",
        version="1.0.0",
        description="""
## Restaurant ordering and settlement API

- **Orders** : checkout, kitchen status transitions, cancellation and refunds
- **Tabs** : one running bill per table, checkout preparation, discounts
- **Payments** : gateway initialization, verification, webhooks, manual settlement
- **Reports** : profit and loss summary, expense ledger

### Authentication
Bearer JWT with roles `customer`, `staff`, `manager`, `admin`.
        """,
        openapi_tags=[
            {"name": "orders", "description": "Order lifecycle"},
            {"name": "tabs", "description": "Table tabs"},
            {"name": "payments", "description": "Settlement and gateway callbacks"},
            {"name": "reports", "description": "Financial reporting"},
        ],
        docs_url="/docs",
        redoc_url="/redoc",
    )

    allowed_origins = _load_allowed_origins(settings)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials="*" not in allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(PosError, _pos_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)

    app.include_router(orders_router.router)
    app.include_router(tabs_router.router)
    app.include_router(payments_router.router)
    app.include_router(reports_router.router)

    @app.get("/health")
    def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
