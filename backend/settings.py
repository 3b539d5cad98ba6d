"""Configuration applicative backend (API FastAPI) basée sur core.settings.AppSettings."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields

from core.settings import AppSettings as CoreSettings


@dataclass(frozen=True)
class Settings(CoreSettings):
    allow_insecure_jwt_default: bool = False
    log_level: str = "INFO"

    @staticmethod
    def load() -> "Settings":
        core = CoreSettings.load()
        allow_insecure = (
            os.getenv("ALLOW_INSECURE_JWT_DEFAULT", "").strip().lower() in {"1", "true", "yes", "on"}
            or core.app_env in {"development", "dev", "test"}
        )
        return Settings(
            **{field.name: getattr(core, field.name) for field in fields(CoreSettings)},
            allow_insecure_jwt_default=allow_insecure,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
