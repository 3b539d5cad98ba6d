"""Configuration centralisée (backend core) avec validation minimale."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from urllib.parse import quote_plus

from dotenv import load_dotenv


load_dotenv()


def _bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _get_env(name: str) -> str | None:
    """Return the environment variable when it is a non-empty string."""

    value = os.getenv(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _split_env(name: str) -> list[str]:
    raw = os.getenv(name) or ""
    return [entry.strip() for entry in raw.split(",") if entry.strip()]


def get_database_url() -> str:
    """Build a SQLAlchemy compatible DATABASE_URL.

    Priority order:

    1. ``DATABASE_URL`` (already complete connection string).
    2. Individual ``POSTGRES_*`` / ``DB_*`` environment variables.
    3. Local defaults.
    """

    explicit_url = _get_env("DATABASE_URL")
    if explicit_url:
        return explicit_url

    user = _get_env("POSTGRES_USER") or "postgres"
    password = _get_env("POSTGRES_PASSWORD")
    database = _get_env("POSTGRES_DB") or _get_env("DB_NAME") or "restaurant_pos"
    host = _get_env("DB_HOST") or _get_env("POSTGRES_HOST") or "localhost"
    port = _get_env("DB_PORT") or _get_env("POSTGRES_PORT") or "5432"

    auth_part = quote_plus(user)
    if password is not None:
        auth_part = f"{auth_part}:{quote_plus(password)}"
    return f"postgresql+psycopg2://{auth_part}@{host}:{port}/{database}"


@dataclass(frozen=True)
class GatewaySettings:
    base_url: str = "https://sandbox.monnify.com"
    api_key: str = ""
    secret_key: str = ""
    contract_code: str = ""
    currency: str = "NGN"
    timeout_seconds: float = 15.0
    max_retries: int = 2


@dataclass(frozen=True)
class AppSettings:
    app_env: str = os.getenv("APP_ENV", os.getenv("ENV", "development")).lower()
    database_url: str = ""
    db_pool_size: int = int(os.getenv("DB_POOL_SIZE", "10"))
    db_pool_max_overflow: int = int(os.getenv("DB_POOL_MAX_OVERFLOW", "20"))
    cors_allowed_origins: list[str] = field(default_factory=list)
    jwt_secret_keys: list[str] = field(default_factory=list)
    app_base_url: str = "http://localhost:3000"
    fee_settings_ttl_seconds: float = 60.0
    events_enabled: bool = True
    gateway: GatewaySettings = field(default_factory=GatewaySettings)

    @staticmethod
    def load() -> "AppSettings":
        jwt_keys = _split_env("JWT_SECRET_KEYS") or _split_env("JWT_SECRET_KEY")
        gateway = GatewaySettings(
            base_url=(_get_env("MONNIFY_BASE_URL") or GatewaySettings.base_url).rstrip("/"),
            api_key=_get_env("MONNIFY_API_KEY") or "",
            secret_key=_get_env("MONNIFY_SECRET_KEY") or "",
            contract_code=_get_env("MONNIFY_CONTRACT_CODE") or "",
            currency=_get_env("PAYMENT_CURRENCY") or "NGN",
            timeout_seconds=float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "15")),
            max_retries=max(0, int(os.getenv("GATEWAY_MAX_RETRIES", "2"))),
        )
        return AppSettings(
            database_url=get_database_url(),
            cors_allowed_origins=_split_env("CORS_ALLOWED_ORIGINS"),
            jwt_secret_keys=jwt_keys,
            app_base_url=(_get_env("APP_BASE_URL") or "http://localhost:3000").rstrip("/"),
            fee_settings_ttl_seconds=float(os.getenv("FEE_SETTINGS_TTL_SECONDS", "60")),
            events_enabled=_bool_env("POS_EVENTS_ENABLED", True),
            gateway=gateway,
        )
