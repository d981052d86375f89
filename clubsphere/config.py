from __future__ import annotations

import base64
import binascii
import json
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Repository root
REPO_ROOT = Path(__file__).resolve().parent.parent


class ConfigError(Exception):
    """Raised when required settings are missing or malformed."""


class BaseConfig:
    """Base settings shared across environments."""

    CURRENCY = "usd"
    GATEWAY_TIMEOUT = 10
    CACHE_TTL = 3600
    DB_MAX_CONNECTIONS = 10


class ProductionConfig(BaseConfig):
    DB_NAME = "clubsphere_prod"


class TrialConfig(BaseConfig):
    DB_NAME = "clubsphere_trial"


class DevelopmentConfig(BaseConfig):
    DB_NAME = "clubsphere_dev"


_CONFIGS = {
    "production": ProductionConfig,
    "trial": TrialConfig,
    "development": DevelopmentConfig,
}

# Current active configuration determined by the ``APP_ENV`` environment
# variable. Defaults to development.
APP_ENV = os.getenv("APP_ENV", "development")
ActiveConfig = _CONFIGS.get(APP_ENV, DevelopmentConfig)


def get_database_url() -> str:
    """Return the configured database connection string."""
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    return f"sqlite:///{REPO_ROOT / (ActiveConfig.DB_NAME + '.db')}"


def get_db_max_connections() -> int:
    """Return the PostgreSQL connection pool size."""
    return int(os.getenv("DB_MAX_CONNECTIONS", str(ActiveConfig.DB_MAX_CONNECTIONS)))


def get_redis_url() -> str | None:
    """Return the Redis connection string if set."""
    return os.getenv("REDIS_URL")


def get_cache_ttl() -> int:
    """Return the signing key cache TTL in seconds."""
    return int(os.getenv("CACHE_TTL", str(ActiveConfig.CACHE_TTL)))


def get_gateway_timeout() -> float:
    """Return the payment gateway network timeout in seconds."""
    return float(os.getenv("GATEWAY_TIMEOUT", str(ActiveConfig.GATEWAY_TIMEOUT)))


def get_currency() -> str:
    return os.getenv("CURRENCY", ActiveConfig.CURRENCY).lower()


def get_stripe_secret() -> str:
    """Return the Stripe secret key."""
    return os.getenv("STRIPE_SECRET_KEY", "")


def get_site_domain() -> str:
    """Return the public site used to build checkout redirect URLs."""
    return os.getenv("SITE_DOMAIN", "").rstrip("/")


def get_firebase_service_key() -> str:
    """Return the base64 encoded Firebase service account JSON."""
    return os.getenv("FB_SERVICE_KEY", "")


def get_cors_origins() -> list[str]:
    raw = os.getenv("CORS_ORIGINS", "*")
    return [o.strip() for o in raw.split(",") if o.strip()]


def decode_service_account(encoded: str) -> dict:
    """Decode the base64 service account blob and return its JSON object."""
    if not encoded:
        raise ConfigError("FB_SERVICE_KEY is missing in environment variables")
    try:
        raw = base64.b64decode(encoded, validate=True).decode("utf-8")
        account = json.loads(raw)
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise ConfigError(f"FB_SERVICE_KEY is not valid base64 JSON: {exc}") from exc
    if not isinstance(account, dict) or not account.get("project_id"):
        raise ConfigError("FB_SERVICE_KEY has no project_id")
    return account


@dataclass
class Settings:
    """Validated runtime settings for the API process."""

    database_url: str
    stripe_secret: str
    site_domain: str
    firebase_project_id: str
    redis_url: str | None = None
    cache_ttl: int = BaseConfig.CACHE_TTL
    gateway_timeout: float = BaseConfig.GATEWAY_TIMEOUT
    currency: str = BaseConfig.CURRENCY
    cors_origins: tuple[str, ...] = ("*",)
    db_max_connections: int = BaseConfig.DB_MAX_CONNECTIONS


def load_settings() -> Settings:
    """Read settings from the environment, raising ``ConfigError`` when invalid."""
    stripe_secret = get_stripe_secret()
    if not stripe_secret:
        raise ConfigError("STRIPE_SECRET_KEY is missing in environment variables")
    if not stripe_secret.startswith(("sk_", "rk_")):
        raise ConfigError("STRIPE_SECRET_KEY does not look like a Stripe secret key")

    site_domain = get_site_domain()
    if not site_domain.startswith(("http://", "https://")):
        raise ConfigError("SITE_DOMAIN must be an http(s) URL")

    account = decode_service_account(get_firebase_service_key())

    try:
        cache_ttl = get_cache_ttl()
        timeout = get_gateway_timeout()
        db_max_connections = get_db_max_connections()
    except ValueError as exc:
        raise ConfigError(f"Invalid numeric setting: {exc}") from exc
    if timeout <= 0:
        raise ConfigError("GATEWAY_TIMEOUT must be positive")
    if db_max_connections <= 0:
        raise ConfigError("DB_MAX_CONNECTIONS must be positive")

    return Settings(
        database_url=get_database_url(),
        stripe_secret=stripe_secret,
        site_domain=site_domain,
        firebase_project_id=account["project_id"],
        redis_url=get_redis_url(),
        cache_ttl=cache_ttl,
        gateway_timeout=timeout,
        currency=get_currency(),
        cors_origins=tuple(get_cors_origins()),
        db_max_connections=db_max_connections,
    )


__all__ = [
    "ConfigError",
    "Settings",
    "load_settings",
    "decode_service_account",
    "get_database_url",
    "get_db_max_connections",
    "get_redis_url",
    "get_cache_ttl",
    "get_gateway_timeout",
    "get_currency",
    "get_stripe_secret",
    "get_site_domain",
    "get_firebase_service_key",
    "get_cors_origins",
]
