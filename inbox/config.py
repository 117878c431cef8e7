from functools import lru_cache
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Bare Postgres schemes select psycopg2; the postgres extra ships psycopg 3
POSTGRES_SCHEMES = ("postgresql://", "postgres://")
POSTGRES_DRIVER_SCHEME = "postgresql+psycopg://"


class Settings(BaseSettings):
    """
    Inbox configuration from environment variables (and `.env` when present).
    Every key has a default; an empty environment runs volatile-only with
    the dashboard open, which is what local development needs.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Durable storage - empty means in-memory (volatile) mode only
    DATABASE_URL: str = ""
    DB_CONNECT_TIMEOUT_SECONDS: float = 8.0

    LOG_LEVEL: str = "INFO"

    # Webhook security. Signature check is skipped when META_APP_SECRET is empty.
    META_APP_SECRET: str = ""
    WHATSAPP_VERIFY_TOKEN: str = ""

    # Outbound WhatsApp Cloud API
    WHATSAPP_TOKEN: str = ""
    WHATSAPP_PHONE_NUMBER_ID: str = ""
    WHATSAPP_API_VERSION: str = "v20.0"
    WHATSAPP_API_BASE: str = "https://graph.facebook.com"
    SEND_TIMEOUT_SECONDS: float = 15.0

    # Dashboard auth - empty means open mode
    ADMIN_TOKEN: str = ""

    @field_validator("DATABASE_URL")
    @classmethod
    def use_psycopg_driver(cls, v: str) -> str:
        v = v.strip()
        for scheme in POSTGRES_SCHEMES:
            if v.startswith(scheme):
                return POSTGRES_DRIVER_SCHEME + v[len(scheme):]
        return v

    @property
    def want_durable(self) -> bool:
        return bool(self.DATABASE_URL.strip())


@lru_cache()
def get_settings() -> Settings:
    """Process-wide settings; tests call `get_settings.cache_clear()` or pass Settings explicitly."""
    return Settings()
