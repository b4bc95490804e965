"""Application configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[2]


def normalize_partition_key(raw: str) -> str:
    """Return the canonical form of a partition key.

    City names compare case-insensitively; CRM webhooks sometimes append an
    underscore to the city in query strings (``astana_``), so underscores
    are dropped.
    """
    return raw.strip().casefold().replace("_", "")


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # CORS
    CORS_ALLOWED_ORIGINS: str = "*"

    # Monitoring
    SENTRY_DSN: str = ""

    # Bitrix24 inbound webhook, e.g. https://portal.bitrix24.kz/rest/1/abcdef
    CRM_WEBHOOK_URL: str = ""
    CRM_TIMEOUT: int = 30
    CRM_MAX_RETRIES: int = 3  # rate-limit retries only
    CRM_CITY_FIELD_TITLE: str = "Город"
    CRM_DEAL_TZ_OFFSET: str = "+03:00"
    CRM_WEDDING_DATE_LABEL: str = "Дата свадьбы"
    CRM_PREPAYMENT_LABEL: str = "Сумма предоплаты"
    CRM_POSTPAYMENT_LABEL: str = "Постоплата"

    # Partition stores: one SQLite file per city under DATA_DIR/<city>/
    DATA_DIR: str = "data"
    PARTITIONS: str = "астана,караганда"
    ALEMBIC_SCRIPT_LOCATION: str = str(PROJECT_ROOT / "alembic")

    # Sync behaviour
    SYNC_TIMEOUT_SECONDS: int = 20 * 60
    DESCRIPTION_PLACEHOLDER: str = "Тут будет описание"
    DEFAULT_DEAL_STAGE: str = "NEW"
    EXCLUDED_DEAL_STAGE: str = "PREPAYMENT_INVOICE"
    QUANTITY_STORE_ID: int = 2

    def partition_keys(self) -> list[str]:
        """Return the configured partition keys, normalized and de-duplicated."""
        keys: list[str] = []
        for raw in self.PARTITIONS.split(","):
            if not raw.strip():
                continue
            key = normalize_partition_key(raw)
            if key not in keys:
                keys.append(key)
        return keys

    def partition_database_url(self, key: str) -> str:
        """Return the async SQLAlchemy URL for one partition's SQLite file."""
        path = Path(self.DATA_DIR) / key / "database.db"
        return f"sqlite+aiosqlite:///{path}"


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
