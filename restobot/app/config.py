from __future__ import annotations

from functools import lru_cache
from typing import List, Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central application configuration."""

    app_name: str = Field(default="Restaurant Query Assistant")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Tenant store
    store_backend: Literal["memory", "mongo"] = Field(default="memory")
    mongo_uri: str = Field(default="mongodb://localhost:27017")
    mongo_database: str = Field(default="restobot")
    mongo_use_transactions: bool = Field(default=False)

    # LLM
    gemini_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("GEMINI_API_KEY", "GOOGLE_API_KEY"),
    )
    gemini_model: str = Field(
        default="gemini-2.0-flash",
        validation_alias=AliasChoices("GEMINI_MODEL", "GEMINI_INTENT_MODEL"),
    )
    llm_timeout_seconds: float = Field(default=8.0, gt=0)
    classification_max_tokens: int = Field(default=20)
    classification_temperature: float = Field(default=0.1)
    generation_max_tokens: int = Field(default=500)
    generation_temperature: float = Field(default=0.1)
    synthesis_max_tokens: int = Field(default=150)
    synthesis_temperature: float = Field(default=0.3)
    llm_synthesis_enabled: bool = Field(default=True)

    # Restaurant defaults
    timezone: str = Field(default="UTC")
    currency_symbol: str = Field(default="₹")
    tax_rate: float = Field(default=0.18, ge=0)
    conversation_history_limit: int = Field(default=20, ge=0)

    # Usage metering
    usage_metering_enabled: bool = Field(default=True)
    usage_daily_limit: int = Field(default=5, ge=0)
    usage_ip_limit: int = Field(default=10, ge=0)

    allowed_origins: List[str] = Field(
        default_factory=list,
        validation_alias="ALLOWED_ORIGINS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
