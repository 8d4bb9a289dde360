# /covima/config/settings.py

import sys
from typing import List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017/covima"
    max_pool_size: int = 10
    min_pool_size: int = 1
    mongo_ssl: bool = False

    # Redis (live attendance events)
    redis_url: str = "redis://localhost:6379"
    attendance_event_channel: str = "asistencia:nueva"

    # Intent classification
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    openai_temperature: float = 0.1
    openai_max_tokens: int = 500

    # Messaging provider: "whatsapp" talks to the Cloud API directly,
    # "chatwoot" goes through an agent-bot inbox.
    messaging_provider: str = "whatsapp"

    # WhatsApp Cloud API
    whatsapp_token: str | None = None
    whatsapp_phone_number_id: str | None = None
    whatsapp_verify_token: str = "covima_verify_token"
    whatsapp_app_secret: str | None = None
    whatsapp_api_url: str = "https://graph.facebook.com/v18.0"
    whatsapp_template_language: str = "es_PE"

    # Chatwoot
    chatwoot_base_url: str | None = None
    chatwoot_api_token: str | None = None
    chatwoot_account_id: int | None = None
    chatwoot_inbox_id: int | None = None

    # Bot behaviour
    timezone: str = "America/Lima"
    default_country_code: str = "51"
    typing_min_ms: int = 800
    typing_max_ms: int = 2500
    typing_ms_per_char: int = 40
    batch_pause_ms: int = 500

    # Deployment
    workers: int = 2
    environment: str = Field(default="production", env="ENVIRONMENT")
    cors_allowed_origins: List[str] = Field(default=["http://localhost:5173"])
    api_key: str | None = None

    # App Metadata & Limits
    api_version: str = "v1"
    rate_limit_per_minute: int = 100

    # ---------------- Validators ---------------- #

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def parse_cors_allowed_origins(cls, v):
        """Accept a comma-separated string as well as a list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("messaging_provider")
    @classmethod
    def provider_must_be_known(cls, v):
        v = v.strip().lower()
        if v not in ("whatsapp", "chatwoot"):
            raise ValueError("MESSAGING_PROVIDER must be 'whatsapp' or 'chatwoot'")
        return v

    @field_validator("typing_min_ms", "typing_max_ms", "typing_ms_per_char", "batch_pause_ms")
    @classmethod
    def pacing_must_be_non_negative(cls, v):
        if v < 0:
            raise ValueError("Pacing values must be non-negative")
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


def validate_environment(settings_obj: Settings):
    try:
        if settings_obj.typing_min_ms > settings_obj.typing_max_ms:
            raise ValueError("TYPING_MIN_MS cannot be greater than TYPING_MAX_MS")

        if settings_obj.environment == "production":
            required = ["mongo_uri", "whatsapp_verify_token"]
            if settings_obj.messaging_provider == "whatsapp":
                required += ["whatsapp_token", "whatsapp_phone_number_id"]
            else:
                required += ["chatwoot_base_url", "chatwoot_api_token", "chatwoot_account_id"]
            for var in required:
                if not getattr(settings_obj, var):
                    raise ValueError(f"{var.upper()} is required in production")

        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}")
        sys.exit(1)


settings = Settings()
validate_environment(settings)
