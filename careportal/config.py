# careportal/config.py - Portal configuration management
from dotenv import load_dotenv

load_dotenv()
from typing import Union
from functools import lru_cache
from zoneinfo import ZoneInfo

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator, model_validator


class Settings(BaseSettings):
    """Portal settings with validation and environment variable support"""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="allow",
        case_sensitive=False,
        populate_by_name=True,
    )

    # Application
    app_name: str = "CarePortal"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # Database
    database_url: str = Field(..., alias="DATABASE_URL")

    # Security (tokens are issued by the external auth provider, we only verify them)
    secret_key: str = Field(..., alias="SECRET_KEY")
    algorithm: str = Field(default="HS256", alias="ALGORITHM")

    # CORS
    cors_origins: Union[str, list[str]] = Field(default=["http://localhost:5173", "http://localhost:8000"], alias="CORS_ORIGINS")

    # Scheduling
    clinic_timezone: str = Field(default="Asia/Kolkata", alias="CLINIC_TIMEZONE")
    business_open_hour: int = Field(default=8, alias="BUSINESS_OPEN_HOUR")
    business_close_hour: int = Field(default=20, alias="BUSINESS_CLOSE_HOUR")
    slot_granularity_minutes: int = Field(default=30, alias="SLOT_GRANULARITY_MINUTES")
    default_appointment_minutes: int = Field(default=30, alias="DEFAULT_APPOINTMENT_MINUTES")

    # Consent
    default_consent_duration_days: int = Field(default=7, alias="DEFAULT_CONSENT_DURATION_DAYS")
    legacy_consent_duration_days: int = Field(default=30, alias="LEGACY_CONSENT_DURATION_DAYS")
    consent_extension_days: int = Field(default=30, alias="CONSENT_EXTENSION_DAYS")
    grant_revoke_max_attempts: int = Field(default=3, alias="GRANT_REVOKE_MAX_ATTEMPTS")

    # Disclosure
    redaction_token: str = Field(default="[REDACTED]", alias="REDACTION_TOKEN")

    # --- Validators ---
    @field_validator("cors_origins", mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            if not v.strip():
                return ["http://localhost:5173", "http://localhost:8000"]
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        if not v.startswith(("postgresql://", "postgresql+psycopg2://", "sqlite://")):
            raise ValueError("DATABASE_URL must be a valid PostgreSQL or SQLite URL")
        return v

    @field_validator("secret_key")
    @classmethod
    def validate_key_length(cls, v):
        if not v or len(v) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters long")
        return v

    @field_validator("clinic_timezone")
    @classmethod
    def validate_timezone(cls, v):
        try:
            ZoneInfo(v)
        except (KeyError, ValueError) as exc:
            raise ValueError(f"Unknown CLINIC_TIMEZONE: {v}") from exc
        return v

    @field_validator("slot_granularity_minutes", "default_appointment_minutes",
                     "default_consent_duration_days", "legacy_consent_duration_days",
                     "consent_extension_days", "grant_revoke_max_attempts")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("value must be a positive integer")
        return v

    @model_validator(mode="after")
    def validate_business_hours(self):
        if not 0 <= self.business_open_hour < self.business_close_hour <= 24:
            raise ValueError("BUSINESS_OPEN_HOUR must be before BUSINESS_CLOSE_HOUR (0-24)")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"

    @property
    def clinic_tz(self) -> ZoneInfo:
        return ZoneInfo(self.clinic_timezone)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()

# Note: Do not instantiate settings at import time to avoid failing
# on missing environment variables. Use `get_settings()` instead.
