"""Centralized application settings using Pydantic BaseSettings.

Single import point for configuration instead of scattering `os.getenv`
calls across the codebase. Business constants (fee defaults excepted, those
live in the `config` collection) are exposed here so tests can override them
through the environment.
"""
from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
import os


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    app_name: str = "NaksYetu Backend"
    environment: str = Field("development", alias="ENVIRONMENT")
    debug: bool = False

    # Database
    mongo_uri: str = Field("mongodb://mongo:27017/naksyetu", alias="MONGO_URI")
    mongo_db: str = Field("naksyetu", alias="MONGO_DB")

    # Auth / Security
    jwt_secret: str = Field("", alias="JWT_SECRET")
    token_pepper: str = Field("", alias="TOKEN_PEPPER")
    access_token_minutes: int = Field(60, alias="ACCESS_TOKEN_EXPIRES_MINUTES")

    # Email / SMTP
    smtp_host: Optional[str] = Field(None, alias="SMTP_HOST")
    smtp_port: Optional[int] = Field(None, alias="SMTP_PORT")
    smtp_user: Optional[str] = Field(None, alias="SMTP_USER")
    smtp_pass: Optional[str] = Field(None, alias="SMTP_PASS")
    smtp_from: str = Field("noreply@naksyetu.com", alias="SMTP_FROM_ADDRESS")
    smtp_use_tls: bool = Field(True, alias="SMTP_USE_TLS")
    smtp_timeout_seconds: int = Field(10, alias="SMTP_TIMEOUT_SECONDS")
    smtp_max_retries: int = Field(2, alias="SMTP_MAX_RETRIES")

    # URLs / CORS
    app_base_url: str = Field("http://localhost:3000", alias="APP_BASE_URL")
    allowed_origins: str = Field("*", alias="ALLOWED_ORIGINS")
    cors_allow_credentials: bool = Field(True, alias="CORS_ALLOW_CREDENTIALS")

    # M-Pesa (Daraja)
    mpesa_consumer_key: Optional[str] = Field(None, alias="MPESA_CONSUMER_KEY")
    mpesa_consumer_secret: Optional[str] = Field(None, alias="MPESA_CONSUMER_SECRET")
    mpesa_shortcode: Optional[str] = Field(None, alias="MPESA_SHORTCODE")
    mpesa_passkey: Optional[str] = Field(None, alias="MPESA_PASSKEY")
    mpesa_env: str = Field("sandbox", alias="MPESA_ENV")
    mpesa_callback_secret: str = Field("", alias="MPESA_CALLBACK_SECRET")

    # Admin assistant (Gemini)
    gemini_api_key: Optional[str] = Field(None, alias="GEMINI_API_KEY")
    gemini_model: str = Field("gemini-2.0-flash", alias="GEMINI_MODEL")

    # Features & Flags
    enforce_https: bool = Field(True, alias="ENFORCE_HTTPS")

    # Business constants
    invitation_ttl_hours: int = Field(24, alias="INVITATION_TTL_HOURS")
    short_link_length: int = Field(6, alias="SHORT_LINK_LENGTH")
    short_link_max_attempts: int = Field(5, alias="SHORT_LINK_MAX_ATTEMPTS")
    recent_order_window_minutes: int = Field(3, alias="RECENT_ORDER_WINDOW_MINUTES")
    checkout_feedback_points: int = Field(50, alias="CHECKOUT_FEEDBACK_POINTS")
    tracker_cookie_name: str = Field("nak_tracker", alias="TRACKER_COOKIE_NAME")
    tracker_cookie_max_age: int = Field(86400, alias="TRACKER_COOKIE_MAX_AGE")


@lru_cache()
def get_settings() -> Settings:
    s = Settings()  # type: ignore[call-arg]

    # Production safety checks
    env = (s.environment or os.getenv('ENVIRONMENT', '')).lower()
    is_production = env in ('production', 'prod')
    if is_production:
        if not s.jwt_secret or s.jwt_secret in ('change-me', ''):
            raise RuntimeError('JWT_SECRET must be set to a secure value in production')
        if not s.allowed_origins or str(s.allowed_origins).strip() in ('*', ''):
            raise RuntimeError('ALLOWED_ORIGINS must be set to specific origins in production (no "*")')
        if s.mpesa_consumer_key and not s.mpesa_callback_secret:
            raise RuntimeError('MPESA_CALLBACK_SECRET must be set when MPESA_CONSUMER_KEY is present in production')

    return s


__all__ = ["Settings", "get_settings"]
