"""Application configuration."""
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Twilio
    twilio_account_sid: str
    twilio_auth_token: str
    twilio_phone_number: str
    validate_twilio_signature: bool = False

    # Database
    database_url: str

    # Signing key for webhook and API tokens
    webhook_secret: str
    webhook_token_max_age_seconds: int = 24 * 60 * 60
    api_token_max_age_seconds: int = 12 * 60 * 60

    # Public URL the provider calls back on (e.g. ngrok or Railway domain)
    base_url: str = ""

    # Dialer
    max_lines: int = 10
    conference_ttl_seconds: int = 10 * 60
    marker_ttl_seconds: int = 2 * 60 * 60
    marker_backend: Literal["database", "memory"] = "database"
    promotion_order: Literal["line_index", "hold_time"] = "line_index"
    admit_unknown_answers: bool = True
    cancel_ringing_on_human: bool = False
    agent_identity_template: str = "agent-{user_id}"

    # Call audio
    hold_message: str = "Please hold while we connect you."
    hold_music_url: str = (
        "http://com.twilio.sounds.music.s3.amazonaws.com/MARKOVICHAMP-Borghestral.mp3"
    )
    greeting_url: str = ""
    auto_record: bool = True

    # Background jobs
    job_workers: int = 2
    job_max_attempts: int = 3
    job_retry_delay_seconds: float = 1.0

    # Verification
    stale_ringing_minutes: int = 30
    stale_in_progress_minutes: int = 120

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


settings = Settings()
