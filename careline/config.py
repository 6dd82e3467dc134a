"""
Configuration management with environment variable support and validation.

Design principles:
- One pydantic section per subsystem (scheduling, notifications, channels, storage)
- Validation at startup (fail fast)
- Off-line channels are optional: missing credentials disable a channel, they never crash startup
- Secure defaults (no credentials in code)
"""

import os
from functools import lru_cache
from typing import Literal, cast
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

# Load environment variables from .env file
load_dotenv()


class SchedulingConfig(BaseModel):
    """Medication schedule materialization and polling windows."""

    horizon_days: int = Field(
        default=7, gt=0, le=60, description="Days of instances materialized ahead of today"
    )
    reminder_lead_minutes: int = Field(
        default=15, gt=0, description="How far ahead of a dose the reminder fires"
    )
    grace_period_minutes: int = Field(
        default=30, gt=0, description="How long a dose may stay pending before auto-miss"
    )
    materialize_interval_seconds: float = Field(
        default=86400.0, gt=0.0, description="Interval between materializer passes"
    )
    reminder_interval_seconds: float = Field(
        default=60.0, gt=0.0, description="Interval between reminder polls"
    )
    escalation_interval_seconds: float = Field(
        default=60.0, gt=0.0, description="Interval between missed-dose escalation polls"
    )
    default_timezone: str = Field(
        default="UTC", description="Time zone used for definitions that do not carry one"
    )

    @field_validator("default_timezone")
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown time zone: {v}") from e
        return v


class NotificationConfig(BaseModel):
    """Fan-out behaviour shared by every channel."""

    channel_timeout_seconds: float = Field(
        default=10.0, gt=0.0, description="Upper bound for a single channel send"
    )


class VoiceChannelConfig(BaseModel):
    """Voice/text message channel (Twilio REST API)."""

    account_sid: str | None = Field(None, description="Twilio account SID")
    auth_token: str | None = Field(None, description="Twilio auth token")
    from_number: str | None = Field(None, description="Sender phone number in E.164")
    api_base_url: str = Field(default="https://api.twilio.com/2010-04-01")
    timeout_seconds: float = Field(default=8.0, gt=0.0)

    @field_validator("account_sid")
    def validate_account_sid(cls, v: str | None) -> str | None:
        if v and not v.startswith("AC"):
            raise ValueError("Twilio account SID must start with 'AC'")
        return v or None

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)


class EmailChannelConfig(BaseModel):
    """Electronic-mail channel (SMTP)."""

    smtp_host: str = Field(default="smtp.gmail.com")
    smtp_port: int = Field(default=587, gt=0, lt=65536)
    username: str | None = Field(None, description="SMTP user, also used as sender by default")
    password: str | None = Field(None, description="SMTP password")
    sender: str | None = Field(None, description="From address, defaults to username")
    start_tls: bool = Field(default=True)
    timeout_seconds: float = Field(default=8.0, gt=0.0)

    @property
    def is_configured(self) -> bool:
        return bool(self.username and self.password)

    @property
    def from_address(self) -> str | None:
        return self.sender or self.username


class DatabaseConfig(BaseModel):
    """Persistent store configuration."""

    url: str = Field(
        default="sqlite+aiosqlite:///./careline.db", description="SQLAlchemy async database URL"
    )
    echo: bool = Field(default=False, description="Log emitted SQL")

    @field_validator("url")
    def validate_async_driver(cls, v: str) -> str:
        if v.startswith("sqlite://"):
            raise ValueError("Database URL must use an async driver, e.g. sqlite+aiosqlite://")
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    scheduling: SchedulingConfig = Field(default_factory=SchedulingConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    voice: VoiceChannelConfig = Field(default_factory=VoiceChannelConfig)
    email: EmailChannelConfig = Field(default_factory=EmailChannelConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
        v = val.strip().upper()
        return cast(
            Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
        )

    def _parse_bool(val: str | None, default: bool) -> bool:
        if val is None:
            return default
        return val.strip().lower() in {"1", "true", "yes", "on"}

    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    scheduling_config = SchedulingConfig(
        horizon_days=int(os.getenv("SCHEDULE_HORIZON_DAYS", "7")),
        reminder_lead_minutes=int(os.getenv("REMINDER_LEAD_MINUTES", "15")),
        grace_period_minutes=int(os.getenv("GRACE_PERIOD_MINUTES", "30")),
        materialize_interval_seconds=float(os.getenv("MATERIALIZE_INTERVAL_SECONDS", "86400")),
        reminder_interval_seconds=float(os.getenv("REMINDER_INTERVAL_SECONDS", "60")),
        escalation_interval_seconds=float(os.getenv("ESCALATION_INTERVAL_SECONDS", "60")),
        default_timezone=os.getenv("DEFAULT_TIMEZONE", "UTC"),
    )

    notification_config = NotificationConfig(
        channel_timeout_seconds=float(os.getenv("CHANNEL_TIMEOUT_SECONDS", "10.0")),
    )

    # Twilio variable names match the ones the deployment already provisions
    voice_config = VoiceChannelConfig(
        account_sid=os.getenv("TWILIO_ACCOUNT_SID") or None,
        auth_token=os.getenv("TWILIO_AUTH_TOKEN") or None,
        from_number=os.getenv("TWILIO_PHONE_NUMBER") or None,
    )

    email_config = EmailChannelConfig(
        smtp_host=os.getenv("SMTP_HOST", "smtp.gmail.com"),
        smtp_port=int(os.getenv("SMTP_PORT", "587")),
        username=os.getenv("SMTP_USER") or None,
        password=os.getenv("SMTP_PASS") or None,
        sender=os.getenv("SMTP_SENDER") or None,
        start_tls=_parse_bool(os.getenv("SMTP_STARTTLS"), True),
    )

    database_config = DatabaseConfig(
        url=os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./careline.db"),
        echo=_parse_bool(os.getenv("DATABASE_ECHO"), False),
    )

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        scheduling=scheduling_config,
        notifications=notification_config,
        voice=voice_config,
        email=email_config,
        database=database_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


def reset_config_cache() -> None:
    """Drop the cached configuration so the next get_config() re-reads the environment."""
    get_config.cache_clear()


def validate_config() -> None:
    """Validate configuration at startup."""
    try:
        config = get_config()
        print(f"Configuration loaded for {config.environment} environment")

        if not config.voice.is_configured:
            print("Voice channel not configured - voice/text delivery will be skipped")

        if not config.email.is_configured:
            print("E-mail channel not configured - e-mail delivery will be skipped")

    except Exception as e:
        print(f"Configuration validation failed: {e}")
        raise


def print_config_summary() -> None:
    """Print configuration summary for debugging."""
    config = get_config()

    print("\nCONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level}")

    print("\nSCHEDULING")
    print(f"Horizon: {config.scheduling.horizon_days} days")
    print(f"Reminder Lead: {config.scheduling.reminder_lead_minutes}m")
    print(f"Grace Period: {config.scheduling.grace_period_minutes}m")
    print(f"Default Time Zone: {config.scheduling.default_timezone}")

    print("\nCHANNELS")
    print(f"Voice: {'configured' if config.voice.is_configured else 'disabled'}")
    print(f"E-mail: {'configured' if config.email.is_configured else 'disabled'}")
    print(f"Channel Timeout: {config.notifications.channel_timeout_seconds}s")

    print("\nSTORAGE")
    print(f"Database: {config.database.url}")


if __name__ == "__main__":
    validate_config()
    print_config_summary()
