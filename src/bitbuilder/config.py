"""Configuration management for Bit Builder."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError
from .logging_utils import LogProfile, configure_logging

DEFAULT_CONVAI_URL = "wss://api.elevenlabs.io/v1/convai/conversation"


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="BITBUILDER_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Hosted backend
    project_id: str | None = Field(None, description="Cloud project hosting the callables and the document store")
    functions_region: str = Field(default="us-central1", description="Region of the callable functions")
    functions_base_url: str | None = Field(None, description="Override for the callable endpoint root")
    firebase_api_key: str | None = Field(None, description="Web API key used for password sign-in")

    # Conversational agent
    agent_id: str | None = Field(None, description="Public agent identifier for unsigned duplex connections")
    convai_url: str = Field(default=DEFAULT_CONVAI_URL, description="Duplex streaming endpoint")
    language: str = Field(default="en", description="Conversation language sent in the session config")
    system_prompt: str | None = Field(None, description="Prompt override sent when a duplex session opens")

    # Timers
    connect_timeout_seconds: float = Field(default=10.0, description="Wait for the first usable frame")
    response_timeout_seconds: float = Field(default=30.0, description="Wait for the first agent chunk after a send")
    turn_idle_timeout_seconds: float = Field(default=3.0, description="Force-finalize a silent streaming turn")
    keepalive_deadline_seconds: float = Field(default=5.0, description="Deadline for answering a ping")
    signed_url_refresh_seconds: float = Field(default=600.0, description="Signed URL refresh period")
    request_timeout_seconds: float = Field(default=30.0, description="HTTP timeout for callables")
    auth_wait_seconds: float = Field(default=5.0, description="Wait for the identity at startup")
    jokes_wait_seconds: float = Field(default=2.0, description="Wait for the first saved-jokes snapshot")
    widget_poll_interval_seconds: float = Field(default=0.3, description="Widget registration poll interval")
    widget_poll_attempts: int = Field(default=50, description="Widget registration poll attempts")

    # Local state
    drafts_path: Path = Field(default=Path(".bitbuilder/drafts.json"), description="Draft notes file")
    drafts_debounce_seconds: float = Field(default=0.5, description="Debounce window for draft writes")

    # Logging
    log_level: str = Field(default="INFO", description="Log level")

    def callable_base_url(self) -> str:
        """Root URL under which callables are addressed by name."""
        if self.functions_base_url:
            return self.functions_base_url.rstrip("/")
        if not self.project_id:
            raise ConfigurationError("BITBUILDER_PROJECT_ID or BITBUILDER_FUNCTIONS_BASE_URL must be set")
        return f"https://{self.functions_region}-{self.project_id}.cloudfunctions.net"


def get_settings(*, profile: LogProfile = "default", **overrides: object) -> Settings:
    """Get application settings and configure logging for the process."""
    settings = Settings(**overrides)  # type: ignore[arg-type]
    configure_logging(profile=profile, level=settings.log_level)
    return settings
