"""Configuration schema using Pydantic settings.

Every field can come from the command line (see ``ccchat.cli``) or from a
``CCCHAT_<FIELD>`` environment variable; explicit arguments win.
"""

from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Config(BaseSettings):
    """Immutable runtime configuration, built once at startup."""

    model_config = SettingsConfigDict(
        env_prefix="CCCHAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Transport
    account: str = Field(..., min_length=1, description="Signal account number, e.g. +44...")
    allowed: str = Field("", description="Comma-separated allowed senders (defaults to the account)")
    api_url: str | None = Field(None, description="signal-cli REST API URL; unset runs signal-cli-api locally")
    port: int = Field(8080, ge=0, le=65535, description="Preferred port for the managed signal-cli-api")
    signal_api_binary: str = "signal-cli-api"
    tmp_dir: str = "/tmp/ccchat"

    # Backend
    model: str = "opus"
    max_budget: float = Field(5.0, gt=0, description="Max budget per message in USD")
    claude_binary: str = "claude"
    claude_workdir: str | None = None

    # Orchestration
    debounce_ms: int = Field(3000, ge=0)
    rate_limit_capacity: float | None = Field(None, ge=1)
    rate_limit_per_sec: float | None = Field(None, ge=0)
    session_ttl_secs: float | None = Field(None, gt=0)
    echo_ttl_secs: float | None = Field(3600.0, gt=0)
    max_message_len: int = Field(4000, gt=0)
    truncation_threshold: int = Field(3500, gt=0)
    chunk_delay_ms: int = Field(200, ge=0)

    # Stats endpoint
    stats_host: str = "127.0.0.1"
    stats_port: int | None = Field(None, ge=0, le=65535)

    # Logging
    log_format: Literal["text", "json"] = "text"
    log_level: str = "INFO"

    @field_validator("api_url")
    @classmethod
    def _strip_slash(cls, v: str | None) -> str | None:
        return v.rstrip("/") if v else None

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def _rate_limit_pair(self) -> "Config":
        if (self.rate_limit_capacity is None) != (self.rate_limit_per_sec is None):
            raise ValueError("rate_limit_capacity and rate_limit_per_sec must be set together")
        return self

    @property
    def allowed_ids(self) -> list[str]:
        """Parsed allow list. Falls back to the account itself when empty."""
        ids = [a.strip() for a in self.allowed.split(",") if a.strip()]
        return ids or [self.account]

    @property
    def ws_url(self) -> str:
        """Websocket URL for the receive stream."""
        if not self.api_url:
            raise ValueError("api_url is not set")
        base = self.api_url.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
        return f"{base}/v1/receive/{self.account}"
