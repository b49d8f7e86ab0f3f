"""Configuration schema for pushtalk.

Defines Pydantic models for loading and validating call signaling
configuration from YAML files and environment variables.
"""

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator

DEFAULT_STUN_URLS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
]


class SignalingConfig(BaseModel):
    """Signaling store layout."""

    calls_collection: str = Field(default="calls", description="Collection of live call records")
    history_collection: str = Field(
        default="call_history",
        description="Durable collection of archived call records",
    )
    call_type: str = Field(default="PTT", description="Call kind written into each record")

    @field_validator("calls_collection", "history_collection")
    @classmethod
    def validate_collection(cls, v: str) -> str:
        """Validate that a collection name is a single path segment."""
        if not v or "/" in v:
            raise ValueError(f"Collection name must be a non-empty single segment, got '{v}'")
        return v


class RedisConfig(BaseModel):
    """Redis signaling store configuration."""

    url: str = Field(
        default="redis://localhost:6379",
        description="Redis connection URL",
    )
    db: int = Field(default=0, ge=0, le=15, description="Redis database number")
    key_prefix: str = Field(
        default="pushtalk:",
        description="Prefix for every key and pub/sub channel",
    )
    live_record_ttl_seconds: int = Field(
        default=3600,
        ge=60,
        description="Expiry of live call records left behind by crashed clients",
    )
    connection_pool_size: int = Field(default=10, ge=1, description="Connection pool size")


class IceConfig(BaseModel):
    """Connectivity (STUN/TURN) server configuration."""

    stun_urls: list[str] = Field(
        default_factory=lambda: list(DEFAULT_STUN_URLS),
        description="STUN server URLs",
    )
    turn_url: str | None = Field(default=None, description="Optional TURN server URL")
    turn_username: str | None = Field(default=None, description="TURN username")
    turn_password: str | None = Field(default=None, description="TURN credential")

    @field_validator("stun_urls")
    @classmethod
    def validate_stun_urls(cls, v: list[str]) -> list[str]:
        """Validate STUN URL scheme."""
        for url in v:
            if not url.startswith(("stun:", "stuns:")):
                raise ValueError(f"STUN URL must start with 'stun:' or 'stuns:', got '{url}'")
        return v

    @field_validator("turn_url")
    @classmethod
    def validate_turn_url(cls, v: str | None) -> str | None:
        """Validate TURN URL scheme."""
        if v is not None and not v.startswith(("turn:", "turns:")):
            raise ValueError(f"TURN URL must start with 'turn:' or 'turns:', got '{v}'")
        return v


class MediaConfig(BaseModel):
    """Local audio capture configuration."""

    audio_device: str = Field(
        default="default",
        description="Capture device name passed to the media player",
    )
    audio_format: str = Field(
        default="pulse",
        description="Capture backend format (e.g., 'pulse', 'alsa', 'avfoundation')",
    )
    audio_options: dict[str, str] = Field(
        default_factory=dict,
        description="Extra backend options (e.g., {'sample_rate': '48000'})",
    )


class PushTalkConfig(BaseModel):
    """Root pushtalk configuration."""

    signaling: SignalingConfig = Field(default_factory=SignalingConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    ice: IceConfig = Field(default_factory=IceConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)

    # Operational settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    log_json: bool = Field(default=False, description="Emit logs as JSON lines")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize the logging level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        level = v.upper()
        if level not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return level

    @classmethod
    def from_yaml(cls, path: Path) -> "PushTalkConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import os

        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data: dict[str, Any] = yaml.safe_load(f) or {}

        # Apply environment variable overrides
        if redis_url := os.getenv("REDIS_URL"):
            data.setdefault("redis", {})["url"] = redis_url

        if stun_urls := os.getenv("PUSHTALK_STUN_URLS"):
            data.setdefault("ice", {})["stun_urls"] = [
                url.strip() for url in stun_urls.split(",") if url.strip()
            ]

        if audio_device := os.getenv("PUSHTALK_AUDIO_DEVICE"):
            data.setdefault("media", {})["audio_device"] = audio_device

        if log_level := os.getenv("PUSHTALK_LOG_LEVEL"):
            data["log_level"] = log_level

        return cls.model_validate(data)

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "PushTalkConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        # Return defaults
        return cls()
