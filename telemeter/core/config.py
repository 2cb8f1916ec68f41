"""Client configuration."""

import os
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from telemeter.core.errors import ConfigError

DEFAULT_HOST = "https://us.i.posthog.com"
ENV_PREFIX = "TELEMETER_"


class PersonProfiles(str, Enum):
    """When captured events may create or update a person profile."""

    ALWAYS = "always"
    IDENTIFIED_ONLY = "identified_only"
    NEVER = "never"


class TelemetryConfig(BaseModel):
    """Immutable, validated configuration for a Telemeter client.

    Attributes:
        api_key: Project credential sent with every batch and flag request.
        host: Collector base URL, without trailing slash.
        flush_at: Queue size that triggers an automatic flush.
        flush_interval_seconds: Period of the background flush timer.
        max_queue_size: Events kept locally before the oldest are evicted.
        max_batch_size: Events sent per request.
        capture_exceptions: Install an error source and capture unhandled errors.
        exception_debounce_interval_ms: Minimum gap between automatic captures.
        preload_feature_flags: Fetch flags in the background on start.
        send_feature_flag_event: Emit $feature_flag_called on tracked reads.
        storage_path: Directory for the file store, or None for memory only.
    """

    api_key: str
    host: str = DEFAULT_HOST

    flush_at: int = Field(default=20, ge=1)
    flush_interval_seconds: int = Field(default=30, ge=1)
    max_queue_size: int = Field(default=1000, ge=1)
    max_batch_size: int = Field(default=50, ge=1)
    retry_base_delay_seconds: float = Field(default=5.0, gt=0)
    retry_max_delay_seconds: float = Field(default=30.0, gt=0)
    shutdown_timeout_seconds: float = Field(default=5.0, gt=0)
    request_timeout_seconds: float = Field(default=10.0, gt=0)

    capture_exceptions: bool = True
    exception_debounce_interval_ms: int = Field(default=1000, ge=0)
    exception_source: Literal["auto", "excepthook", "logging"] = "auto"

    preload_feature_flags: bool = True
    send_feature_flag_event: bool = True
    send_default_person_properties_for_flags: bool = True

    person_profiles: PersonProfiles = PersonProfiles.IDENTIFIED_ONLY
    reuse_anonymous_id: bool = False

    storage_path: str | None = None
    app_version: str | None = None
    log_level: str = "INFO"

    model_config = {
        "extra": "forbid",
        "frozen": True,
    }

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("api_key must not be empty")
        return v

    @field_validator("host")
    @classmethod
    def validate_host(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"host must be an http(s) URL, got: {v!r}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.strip().upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v!r}")
        return v

    @model_validator(mode="after")
    def validate_retry_window(self) -> "TelemetryConfig":
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError("retry_max_delay_seconds must be >= retry_base_delay_seconds")
        return self

    @property
    def batch_url(self) -> str:
        return f"{self.host}/batch"

    @property
    def flags_url(self) -> str:
        return f"{self.host}/flags/?v=2&config=true"

    @property
    def ui_host(self) -> str:
        """Host of the web app, used for person deep links."""
        return self.host.replace(".i.", ".", 1)

    @classmethod
    def from_env(
        cls,
        prefix: str = ENV_PREFIX,
        environ: dict[str, str] | None = None,
        **overrides: Any,
    ) -> "TelemetryConfig":
        """Build a config from ``<PREFIX><FIELD>`` environment variables.

        Explicit keyword overrides win over the environment. Values are left
        as strings and coerced by pydantic.

        Raises:
            ConfigError: If a required value is missing or a value is invalid.
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            raw = env.get(f"{prefix}{name}".upper())
            if raw is not None:
                values[name] = raw
        values.update(overrides)
        try:
            return cls(**values)
        except ValidationError as exc:
            raise ConfigError(f"Failed to load telemeter config: {exc}") from exc
