from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from flowkernel.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the flow engine and its HTTP surface."""

    # Node execution
    default_node_timeout_ms: int = env_field(
        15000,
        "DEFAULT_NODE_TIMEOUT_MS",
        description="Per-attempt handler timeout when a node policy does not set one",
    )
    max_node_timeout_ms: int = env_field(
        60000, "MAX_NODE_TIMEOUT_MS", description="Hard cap on any per-attempt timeout"
    )
    default_node_retries: int = env_field(2, "DEFAULT_NODE_RETRIES")
    max_retries_hard_cap: int = env_field(3, "MAX_RETRIES_HARD_CAP")
    default_backoff_ms: int = env_field(
        1000, "DEFAULT_BACKOFF_MS", description="Initial retry backoff"
    )
    max_backoff_ms: int = env_field(30000, "MAX_BACKOFF_MS")

    # Termination guards
    max_loop_iterations: int = env_field(
        10000,
        "MAX_LOOP_ITERATIONS",
        description="Upper clamp applied to every while node's maxIterations",
    )
    max_call_depth: int = env_field(16, "MAX_CALL_DEPTH")
    max_steps_per_frame: int = env_field(10000, "MAX_STEPS_PER_FRAME")

    # Run lifecycle
    cancel_grace_ms: int = env_field(
        5000,
        "CANCEL_GRACE_MS",
        description="How long a cancelled handler may take to settle before its task is cancelled",
    )
    max_concurrent_runs: int = env_field(8, "MAX_CONCURRENT_RUNS")
    max_runs_retained: int = env_field(
        500,
        "MAX_RUNS_RETAINED",
        description="Finished runs kept in the in-memory store before the oldest are evicted",
    )

    # HTTP surface
    cors_allow_origins: list[str] = env_field(
        ["http://localhost", "http://localhost:3000", "http://127.0.0.1:3000"],
        "CORS_ALLOW_ORIGINS",
        description="Comma-separated origins allowed to call the API",
    )

    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "default_node_timeout_ms",
        "max_node_timeout_ms",
        "max_loop_iterations",
        "max_call_depth",
        "max_steps_per_frame",
        "max_concurrent_runs",
        "max_runs_retained",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator(
        "default_node_retries",
        "max_retries_hard_cap",
        "default_backoff_ms",
        "max_backoff_ms",
        "cancel_grace_ms",
    )
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def _clamp_defaults(self) -> "Settings":
        if self.default_node_timeout_ms > self.max_node_timeout_ms:
            logger.warning(
                "settings_timeout_clamped",
                default_node_timeout_ms=self.default_node_timeout_ms,
                max_node_timeout_ms=self.max_node_timeout_ms,
            )
            self.default_node_timeout_ms = self.max_node_timeout_ms
        if self.default_node_retries > self.max_retries_hard_cap:
            self.default_node_retries = self.max_retries_hard_cap
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
