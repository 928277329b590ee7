"""Configuration management with validation.

Configuration is loaded once, validated at construction time and passed
explicitly into the engine. Feature flags are part of the configuration
rather than process-wide environment lookups, so no code path changes
behaviour after startup.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConfigurationError

# Configuration constants with documented bounds
DEFAULT_HOST = "cloud.yugabyte.com"
API_BASE_PATH = "/api/public/v1"

DEFAULT_POLL_INTERVAL_SECONDS = 10
MIN_POLL_INTERVAL_SECONDS = 1
MAX_POLL_INTERVAL_SECONDS = 300

DEFAULT_OPERATION_TIMEOUT_SECONDS = 3600
MIN_OPERATION_TIMEOUT_SECONDS = 60
MAX_OPERATION_TIMEOUT_SECONDS = 86400

DEFAULT_REQUEST_TIMEOUT_SECONDS = 60
DEFAULT_HTTP_RETRY_TOTAL = 3
MAX_HTTP_RETRY_TOTAL = 10

DEFAULT_LOCK_TIMEOUT_SECONDS = 30
DEFAULT_MAX_CONCURRENT_PASSES = 4
MAX_CONCURRENT_PASSES = 32

# Per-operation deadlines (seconds) for waits shorter than the general one
PAUSE_RESUME_TIMEOUT_SECONDS = 1200
CMK_EDIT_TIMEOUT_SECONDS = 1200
CONNECTION_POOLING_TIMEOUT_SECONDS = 1200
RESTORE_TIMEOUT_SECONDS = 1200
VPC_CREATE_TIMEOUT_SECONDS = 600
VPC_DELETE_TIMEOUT_SECONDS = 300
BACKUP_CREATE_TIMEOUT_SECONDS = 600
BACKUP_DELETE_TIMEOUT_SECONDS = 300
ALLOW_LIST_DETACH_TIMEOUT_SECONDS = 2400
AUDIT_LOGGING_TIMEOUT_SECONDS = 2400

# Security constraints
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max plan file
MAX_STATE_FILE_SIZE_BYTES = 16 * 1024 * 1024

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

FEATURE_FLAG_ENV_PREFIX = "YBM_FF_"


def _env_bool(key: str, default: bool) -> bool:
    value = os.environ.get(key, "").lower()
    if not value:
        return default
    return value in ("true", "1", "yes")


@dataclass(frozen=True)
class FeatureFlags:
    """Optional code paths, all disabled by default.

    Environment Variables:
        YBM_FF_CONNECTION_POOLING: Manage desired_connection_pooling_state.
        YBM_FF_DR: Disaster recovery configuration support.
        YBM_FF_API_KEYS_ALLOW_LIST: Allow lists on API keys.
        YBM_FF_GOOGLECLOUD_INTEGRATION_ENABLED: GOOGLECLOUD integrations.
    """

    connection_pooling: bool = False
    dr: bool = False
    api_keys_allow_list: bool = False
    googlecloud_integration: bool = False

    @classmethod
    def from_env(cls) -> FeatureFlags:
        """Load feature flags from YBM_FF_* environment variables."""
        return cls(
            connection_pooling=_env_bool(f"{FEATURE_FLAG_ENV_PREFIX}CONNECTION_POOLING", False),
            dr=_env_bool(f"{FEATURE_FLAG_ENV_PREFIX}DR", False),
            api_keys_allow_list=_env_bool(
                f"{FEATURE_FLAG_ENV_PREFIX}API_KEYS_ALLOW_LIST", False
            ),
            googlecloud_integration=_env_bool(
                f"{FEATURE_FLAG_ENV_PREFIX}GOOGLECLOUD_INTEGRATION_ENABLED", False
            ),
        )


@dataclass(frozen=True)
class Config:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-pass.
    """

    # Required fields
    api_key: str

    # Endpoint
    host: str = DEFAULT_HOST
    use_secure_host: bool = True

    # Scope, resolved through the API when absent
    account_id: str | None = None
    project_id: str | None = None

    # Timing
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS
    http_retry_total: int = DEFAULT_HTTP_RETRY_TOTAL

    # Orchestration
    lock_timeout_seconds: int = DEFAULT_LOCK_TIMEOUT_SECONDS
    max_concurrent_passes: int = DEFAULT_MAX_CONCURRENT_PASSES
    state_file: Path = field(default_factory=lambda: Path("ybm-state.json"))
    log_level: str = "INFO"

    feature_flags: FeatureFlags = field(default_factory=FeatureFlags)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.api_key:
            errors.append("YBM_API_KEY is required")

        if not self.host:
            errors.append("YBM_HOST must not be empty")
        elif "://" in self.host:
            errors.append(f"YBM_HOST must not include a scheme: {self.host}")

        if not (
            MIN_POLL_INTERVAL_SECONDS <= self.poll_interval_seconds <= MAX_POLL_INTERVAL_SECONDS
        ):
            errors.append(
                f"YBM_POLL_INTERVAL must be between {MIN_POLL_INTERVAL_SECONDS} "
                f"and {MAX_POLL_INTERVAL_SECONDS} seconds"
            )

        if not (
            MIN_OPERATION_TIMEOUT_SECONDS
            <= self.operation_timeout_seconds
            <= MAX_OPERATION_TIMEOUT_SECONDS
        ):
            errors.append(
                f"YBM_OPERATION_TIMEOUT must be between {MIN_OPERATION_TIMEOUT_SECONDS} "
                f"and {MAX_OPERATION_TIMEOUT_SECONDS} seconds"
            )

        if self.poll_interval_seconds > self.operation_timeout_seconds:
            errors.append("YBM_POLL_INTERVAL cannot exceed YBM_OPERATION_TIMEOUT")

        if self.request_timeout_seconds < 1:
            errors.append("YBM_REQUEST_TIMEOUT must be at least 1 second")

        if not (0 <= self.http_retry_total <= MAX_HTTP_RETRY_TOTAL):
            errors.append(f"YBM_HTTP_RETRY_TOTAL must be between 0 and {MAX_HTTP_RETRY_TOTAL}")

        if self.lock_timeout_seconds < 1:
            errors.append("YBM_LOCK_TIMEOUT must be at least 1 second")

        if not (1 <= self.max_concurrent_passes <= MAX_CONCURRENT_PASSES):
            errors.append(
                f"YBM_MAX_CONCURRENT_PASSES must be between 1 and {MAX_CONCURRENT_PASSES}"
            )

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"YBM_LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def base_url(self) -> str:
        """Root URL of the public API."""
        scheme = "https" if self.use_secure_host else "http"
        return f"{scheme}://{self.host}{API_BASE_PATH}"

    @property
    def log_level_value(self) -> int:
        return logging.getLevelName(self.log_level.upper())

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            YBM_API_KEY: API key used as bearer token (required)
            YBM_HOST: API host without scheme (default: cloud.yugabyte.com)
            YBM_USE_SECURE_HOST: "false" to talk plain http (default: true)
            YBM_ACCOUNT_ID: Account ID (default: resolved via the API)
            YBM_PROJECT_ID: Project ID (default: resolved via the API)
            YBM_POLL_INTERVAL: Seconds between operation polls (default: 10)
            YBM_OPERATION_TIMEOUT: Deadline for long operations (default: 3600)
            YBM_REQUEST_TIMEOUT: Deadline for a single API call (default: 60)
            YBM_HTTP_RETRY_TOTAL: Transport-level retries per call (default: 3)
            YBM_LOCK_TIMEOUT: Seconds to wait for a resource lock (default: 30)
            YBM_MAX_CONCURRENT_PASSES: Parallel resource passes (default: 4)
            YBM_STATE_FILE: Path of the persisted state (default: ybm-state.json)
            YBM_LOG_LEVEL: DEBUG, INFO, WARNING or ERROR (default: INFO)

        Feature flags are read by FeatureFlags.from_env().
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        return cls(
            api_key=os.environ.get("YBM_API_KEY", ""),
            host=os.environ.get("YBM_HOST", DEFAULT_HOST),
            use_secure_host=_env_bool("YBM_USE_SECURE_HOST", True),
            account_id=os.environ.get("YBM_ACCOUNT_ID") or None,
            project_id=os.environ.get("YBM_PROJECT_ID") or None,
            poll_interval_seconds=get_int("YBM_POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            operation_timeout_seconds=get_int(
                "YBM_OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            request_timeout_seconds=get_int(
                "YBM_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS
            ),
            http_retry_total=get_int("YBM_HTTP_RETRY_TOTAL", DEFAULT_HTTP_RETRY_TOTAL),
            lock_timeout_seconds=get_int("YBM_LOCK_TIMEOUT", DEFAULT_LOCK_TIMEOUT_SECONDS),
            max_concurrent_passes=get_int(
                "YBM_MAX_CONCURRENT_PASSES", DEFAULT_MAX_CONCURRENT_PASSES
            ),
            state_file=Path(os.environ.get("YBM_STATE_FILE", "ybm-state.json")),
            log_level=os.environ.get("YBM_LOG_LEVEL", "INFO"),
            feature_flags=FeatureFlags.from_env(),
        )
