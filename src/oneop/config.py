"""Configuration management with validation.

The configuration is constructed once by the host and passed explicitly to
every component. There is no process-wide provider state.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Convergence budget for asynchronously provisioned objects
DEFAULT_CONVERGENCE_TIMEOUT_SECONDS = 600.0
DEFAULT_POLL_INTERVAL_SECONDS = 10.0
DEFAULT_MIN_POLL_INTERVAL_SECONDS = 3.0
MAX_CONVERGENCE_TIMEOUT_SECONDS = 6 * 3600.0

DEFAULT_REQUEST_TIMEOUT_SECONDS = 60.0

# Manifest and state file limits
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest
MAX_STATE_FILE_SIZE_BYTES = 10 * 1024 * 1024
MAX_OBJECT_NAME_LENGTH = 128

VALID_ENDPOINT_PATTERN = r"^https?://[^\s/]+(/\S*)?$"


@dataclass(frozen=True)
class PollBudget:
    """Timing budget for a convergence wait.

    The effective spacing between two refreshes is
    max(poll_interval_seconds, min_interval_seconds).
    """

    timeout_seconds: float = DEFAULT_CONVERGENCE_TIMEOUT_SECONDS
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    min_interval_seconds: float = DEFAULT_MIN_POLL_INTERVAL_SECONDS
    max_attempts: int | None = None

    def __post_init__(self) -> None:
        if self.timeout_seconds <= 0:
            raise ConfigurationError("timeout_seconds must be positive")
        if self.poll_interval_seconds < 0 or self.min_interval_seconds < 0:
            raise ConfigurationError("poll intervals cannot be negative")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")

    @property
    def spacing_seconds(self) -> float:
        """Delay between two consecutive refreshes."""
        return max(self.poll_interval_seconds, self.min_interval_seconds)


@dataclass(frozen=True)
class Config:
    """Operator configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing on the first call.
    """

    endpoint: str
    username: str
    password: str = field(repr=False)

    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS

    # Image readiness wait
    convergence_timeout_seconds: float = DEFAULT_CONVERGENCE_TIMEOUT_SECONDS
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    min_poll_interval_seconds: float = DEFAULT_MIN_POLL_INTERVAL_SECONDS

    # Name lookups that match several objects fail unless this is set,
    # in which case the first match wins.
    allow_ambiguous_names: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.endpoint:
            errors.append("OPENNEBULA_ENDPOINT is required")
        elif not re.match(VALID_ENDPOINT_PATTERN, self.endpoint):
            errors.append(f"OPENNEBULA_ENDPOINT must be an http(s) URL: {self.endpoint}")

        if not self.username:
            errors.append("OPENNEBULA_USERNAME is required")
        elif ":" in self.username:
            errors.append("OPENNEBULA_USERNAME cannot contain ':'")

        if not self.password:
            errors.append("OPENNEBULA_PASSWORD is required")

        if self.request_timeout_seconds <= 0:
            errors.append("OPENNEBULA_REQUEST_TIMEOUT must be positive")

        if not (0 < self.convergence_timeout_seconds <= MAX_CONVERGENCE_TIMEOUT_SECONDS):
            errors.append(
                f"OPENNEBULA_CONVERGENCE_TIMEOUT must be between 0 and "
                f"{MAX_CONVERGENCE_TIMEOUT_SECONDS:.0f} seconds"
            )

        if self.poll_interval_seconds < 0 or self.min_poll_interval_seconds < 0:
            errors.append("Poll intervals cannot be negative")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def session(self) -> str:
        """Session credential prepended to every RPC call."""
        return f"{self.username}:{self.password}"

    @property
    def poll_budget(self) -> PollBudget:
        """Convergence budget derived from this configuration."""
        return PollBudget(
            timeout_seconds=self.convergence_timeout_seconds,
            poll_interval_seconds=self.poll_interval_seconds,
            min_interval_seconds=self.min_poll_interval_seconds,
        )

    @classmethod
    def from_env(
        cls,
        endpoint: str | None = None,
        username: str | None = None,
        password: str | None = None,
    ) -> Config:
        """Load configuration, falling back to environment variables.

        Explicit arguments win over the environment.

        Environment Variables:
            OPENNEBULA_ENDPOINT: XML-RPC endpoint (e.g. http://one:2633/RPC2)
            OPENNEBULA_USERNAME: User to authenticate as
            OPENNEBULA_PASSWORD: Password or login token for the user
            OPENNEBULA_REQUEST_TIMEOUT: Per-call socket timeout in seconds (default: 60)
            OPENNEBULA_CONVERGENCE_TIMEOUT: Readiness wait budget in seconds (default: 600)
            OPENNEBULA_POLL_INTERVAL: Seconds between readiness polls (default: 10)
            OPENNEBULA_MIN_POLL_INTERVAL: Minimum spacing between polls (default: 3)
            OPENNEBULA_ALLOW_AMBIGUOUS_NAMES: If "true", first name match wins (default: false)
        """

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            endpoint=endpoint or os.environ.get("OPENNEBULA_ENDPOINT", ""),
            username=username or os.environ.get("OPENNEBULA_USERNAME", ""),
            password=password or os.environ.get("OPENNEBULA_PASSWORD", ""),
            request_timeout_seconds=get_float(
                "OPENNEBULA_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS
            ),
            convergence_timeout_seconds=get_float(
                "OPENNEBULA_CONVERGENCE_TIMEOUT", DEFAULT_CONVERGENCE_TIMEOUT_SECONDS
            ),
            poll_interval_seconds=get_float(
                "OPENNEBULA_POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS
            ),
            min_poll_interval_seconds=get_float(
                "OPENNEBULA_MIN_POLL_INTERVAL", DEFAULT_MIN_POLL_INTERVAL_SECONDS
            ),
            allow_ambiguous_names=get_bool("OPENNEBULA_ALLOW_AMBIGUOUS_NAMES", False),
        )
