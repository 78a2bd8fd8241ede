"""Client configuration with validation.

Settings come from environment variables, optionally layered over a YAML
settings file. All values are validated at load time so that a bad setting
fails the command immediately rather than halfway through an operation.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


class ConfigurationError(ValueError):
    """Raised when configuration or a command's required context is invalid.

    Also used for a missing or unusable current subscription, certificate or
    subscription id: these are fatal to the calling command and never retried.
    """

    pass


# Configuration constants with documented bounds
DEFAULT_SETTINGS_DIR = Path.home() / ".smclient"
DEFAULT_MACHINE_CERT_DIR = Path("/etc/smclient/certs")
DEFAULT_PROFILE_FILE = "profile.json"

DEFAULT_POLL_INTERVAL_SECONDS = 1.0
MIN_POLL_INTERVAL_SECONDS = 0.0
MAX_POLL_INTERVAL_SECONDS = 3600.0
DEFAULT_POLL_BACKOFF_FACTOR = 1.0
DEFAULT_POLL_MAX_INTERVAL_SECONDS = 60.0

DEFAULT_CONNECTION_TIMEOUT_SECONDS = 60
DEFAULT_READ_TIMEOUT_SECONDS = 300
DEFAULT_MAX_RESPONSE_BYTES = 64 * 1024 * 1024

# Security constraints - enforced limits to prevent abuse
MAX_PUBLISH_SETTINGS_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max publish settings
MAX_PROFILE_FILE_SIZE_BYTES = 10 * 1024 * 1024
MAX_SETTINGS_FILE_SIZE_BYTES = 64 * 1024

# Input validation patterns
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"


@dataclass(frozen=True)
class PollingPolicy:
    """How the operation controller waits between status polls.

    The default is a fixed one-second interval with no attempt cap and no
    deadline: the loop only ends on a terminal status or a communication
    fault. Limits are opt-in.
    """

    interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    max_attempts: int | None = None
    timeout_seconds: float | None = None
    backoff_factor: float = DEFAULT_POLL_BACKOFF_FACTOR
    max_interval_seconds: float = DEFAULT_POLL_MAX_INTERVAL_SECONDS

    def validate(self) -> list[str]:
        errors: list[str] = []
        if not (MIN_POLL_INTERVAL_SECONDS <= self.interval_seconds <= MAX_POLL_INTERVAL_SECONDS):
            errors.append(
                f"SMC_POLL_INTERVAL must be between {MIN_POLL_INTERVAL_SECONDS} "
                f"and {MAX_POLL_INTERVAL_SECONDS} seconds"
            )
        if self.max_attempts is not None and self.max_attempts < 1:
            errors.append("SMC_POLL_MAX_ATTEMPTS must be at least 1")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            errors.append("SMC_POLL_TIMEOUT must be positive")
        if self.backoff_factor < 1.0:
            errors.append("SMC_POLL_BACKOFF must be at least 1.0")
        if self.max_interval_seconds < self.interval_seconds:
            errors.append("max_interval_seconds cannot be lower than interval_seconds")
        return errors

    def delay_for(self, attempt: int) -> float:
        """Seconds to sleep after the given (1-based) status poll."""
        delay = self.interval_seconds * (self.backoff_factor ** (attempt - 1))
        if self.backoff_factor > 1.0:
            return min(delay, self.max_interval_seconds)
        return delay


@dataclass(frozen=True)
class BindingConfig:
    """Transport limits applied to every channel."""

    connection_timeout_seconds: int = DEFAULT_CONNECTION_TIMEOUT_SECONDS
    read_timeout_seconds: int = DEFAULT_READ_TIMEOUT_SECONDS
    max_response_bytes: int = DEFAULT_MAX_RESPONSE_BYTES

    def validate(self) -> list[str]:
        errors: list[str] = []
        if self.connection_timeout_seconds < 1:
            errors.append("SMC_CONNECTION_TIMEOUT must be at least 1 second")
        if self.read_timeout_seconds < 1:
            errors.append("SMC_READ_TIMEOUT must be at least 1 second")
        if self.max_response_bytes < 1024:
            errors.append("SMC_MAX_RESPONSE_BYTES must be at least 1024")
        return errors


@dataclass(frozen=True)
class ClientConfig:
    """Client configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    settings_dir: Path = field(default_factory=lambda: DEFAULT_SETTINGS_DIR)
    machine_cert_dir: Path | None = field(default_factory=lambda: DEFAULT_MACHINE_CERT_DIR)
    profile_file: str = DEFAULT_PROFILE_FILE

    polling: PollingPolicy = field(default_factory=PollingPolicy)
    binding: BindingConfig = field(default_factory=BindingConfig)

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.profile_file:
            errors.append("SMC_PROFILE_FILE cannot be empty")
        elif Path(self.profile_file).name != self.profile_file:
            errors.append(f"SMC_PROFILE_FILE must be a file name, not a path: {self.profile_file}")

        if self.settings_dir.exists() and not self.settings_dir.is_dir():
            errors.append(f"Settings directory is not a directory: {self.settings_dir}")

        errors.extend(self.polling.validate())
        errors.extend(self.binding.validate())

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def profile_path(self) -> Path:
        return self.settings_dir / self.profile_file

    @property
    def user_cert_dir(self) -> Path:
        return self.settings_dir / "certs"

    @classmethod
    def from_env(cls, base: dict[str, Any] | None = None) -> ClientConfig:
        """Load configuration from environment variables.

        Environment Variables:
            SMC_SETTINGS_DIR: Directory holding the profile and user certificates
            SMC_MACHINE_CERT_DIR: Machine-wide certificate directory ("" disables it)
            SMC_PROFILE_FILE: Profile file name (default: profile.json)
            SMC_POLL_INTERVAL: Seconds between operation status polls (default: 1)
            SMC_POLL_MAX_ATTEMPTS: Optional cap on status polls (default: unbounded)
            SMC_POLL_TIMEOUT: Optional polling deadline in seconds (default: none)
            SMC_POLL_BACKOFF: Interval multiplier per poll (default: 1.0, fixed)
            SMC_CONNECTION_TIMEOUT: Connect timeout in seconds (default: 60)
            SMC_READ_TIMEOUT: Read timeout in seconds (default: 300)
            SMC_MAX_RESPONSE_BYTES: Largest accepted response body (default: 64MB)

        Args:
            base: Lower-priority values (e.g. from a settings file), keyed by
                  the variable name without the SMC_ prefix, lower-cased.
        """
        base = base or {}

        def get_str(key: str) -> str | None:
            value = os.environ.get(f"SMC_{key}")
            if value is not None:
                return value
            file_value = base.get(key.lower())
            return None if file_value is None else str(file_value)

        def get_int(key: str, default: int | None) -> int | None:
            value = get_str(key)
            if value is None or value == "":
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"SMC_{key} must be an integer: {value}") from e

        def get_float(key: str, default: float | None) -> float | None:
            value = get_str(key)
            if value is None or value == "":
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"SMC_{key} must be a number: {value}") from e

        settings_dir = get_str("SETTINGS_DIR")
        machine_dir = get_str("MACHINE_CERT_DIR")

        return cls(
            settings_dir=Path(settings_dir).expanduser() if settings_dir else DEFAULT_SETTINGS_DIR,
            machine_cert_dir=(
                DEFAULT_MACHINE_CERT_DIR
                if machine_dir is None
                else (Path(machine_dir).expanduser() if machine_dir else None)
            ),
            profile_file=get_str("PROFILE_FILE") or DEFAULT_PROFILE_FILE,
            polling=PollingPolicy(
                interval_seconds=get_float("POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
                max_attempts=get_int("POLL_MAX_ATTEMPTS", None),
                timeout_seconds=get_float("POLL_TIMEOUT", None),
                backoff_factor=get_float("POLL_BACKOFF", DEFAULT_POLL_BACKOFF_FACTOR),
                max_interval_seconds=get_float(
                    "POLL_MAX_INTERVAL", DEFAULT_POLL_MAX_INTERVAL_SECONDS
                ),
            ),
            binding=BindingConfig(
                connection_timeout_seconds=get_int(
                    "CONNECTION_TIMEOUT", DEFAULT_CONNECTION_TIMEOUT_SECONDS
                ),
                read_timeout_seconds=get_int("READ_TIMEOUT", DEFAULT_READ_TIMEOUT_SECONDS),
                max_response_bytes=get_int("MAX_RESPONSE_BYTES", DEFAULT_MAX_RESPONSE_BYTES),
            ),
        )

    @classmethod
    def from_file(cls, path: Path) -> ClientConfig:
        """Load configuration from a YAML settings file, then apply env overrides.

        Raises:
            ConfigurationError: If the file is unreadable, too large or not a mapping.
        """
        try:
            file_size = path.stat().st_size
        except OSError as e:
            raise ConfigurationError(f"Failed to stat settings file {path}: {e}") from e

        if file_size > MAX_SETTINGS_FILE_SIZE_BYTES:
            raise ConfigurationError(
                f"Settings file exceeds maximum size of {MAX_SETTINGS_FILE_SIZE_BYTES} bytes: {path}"
            )

        try:
            raw_data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise ConfigurationError(f"Failed to read settings file {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

        if raw_data is None:
            raw_data = {}
        if not isinstance(raw_data, dict):
            raise ConfigurationError(f"Settings file must contain a YAML mapping: {path}")

        return cls.from_env(base={str(k).lower(): v for k, v in raw_data.items()})
