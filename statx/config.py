"""Configuration loader with type-safe dataclasses."""

import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


LOG_LEVELS = ("debug", "info", "warning", "error")

# Go-style duration units, as accepted by the query API and config file.
_DURATION_UNITS = {
    "ns": timedelta(microseconds=1) / 1000,
    "us": timedelta(microseconds=1),
    "µs": timedelta(microseconds=1),
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(text: str) -> timedelta:
    """Parse a duration string such as "90s", "1.5h" or "2h45m".

    Args:
        text: Duration string made of one or more <number><unit> parts.

    Returns:
        The parsed duration.

    Raises:
        ValueError: If the string is empty, malformed or negative.
    """
    value = text.strip()
    if not value:
        raise ValueError("empty duration")
    if value.startswith("-"):
        raise ValueError(f"negative duration: {text!r}")
    if value.startswith("+"):
        value = value[1:]
    if value == "0":
        return timedelta(0)

    total = timedelta(0)
    pos = 0
    for match in _DURATION_PART.finditer(value):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(value):
        raise ValueError(f"invalid duration: {text!r}")
    return total


def format_duration(duration: timedelta) -> str:
    """Render a duration in compact form, e.g. "168h0m0s" becomes "168h"."""
    total_ms = int(duration / timedelta(milliseconds=1))
    if total_ms == 0:
        return "0s"
    hours, rest = divmod(total_ms, 3_600_000)
    minutes, rest = divmod(rest, 60_000)
    seconds, millis = divmod(rest, 1000)

    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if seconds:
        parts.append(f"{seconds}s")
    if millis:
        parts.append(f"{millis}ms")
    return "".join(parts)


def _to_seconds(value: object, field_name: str) -> float:
    """Convert a config duration (number of seconds or duration string) to seconds."""
    if isinstance(value, bool):
        raise ConfigError(f"'{field_name}' must be a duration, got {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return parse_duration(value).total_seconds()
        except ValueError as e:
            raise ConfigError(f"Invalid duration for '{field_name}': {e}")
    raise ConfigError(f"'{field_name}' must be a duration, got {value!r}")


@dataclass(frozen=True)
class TargetConfig:
    """A URL to monitor and its polling interval (seconds)."""

    url: str
    interval: float = 60.0

    def __post_init__(self) -> None:
        if not self.url:
            raise ConfigError("Target URL cannot be empty")
        if not self.url.startswith(("http://", "https://")):
            raise ConfigError(f"Target URL must start with http:// or https://, got '{self.url}'")
        if self.interval <= 0:
            raise ConfigError(f"Interval must be positive for '{self.url}' (got {self.interval})")


@dataclass(frozen=True)
class StorageConfig:
    """Configuration for the sample store.

    Durations are in seconds. Samples expire in whole blocks of
    ``block_duration`` once they fall outside ``retention_period``.
    """

    path: str = "data"
    retention_period: float = 7 * 24 * 3600.0
    block_duration: float = 2 * 3600.0
    max_blocks_to_read: int = 1000
    max_samples_per_day: int = 86400
    purge_interval: float = 600.0

    def __post_init__(self) -> None:
        if not self.path:
            raise ConfigError("Storage path cannot be empty")
        if self.retention_period <= 0:
            raise ConfigError(f"Retention period must be positive (got {self.retention_period})")
        if self.block_duration <= 0:
            raise ConfigError(f"Block duration must be positive (got {self.block_duration})")
        if self.block_duration > self.retention_period:
            raise ConfigError("Block duration cannot exceed the retention period")
        if self.max_blocks_to_read < 1:
            raise ConfigError(f"max_blocks_to_read must be at least 1 (got {self.max_blocks_to_read})")
        if self.max_samples_per_day < 1:
            raise ConfigError(f"max_samples_per_day must be at least 1 (got {self.max_samples_per_day})")
        if self.purge_interval <= 0:
            raise ConfigError(f"Purge interval must be positive (got {self.purge_interval})")

    @property
    def retention_ms(self) -> int:
        return int(self.retention_period * 1000)

    @property
    def block_duration_ms(self) -> int:
        return int(self.block_duration * 1000)


@dataclass(frozen=True)
class CheckConfig:
    """Process-wide probe settings."""

    timeout: float = 10.0  # seconds per attempt
    retry_attempts: int = 3
    retry_delay: float = 5.0  # seconds between attempts

    def __post_init__(self) -> None:
        if self.timeout <= 0:
            raise ConfigError(f"Check timeout must be positive (got {self.timeout})")
        if self.retry_attempts < 1:
            raise ConfigError(f"Retry attempts must be at least 1 (got {self.retry_attempts})")
        if self.retry_delay < 0:
            raise ConfigError(f"Retry delay must be non-negative (got {self.retry_delay})")


@dataclass(frozen=True)
class ApiConfig:
    """Configuration for JSON API server."""

    enabled: bool = True
    port: int = 8080

    def __post_init__(self) -> None:
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"API port must be between 1 and 65535, got {self.port}")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    targets: list[TargetConfig]
    storage: StorageConfig = field(default_factory=StorageConfig)
    check: CheckConfig = field(default_factory=CheckConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    log_level: str = "info"

    def __post_init__(self) -> None:
        if not self.targets:
            raise ConfigError("At least one target must be configured")
        urls = [target.url for target in self.targets]
        duplicates = {url for url in urls if urls.count(url) > 1}
        if duplicates:
            raise ConfigError(f"Duplicate target URLs found: {duplicates}")
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {LOG_LEVELS}, got '{self.log_level}'")


DEFAULT_CONFIG_YAML = """\
targets:
  - url: https://example.com
    interval: 30s
  - url: https://google.com
    interval: 60s

storage:
  path: data
  retention_period: 168h
  block_duration: 2h
  max_blocks_to_read: 1000
  max_samples_per_day: 86400
  purge_interval: 10m

check:
  timeout: 10s
  retry_attempts: 3
  retry_delay: 5s

api:
  enabled: true
  port: 8080

log_level: info
"""


def _parse_target_config(data: dict, index: int) -> TargetConfig:
    """Parse a single target entry."""
    if not isinstance(data, dict):
        raise ConfigError(f"Target entry {index} must be a dictionary")

    url = data.get("url")
    if url is None:
        raise ConfigError(f"Target entry {index} is missing 'url' field")

    return TargetConfig(
        url=str(url),
        interval=_to_seconds(data.get("interval", 60), f"targets[{index}].interval"),
    )


def _parse_storage_config(data: dict | None) -> StorageConfig:
    """Parse storage configuration section."""
    if data is None:
        return StorageConfig()
    if not isinstance(data, dict):
        raise ConfigError("'storage' section must be a dictionary")

    defaults = StorageConfig()
    return StorageConfig(
        path=str(data.get("path", defaults.path)),
        retention_period=_to_seconds(data.get("retention_period", defaults.retention_period), "retention_period"),
        block_duration=_to_seconds(data.get("block_duration", defaults.block_duration), "block_duration"),
        max_blocks_to_read=int(data.get("max_blocks_to_read", defaults.max_blocks_to_read)),
        max_samples_per_day=int(data.get("max_samples_per_day", defaults.max_samples_per_day)),
        purge_interval=_to_seconds(data.get("purge_interval", defaults.purge_interval), "purge_interval"),
    )


def _parse_check_config(data: dict | None) -> CheckConfig:
    """Parse check configuration section."""
    if data is None:
        return CheckConfig()
    if not isinstance(data, dict):
        raise ConfigError("'check' section must be a dictionary")

    defaults = CheckConfig()
    return CheckConfig(
        timeout=_to_seconds(data.get("timeout", defaults.timeout), "timeout"),
        retry_attempts=int(data.get("retry_attempts", defaults.retry_attempts)),
        retry_delay=_to_seconds(data.get("retry_delay", defaults.retry_delay), "retry_delay"),
    )


def _parse_api_config(data: dict | None) -> ApiConfig:
    """Parse API configuration section."""
    if data is None:
        return ApiConfig()
    if not isinstance(data, dict):
        raise ConfigError("'api' section must be a dictionary")

    return ApiConfig(
        enabled=bool(data.get("enabled", True)),
        port=int(data.get("port", 8080)),
    )


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - STATX_API_PORT: Override api.port
    - STATX_API_ENABLED: Override api.enabled (true/false)
    - STATX_STORAGE_PATH: Override storage.path
    - STATX_RETENTION_PERIOD: Override storage.retention_period
    - STATX_LOG_LEVEL: Override log_level
    - STATX_CHECK_TIMEOUT: Override check.timeout
    - STATX_RETRY_ATTEMPTS: Override check.retry_attempts
    - STATX_RETRY_DELAY: Override check.retry_delay
    """
    for section in ("api", "storage", "check"):
        if config_data.get(section) is None:
            config_data[section] = {}

    api_port = os.environ.get("STATX_API_PORT")
    if api_port is not None:
        config_data["api"]["port"] = int(api_port)

    api_enabled = os.environ.get("STATX_API_ENABLED")
    if api_enabled is not None:
        config_data["api"]["enabled"] = api_enabled.lower() in ("true", "1", "yes")

    storage_path = os.environ.get("STATX_STORAGE_PATH")
    if storage_path is not None:
        config_data["storage"]["path"] = storage_path

    retention = os.environ.get("STATX_RETENTION_PERIOD")
    if retention is not None:
        config_data["storage"]["retention_period"] = retention

    log_level = os.environ.get("STATX_LOG_LEVEL")
    if log_level is not None:
        config_data["log_level"] = log_level.lower()

    check_timeout = os.environ.get("STATX_CHECK_TIMEOUT")
    if check_timeout is not None:
        config_data["check"]["timeout"] = check_timeout

    retry_attempts = os.environ.get("STATX_RETRY_ATTEMPTS")
    if retry_attempts is not None:
        config_data["check"]["retry_attempts"] = int(retry_attempts)

    retry_delay = os.environ.get("STATX_RETRY_DELAY")
    if retry_delay is not None:
        config_data["check"]["retry_delay"] = retry_delay

    return config_data


def load_config(config_path: str) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        raise ConfigError("Configuration file is empty")

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    try:
        data = _apply_env_overrides(data)
    except ValueError as e:
        raise ConfigError(f"Invalid environment override: {e}")

    targets_data = data.get("targets")
    if targets_data is None:
        raise ConfigError("Configuration must contain a 'targets' section")
    if not isinstance(targets_data, list):
        raise ConfigError("'targets' must be a list")

    try:
        return Config(
            targets=[_parse_target_config(entry, i) for i, entry in enumerate(targets_data)],
            storage=_parse_storage_config(data.get("storage")),
            check=_parse_check_config(data.get("check")),
            api=_parse_api_config(data.get("api")),
            log_level=str(data.get("log_level", "info")).lower(),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")


def write_default_config(config_path: str) -> Path:
    """Write the default configuration file.

    Raises:
        ConfigError: If the file already exists or cannot be written.
    """
    path = Path(config_path)
    if path.exists():
        raise ConfigError(f"Configuration file already exists: {config_path}")
    try:
        if not path.parent.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(DEFAULT_CONFIG_YAML, encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to write configuration file: {e}")
    return path
