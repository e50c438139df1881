"""dosewatch configuration loading and validation.

Reads ``dosewatch.toml`` (path given explicitly, via ``DOSEWATCH_CONFIG``, or
from the current directory), resolves ``${VAR}`` references against the
environment, and returns a validated :class:`DosewatchConfig`.  Every section
is optional; a missing file yields the defaults when ``required=False``.

Example::

    [chat]
    bot_token = "${TELEGRAM_BOT_TOKEN}"

    [retry]
    max_attempts = 3
    base_delay_seconds = 1.0
    max_delay_seconds = 10.0
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

DEFAULT_CONFIG_FILENAME = "dosewatch.toml"
DEFAULT_TIMEZONE = "America/Sao_Paulo"

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_VALID_LOG_FORMATS = {"text", "json"}


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class DatabaseConfig:
    """[database]: falls back to DATABASE_URL / POSTGRES_* when ``url`` is unset."""

    url: str | None = None
    min_pool_size: int = 2
    max_pool_size: int = 10
    migrate_on_start: bool = True


@dataclass
class ChatConfig:
    """[chat]: outbound Telegram Bot API endpoint."""

    bot_token: str | None = None
    api_base_url: str = "https://api.telegram.org"


@dataclass
class RetryConfig:
    """[retry]: delivery executor policy."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0
    jitter: bool = True
    send_timeout_seconds: float = 15.0


@dataclass
class DedupConfig:
    """[dedup]: duplicate suppression window and log retention."""

    window_minutes: int = 5
    retention_days: int = 7


@dataclass
class DLQConfig:
    """[dlq]: dead-letter queue reprocessing and retention."""

    auto_retry_ceiling: int = 5
    retention_days: int = 30
    reprocess_enabled: bool = False
    reprocess_cron: str = "*/15 * * * *"
    reprocess_batch_size: int = 50


@dataclass
class MetricsConfig:
    """[metrics]: in-memory window retention and sweep cadence."""

    retention_minutes: int = 60
    sweep_interval_minutes: int = 10


@dataclass
class HealthConfig:
    """[health]: thresholds for ``/api/health``."""

    error_rate_warning_percent: float = 5.0
    dlq_warning: int = 50
    dlq_critical: int = 100
    no_success_warning_minutes: int = 5
    no_success_critical_minutes: int = 10
    rate_limit_warning_per_hour: int = 10
    window_minutes: int = 5


@dataclass
class SchedulerConfig:
    """[scheduler]: tick driver and cron jobs."""

    tick_interval_seconds: float = 60.0
    allow_overlap: bool = False
    max_concurrency: int = 8
    default_timezone: str = DEFAULT_TIMEZONE
    soft_reminder_after_minutes: int = 30
    soft_reminder_tolerance_minutes: int = 5
    low_stock_days: int = 7
    daily_digest_cron: str = "0 23 * * *"
    stock_alert_cron: str = "0 9 * * *"
    metrics_sweep_cron: str = "*/10 * * * *"
    dedup_cleanup_cron: str = "0 3 * * *"
    dlq_cleanup_cron: str = "30 3 * * *"


@dataclass
class LoggingConfig:
    """[logging]"""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class ApiConfig:
    """[api]: admin HTTP surface."""

    host: str = "127.0.0.1"
    port: int = 8400
    admin_token: str | None = None
    cors_origins: list[str] = field(default_factory=list)


@dataclass
class DosewatchConfig:
    """Fully parsed process configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    chat: ChatConfig = field(default_factory=ChatConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    dlq: DLQConfig = field(default_factory=DLQConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


# ---------------------------------------------------------------------------
# Environment substitution
# ---------------------------------------------------------------------------


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values are returned
    unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


# ---------------------------------------------------------------------------
# Section parsing
# ---------------------------------------------------------------------------


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a TOML table")
    return section


T = TypeVar("T")


def _build(cls: type[T], section: dict[str, Any], name: str) -> T:
    """Instantiate dataclass *cls* from *section*, rejecting unknown keys."""
    known = cls.__dataclass_fields__  # type: ignore[attr-defined]
    unknown = sorted(set(section) - set(known))
    if unknown:
        raise ConfigError(f"Unknown key(s) in [{name}]: {', '.join(unknown)}")
    try:
        return cls(**section)
    except TypeError as exc:
        raise ConfigError(f"Invalid [{name}] section: {exc}") from exc


def _require_positive(value: float, path: str) -> None:
    if not isinstance(value, int | float) or isinstance(value, bool) or value <= 0:
        raise ConfigError(f"{path} must be a positive number, got {value!r}")


def _validate_cron(expr: str, path: str) -> None:
    if not isinstance(expr, str) or not croniter.is_valid(expr):
        raise ConfigError(f"{path} is not a valid cron expression: {expr!r}")


def _validate(config: DosewatchConfig) -> None:
    retry = config.retry
    if not isinstance(retry.max_attempts, int) or retry.max_attempts < 1:
        raise ConfigError("retry.max_attempts must be an integer >= 1")
    _require_positive(retry.base_delay_seconds, "retry.base_delay_seconds")
    _require_positive(retry.max_delay_seconds, "retry.max_delay_seconds")
    _require_positive(retry.send_timeout_seconds, "retry.send_timeout_seconds")
    if retry.max_delay_seconds < retry.base_delay_seconds:
        raise ConfigError("retry.max_delay_seconds must be >= retry.base_delay_seconds")

    _require_positive(config.dedup.window_minutes, "dedup.window_minutes")
    _require_positive(config.dedup.retention_days, "dedup.retention_days")
    _require_positive(config.dlq.auto_retry_ceiling, "dlq.auto_retry_ceiling")
    _require_positive(config.dlq.retention_days, "dlq.retention_days")
    _require_positive(config.metrics.retention_minutes, "metrics.retention_minutes")
    _require_positive(config.scheduler.tick_interval_seconds, "scheduler.tick_interval_seconds")
    _require_positive(config.scheduler.max_concurrency, "scheduler.max_concurrency")

    health = config.health
    if health.dlq_warning > health.dlq_critical:
        raise ConfigError("health.dlq_warning must be <= health.dlq_critical")
    if health.no_success_warning_minutes > health.no_success_critical_minutes:
        raise ConfigError(
            "health.no_success_warning_minutes must be <= health.no_success_critical_minutes"
        )

    try:
        ZoneInfo(config.scheduler.default_timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(
            f"scheduler.default_timezone is not a known IANA zone: "
            f"{config.scheduler.default_timezone!r}"
        ) from exc

    for attr in (
        "daily_digest_cron",
        "stock_alert_cron",
        "metrics_sweep_cron",
        "dedup_cleanup_cron",
        "dlq_cleanup_cron",
    ):
        _validate_cron(getattr(config.scheduler, attr), f"scheduler.{attr}")
    _validate_cron(config.dlq.reprocess_cron, "dlq.reprocess_cron")

    if config.logging.format not in _VALID_LOG_FORMATS:
        raise ConfigError(
            f"logging.format must be one of {sorted(_VALID_LOG_FORMATS)}, "
            f"got {config.logging.format!r}"
        )


def parse_config(data: dict[str, Any]) -> DosewatchConfig:
    """Build a validated :class:`DosewatchConfig` from parsed TOML *data*."""
    data = resolve_env_vars(data)
    config = DosewatchConfig(
        database=_build(DatabaseConfig, _section(data, "database"), "database"),
        chat=_build(ChatConfig, _section(data, "chat"), "chat"),
        retry=_build(RetryConfig, _section(data, "retry"), "retry"),
        dedup=_build(DedupConfig, _section(data, "dedup"), "dedup"),
        dlq=_build(DLQConfig, _section(data, "dlq"), "dlq"),
        metrics=_build(MetricsConfig, _section(data, "metrics"), "metrics"),
        health=_build(HealthConfig, _section(data, "health"), "health"),
        scheduler=_build(SchedulerConfig, _section(data, "scheduler"), "scheduler"),
        logging=_build(LoggingConfig, _section(data, "logging"), "logging"),
        api=_build(ApiConfig, _section(data, "api"), "api"),
    )
    _validate(config)
    return config


def load_config(path: Path | None = None, *, required: bool = False) -> DosewatchConfig:
    """Load and validate a ``dosewatch.toml``.

    Parameters
    ----------
    path:
        A file, or a directory containing ``dosewatch.toml``.  Defaults to
        ``$DOSEWATCH_CONFIG`` and then the current directory.
    required:
        When False (default), a missing file yields the default configuration.

    Raises
    ------
    ConfigError
        If the file is required but missing, contains invalid TOML, references
        unset environment variables, or fails validation.
    """
    if path is None:
        env_path = os.environ.get("DOSEWATCH_CONFIG")
        path = Path(env_path) if env_path else Path.cwd()
    path = Path(path)
    toml_path = path / DEFAULT_CONFIG_FILENAME if path.is_dir() else path

    if not toml_path.exists():
        if required:
            raise ConfigError(f"Config file not found: {toml_path}")
        return parse_config({})

    try:
        data = tomllib.loads(toml_path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
