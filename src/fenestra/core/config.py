"""
Configuration schema and loading for Fenestra.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction. A loaded configuration
is wrapped in a versioned ConfigSnapshot which the orchestrator swaps
wholesale on reload - running workers never see a half-applied config.
"""

import os
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, Field, field_validator, model_validator

from fenestra.contracts.enums import BackpressureMode
from fenestra.core.canonical import canonical_json, stable_hash

# "90s", "15m", "1h30m", "-1h", "250ms", "2d", "1w"
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d|w)")
_DURATION_FULL = re.compile(r"^-?(?:\d+(?:\.\d+)?(?:ms|s|m|h|d|w))+$")
_DURATION_UNITS: dict[str, timedelta] = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}

# Trigger ids become ledger keys and CLI arguments
_TRIGGER_ID_PATTERN = r"^[A-Za-z][A-Za-z0-9_.\-]{0,127}$"


def parse_duration(value: Any) -> Any:
    """Parse shorthand duration strings into timedelta.

    Anything that is not shorthand is returned unchanged so Pydantic can
    apply its own timedelta parsing (ISO-8601 "PT1H", seconds as numbers,
    "HH:MM:SS").
    """
    if not isinstance(value, str):
        return value
    text = value.strip().replace(" ", "")
    if not _DURATION_FULL.match(text):
        return value
    total = timedelta(0)
    for amount, unit in _DURATION_PART.findall(text):
        total += float(amount) * _DURATION_UNITS[unit]
    return -total if text.startswith("-") else total


def _as_utc(value: Any) -> Any:
    """Read naive datetimes as UTC and normalize aware ones to UTC."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    return value


Duration = Annotated[timedelta, BeforeValidator(parse_duration)]


class RetryPolicySettings(BaseModel):
    """Retry budget and backoff for a trigger's windows.

    max_attempts is the TOTAL number of tries, not the number of retries.
    Backoff for attempt n: min(base_interval * 2^(n-1) + jitter, max_interval)
    with jitter uniform in [0, base_interval).
    """

    model_config = {"frozen": True}

    max_attempts: int = Field(default=3, ge=1, description="Total attempts per window")
    base_interval: Duration = Field(default=timedelta(seconds=30), description="Initial backoff interval")
    max_interval: Duration = Field(default=timedelta(minutes=10), description="Backoff ceiling")

    @model_validator(mode="after")
    def validate_intervals(self) -> "RetryPolicySettings":
        if self.base_interval <= timedelta(0):
            raise ValueError("base_interval must be positive")
        if self.max_interval < self.base_interval:
            raise ValueError(f"max_interval ({self.max_interval}) must be >= base_interval ({self.base_interval})")
        return self


class DependencySettings(BaseModel):
    """A dependency on a span of windows.

    An empty trigger_id means the trigger depends on its own earlier windows.

    Example YAML (strictly sequential hourly windows):
        dependencies:
          - offset: -1h
            size: 1h
    """

    model_config = {"frozen": True}

    trigger_id: str = Field(default="", description="Target trigger id; empty means self")
    offset: Duration = Field(description="Signed offset from the dependent window's start")
    size: Duration = Field(description="Length of the span that must be fully succeeded")

    @model_validator(mode="after")
    def validate_span(self) -> "DependencySettings":
        if self.size <= timedelta(0):
            raise ValueError("dependency size must be positive")
        if self.offset + self.size > timedelta(0):
            raise ValueError(
                f"dependency span (offset={self.offset}, size={self.size}) extends past the dependent window's start; "
                "offset + size must be <= 0"
            )
        return self

    @property
    def is_self(self) -> bool:
        return self.trigger_id == ""


class UnitOfWorkSettings(BaseModel):
    """Which unit-of-work plugin a trigger runs, and its options."""

    model_config = {"frozen": True}

    plugin: str = Field(description="Registered unit-of-work plugin name")
    options: dict[str, Any] = Field(default_factory=dict, description="Plugin-specific options")


class TriggerSettings(BaseModel):
    """A tumbling-window trigger definition.

    Example YAML:
        triggers:
          - id: orders_hourly
            window_size: 1h
            start_time: 2026-01-01T00:00:00Z
            delay: 15m
            max_concurrency: 2
            unit_of_work:
              plugin: noop
            watermark_key: orders
            retry_policy:
              max_attempts: 3
              base_interval: 30s
    """

    model_config = {"frozen": True}

    id: str = Field(pattern=_TRIGGER_ID_PATTERN, description="Trigger identifier (unique)")
    window_size: Duration = Field(description="Length of each window")
    start_time: datetime = Field(description="Start of the first window")
    end_time: datetime | None = Field(default=None, description="Exclusive end of the last window; open-ended if unset")
    delay: Duration = Field(default=timedelta(0), description="Wait after a window closes before dispatching it")
    max_concurrency: int = Field(default=1, ge=1, description="Maximum RUNNING windows at once")
    retry_policy: RetryPolicySettings = Field(default_factory=RetryPolicySettings)
    dependencies: list[DependencySettings] = Field(default_factory=list)
    unit_of_work: UnitOfWorkSettings = Field(default_factory=lambda: UnitOfWorkSettings(plugin="noop"))
    service_key: str | None = Field(default=None, description="Circuit breaker key; defaults to the trigger id")
    watermark_key: str | None = Field(default=None, description="Watermark source key for incremental extraction")
    variables: dict[str, str | int | bool | list[Any]] = Field(
        default_factory=dict,
        description="Static variables seeded into every attempt's variable bag",
    )
    enabled: bool = Field(default=True)

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def normalize_timezone(cls, v: Any) -> Any:
        return _as_utc(v)

    @field_validator("start_time", "end_time", mode="after")
    @classmethod
    def ensure_utc(cls, v: datetime | None) -> datetime | None:
        # Strings parsed by Pydantic only get a tzinfo here
        return _as_utc(v)

    @model_validator(mode="after")
    def validate_window_grid(self) -> "TriggerSettings":
        if self.window_size <= timedelta(0):
            raise ValueError("window_size must be positive")
        if self.delay < timedelta(0):
            raise ValueError("delay must not be negative")
        if self.end_time is not None:
            if self.end_time <= self.start_time:
                raise ValueError("end_time must be after start_time")
            span = self.end_time - self.start_time
            if span % self.window_size != timedelta(0):
                raise ValueError(f"end_time - start_time ({span}) must be a whole number of windows ({self.window_size})")
        return self

    @property
    def effective_service_key(self) -> str:
        return self.service_key or self.id


class LedgerSettings(BaseModel):
    """Run ledger storage configuration."""

    model_config = {"frozen": True}

    # NOTE: str, not Path - Path mangles PostgreSQL DSNs
    url: str = Field(default="sqlite:///./state/ledger.db", description="Full SQLAlchemy database URL")
    retention_days: int = Field(default=90, gt=0, description="Days to keep terminal windows before purge")


class ConcurrencySettings(BaseModel):
    """Worker pool and scheduler loop configuration."""

    model_config = {"frozen": True}

    max_workers: int = Field(default=4, gt=0, description="Worker threads shared by all triggers")
    poll_interval_seconds: float = Field(default=30.0, gt=0, description="Seconds between scheduler ticks")


class ServiceBreakerSettings(BaseModel):
    """Circuit breaker overrides for one service."""

    model_config = {"frozen": True}

    failure_threshold: int = Field(gt=0, description="Consecutive failures that open the circuit")
    reset_seconds: float = Field(gt=0, description="Seconds an open circuit waits before a probe")


class CircuitBreakerSettings(BaseModel):
    """Circuit breaker configuration.

    Example YAML:
        circuit_breaker:
          failure_threshold: 5
          reset_seconds: 60
          services:
            crm_api:
              failure_threshold: 3
              reset_seconds: 30
    """

    model_config = {"frozen": True}

    enabled: bool = Field(default=True)
    failure_threshold: int = Field(default=5, gt=0)
    reset_seconds: float = Field(default=60.0, gt=0)
    services: dict[str, ServiceBreakerSettings] = Field(default_factory=dict)

    def get_service_config(self, service_key: str) -> ServiceBreakerSettings:
        """Get breaker config for a service, with fallback to defaults."""
        if service_key in self.services:
            return self.services[service_key]
        return ServiceBreakerSettings(failure_threshold=self.failure_threshold, reset_seconds=self.reset_seconds)


class NotifierSettings(BaseModel):
    """One configured notifier."""

    model_config = {"frozen": True}

    name: str = Field(description="Registered notifier name (e.g. console, webhook)")
    options: dict[str, Any] = Field(default_factory=dict)


class NotificationSettings(BaseModel):
    """Operator notification configuration."""

    model_config = {"frozen": True}

    enabled: bool = Field(default=True)
    queue_size: int = Field(default=1000, gt=0)
    backpressure_mode: BackpressureMode = Field(default=BackpressureMode.DROP)
    notifiers: list[NotifierSettings] = Field(default_factory=list)


class FenestraSettings(BaseModel):
    """Top-level Fenestra configuration.

    Single source of truth for the orchestrator. Validated in full before any
    of it is applied, which is what makes reload transactional.
    """

    model_config = {"frozen": True}

    triggers: list[TriggerSettings] = Field(default_factory=list)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    concurrency: ConcurrencySettings = Field(default_factory=ConcurrencySettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)

    @model_validator(mode="after")
    def validate_unique_trigger_ids(self) -> "FenestraSettings":
        ids = [t.id for t in self.triggers]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"Duplicate trigger id(s): {duplicates}")
        return self

    @model_validator(mode="after")
    def validate_dependency_targets(self) -> "FenestraSettings":
        known = {t.id for t in self.triggers}
        for trigger in self.triggers:
            for dep in trigger.dependencies:
                if not dep.is_self and dep.trigger_id not in known:
                    raise ValueError(
                        f"Trigger '{trigger.id}' depends on unknown trigger '{dep.trigger_id}'. Known triggers: {sorted(known)}"
                    )
        return self

    def get_trigger(self, trigger_id: str) -> TriggerSettings:
        for trigger in self.triggers:
            if trigger.id == trigger_id:
                return trigger
        raise KeyError(trigger_id)


@dataclass(frozen=True)
class ConfigSnapshot:
    """A versioned, immutable configuration snapshot.

    The orchestrator holds exactly one snapshot at a time and replaces it
    wholesale on reload.
    """

    version: int
    settings: FenestraSettings
    config_hash: str
    triggers_by_id: dict[str, TriggerSettings] = field(repr=False)

    @classmethod
    def create(cls, settings: FenestraSettings, version: int = 1) -> "ConfigSnapshot":
        resolved = resolve_config(settings)
        return cls(
            version=version,
            settings=settings,
            config_hash=stable_hash(resolved),
            triggers_by_id={t.id: t for t in settings.triggers},
        )

    def next(self, settings: FenestraSettings) -> "ConfigSnapshot":
        """Snapshot for a reload, with the version bumped."""
        return ConfigSnapshot.create(settings, version=self.version + 1)

    def settings_json(self) -> str:
        return canonical_json(resolve_config(self.settings))


# Regex pattern for ${VAR} or ${VAR:-default} syntax
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")


def _expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ${VAR} and ${VAR:-default} patterns in config values."""

    def _expand_string(value: str) -> str:
        def replacer(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default = match.group(2)
            env_value = os.environ.get(var_name)
            if env_value is not None:
                return env_value
            if default is not None:
                return default
            # No env var and no default - keep original (validation will complain)
            return match.group(0)

        return _ENV_VAR_PATTERN.sub(replacer, value)

    def _expand_value(value: Any) -> Any:
        if isinstance(value, str):
            return _expand_string(value)
        elif isinstance(value, dict):
            return {k: _expand_value(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [_expand_value(item) for item in value]
        else:
            return value

    return {k: _expand_value(v) for k, v in config.items()}


def load_settings(config_path: Path) -> FenestraSettings:
    """Load settings from YAML file with environment variable overrides.

    Uses Dynaconf for multi-source loading with precedence:
    1. Environment variables (FENESTRA_*) - highest priority
    2. Config file (settings.yaml)
    3. Defaults from Pydantic schema - lowest priority

    Environment variable format: FENESTRA_LEDGER__URL for nested keys.

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="FENESTRA",
        settings_files=[str(config_path)],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    # Dynaconf returns uppercase keys; filter out its internal settings
    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k.lower(): v for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}

    raw_config = _expand_env_vars(raw_config)

    return FenestraSettings(**raw_config)


def resolve_config(settings: FenestraSettings) -> dict[str, Any]:
    """Convert validated settings to a JSON-ready dict for the ledger."""
    return settings.model_dump(mode="json")
