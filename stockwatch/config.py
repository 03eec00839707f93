"""
Configuration loading and validation.
"""

import logging
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)


class ConfigValidationError(Exception):
    """Raised when configuration is invalid."""

    pass


WINDOW_NAMES = ("intraday", "risk", "technical", "us_intraday")
OVERNIGHT_WINDOWS = ("us_intraday",)


@dataclass
class DatabaseConfig:
    """Database configuration."""

    path: str = "data/stockwatch.db"


@dataclass
class SweepWindow:
    """Minute cadence and HH:MM window of one periodic sweep."""

    every_minutes: int
    start: str
    end: str


@dataclass
class ScheduleConfig:
    """Schedule configuration."""

    timezone: str = "Asia/Taipei"
    intraday: SweepWindow = field(
        default_factory=lambda: SweepWindow(every_minutes=5, start="09:00", end="13:30")
    )
    risk: SweepWindow = field(
        default_factory=lambda: SweepWindow(every_minutes=10, start="09:30", end="13:30")
    )
    technical: SweepWindow = field(
        default_factory=lambda: SweepWindow(every_minutes=15, start="09:30", end="13:30")
    )
    us_intraday: SweepWindow = field(
        default_factory=lambda: SweepWindow(every_minutes=30, start="22:00", end="05:00")
    )
    daily_report_at: str = "13:40"
    holdings_summary_at: str = "14:00"
    institutional_at: str = "15:30"
    cleanup_at: str = "03:00"


@dataclass
class ProvidersConfig:
    """Upstream quote provider settings."""

    session_open: str = "09:00"
    session_close: str = "13:30"
    structured_timeout: float = 10.0
    html_timeout: float = 15.0
    closing_cache_seconds: int = 600
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    )


@dataclass
class LineConfig:
    """LINE Messaging API settings."""

    channel_access_token: str = ""
    user_id: str = ""
    dispatch_delay_seconds: float = 1.0


@dataclass
class AdvancedConfig:
    """Advanced configuration."""

    log_level: str = "INFO"
    technical_cooldown_hours: int = 4
    per_security_delay_seconds: float = 0.5
    backfill_history: bool = True
    history_retention_days: int = 90
    alert_log_retention_days: int = 30


@dataclass
class AppConfig:
    """Main application configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)
    line: LineConfig = field(default_factory=LineConfig)
    advanced: AdvancedConfig = field(default_factory=AdvancedConfig)


@dataclass
class AlertSettings:
    """
    Runtime alert settings, edited by users and stored as key/value rows.

    Parsed once per sweep so a sweep sees a consistent view.
    """

    price_threshold: float = 3.0
    us_price_threshold: float = 0.0
    ma_period: int = 20
    highlow_days: int = 20
    enable_ma_alert: bool = True
    enable_highlow_alert: bool = True
    stop_loss_percent: float = -10.0
    take_profit_percent: float = 20.0
    holdings_summary_enabled: bool = True
    holdings_card_threshold: int = 8
    line_user_id: Optional[str] = None

    @classmethod
    def from_rows(cls, rows: dict[str, Optional[str]]) -> "AlertSettings":
        """
        Build settings from raw key/value rows.

        Unknown keys are ignored; values that cannot be parsed keep the
        default and are logged.
        """
        settings = cls()
        for f in fields(cls):
            raw = rows.get(f.name)
            if raw is None or raw == "":
                continue
            default = getattr(settings, f.name)
            try:
                setattr(settings, f.name, _coerce(raw, default))
            except ValueError:
                logger.warning(
                    f"Ignoring invalid setting {f.name}={raw!r}, using {default!r}"
                )
        return settings

    @property
    def us_threshold(self) -> float:
        """Change threshold for foreign tickers; 0 means use price_threshold."""
        return self.us_price_threshold if self.us_price_threshold > 0 else self.price_threshold

    @classmethod
    def parse_value(cls, key: str, raw: str) -> Any:
        """Parse one raw value for a setting; raises ValueError if invalid."""
        if key not in {f.name for f in fields(cls)}:
            raise ValueError(f"Unknown setting: {key}")
        return _coerce(raw, getattr(cls(), key))


def _coerce(raw: str, default: Any) -> Any:
    """Convert a raw setting string to the type of its default."""
    if isinstance(default, bool):
        lowered = raw.strip().lower()
        if lowered in ("true", "1", "yes", "on"):
            return True
        if lowered in ("false", "0", "no", "off"):
            return False
        raise ValueError(raw)
    if isinstance(default, int):
        return int(float(raw))
    if isinstance(default, float):
        return float(raw)
    return raw


def _substitute_env_vars(value: Any) -> Any:
    """Substitute environment variables in string values."""
    if isinstance(value, str):
        # Match ${VAR_NAME} pattern
        pattern = r"\$\{([^}]+)\}"
        matches = re.findall(pattern, value)
        for var_name in matches:
            env_value = os.environ.get(var_name, "")
            value = value.replace(f"${{{var_name}}}", env_value)
        return value
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def parse_hhmm(value: str) -> tuple[int, int]:
    """Parse an HH:MM string into (hour, minute)."""
    match = re.fullmatch(r"(\d{1,2}):(\d{2})", str(value).strip())
    if not match:
        raise ConfigValidationError(f"Invalid time of day: {value!r}")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ConfigValidationError(f"Invalid time of day: {value!r}")
    return hour, minute


def _validate_window(name: str, window: dict[str, Any], overnight: bool = False) -> None:
    """Validate a sweep window mapping; overnight windows may wrap past midnight."""
    every = window.get("every_minutes", 1)
    if not isinstance(every, int) or every <= 0:
        raise ConfigValidationError(f"{name}.every_minutes must be a positive integer")
    start = parse_hhmm(window.get("start", "00:00"))
    end = parse_hhmm(window.get("end", "23:59"))
    if start == end or (start > end and not overnight):
        raise ConfigValidationError(f"{name} window must start before it ends")


def _validate_config(config_dict: dict[str, Any]) -> None:
    """Validate configuration values."""
    db_config = config_dict.get("database") or {}
    db_path = db_config.get("path")
    if not db_path:
        raise ConfigValidationError("Database path is required")

    if db_path != ":memory:":
        parent = Path(db_path).parent
        if parent.exists() and not os.access(parent, os.W_OK):
            raise ConfigValidationError(f"Database path not writable: {parent}")

    schedule = config_dict.get("schedule") or {}
    if not schedule.get("timezone", "Asia/Taipei"):
        raise ConfigValidationError("Timezone cannot be empty")
    for name in WINDOW_NAMES:
        if name in schedule:
            _validate_window(name, schedule[name] or {}, overnight=name in OVERNIGHT_WINDOWS)
    for name in ("daily_report_at", "holdings_summary_at", "institutional_at", "cleanup_at"):
        if name in schedule:
            parse_hhmm(schedule[name])

    providers = config_dict.get("providers") or {}
    session_open = parse_hhmm(providers.get("session_open", "09:00"))
    session_close = parse_hhmm(providers.get("session_close", "13:30"))
    if session_open >= session_close:
        raise ConfigValidationError("Market session must open before it closes")


def load_config(config_path: str) -> AppConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        AppConfig instance

    Raises:
        ConfigValidationError: If configuration is invalid
        FileNotFoundError: If config file doesn't exist
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path, encoding="utf-8") as f:
        raw_config = yaml.safe_load(f) or {}

    config_dict = _substitute_env_vars(raw_config)
    _validate_config(config_dict)

    try:
        database = DatabaseConfig(**(config_dict.get("database") or {}))

        sched_dict = dict(config_dict.get("schedule") or {})
        windows = {
            name: SweepWindow(**sched_dict.pop(name))
            for name in WINDOW_NAMES
            if name in sched_dict
        }
        schedule = ScheduleConfig(**sched_dict, **windows)

        providers = ProvidersConfig(**(config_dict.get("providers") or {}))
        line = LineConfig(**(config_dict.get("line") or {}))
        advanced = AdvancedConfig(**(config_dict.get("advanced") or {}))
    except TypeError as e:
        raise ConfigValidationError(f"Unknown configuration key: {e}") from e

    return AppConfig(
        database=database,
        schedule=schedule,
        providers=providers,
        line=line,
        advanced=advanced,
    )
