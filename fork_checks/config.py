"""Configuration loading for the fork checker.

The config file is YAML (a JSON file is accepted as-is). Keys may use the
camelCase names of the legacy JSON config or their snake_case equivalents.
"""

from __future__ import annotations

import math
import os
import re
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator

from fork_checks.nodes import InvalidNodeError, NodeInfo, parse_nodes


logger = structlog.get_logger(__name__)

DEFAULT_OFFLINE_ALERT_REPEAT_INTERVAL = 12 * 3600.0
DEFAULT_OFFLINE_DURATION_THRESHOLD = 5 * 60.0
DEFAULT_SYNC_ALERT_REPEAT_INTERVAL = 6 * 3600.0
DEFAULT_STUCK_DURATION_THRESHOLD = 10 * 60.0
DEFAULT_AVG_SECONDS_PER_BLOCK = 15.0

_DURATION_DEFAULTS = {
    "offline_alert_repeat_interval": DEFAULT_OFFLINE_ALERT_REPEAT_INTERVAL,
    "offline_duration_threshold": DEFAULT_OFFLINE_DURATION_THRESHOLD,
    "sync_alert_repeat_interval": DEFAULT_SYNC_ALERT_REPEAT_INTERVAL,
    "stuck_duration_threshold": DEFAULT_STUCK_DURATION_THRESHOLD,
}

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


class ConfigError(ValueError):
    pass


def parse_duration(value: Any) -> float:
    """
    Parse a duration into seconds.

    Accepts plain numbers (seconds) and Go-style strings such as "2h", "1h30m",
    "90s" or "500ms". Raises ValueError for anything else, including negatives.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        s = str(value or "").strip()
        if not s:
            raise ValueError("Empty duration")
        try:
            seconds = float(s)
        except ValueError:
            pos = 0
            seconds = 0.0
            for m in _DURATION_PART_RE.finditer(s):
                if m.start() != pos:
                    raise ValueError(f"Invalid duration {value!r}") from None
                seconds += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
                pos = m.end()
            if pos != len(s):
                raise ValueError(f"Invalid duration {value!r}") from None
    if not math.isfinite(seconds):
        raise ValueError(f"Invalid duration {value!r}")
    if seconds < 0:
        raise ValueError(f"Negative duration {value!r}")
    return seconds


class AlertConfig(BaseModel):
    """Thresholds and repeat intervals used by the alert manager. Durations are in seconds."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    offline_alert_repeat_interval: float = Field(
        default=DEFAULT_OFFLINE_ALERT_REPEAT_INTERVAL, alias="offlineAlertRepeatInterval"
    )
    offline_duration_threshold: float = Field(
        default=DEFAULT_OFFLINE_DURATION_THRESHOLD, alias="offlineDurationThreshold"
    )
    offline_consecutive_blocks_threshold: Optional[int] = Field(
        default=None, ge=0, alias="offlineConsecutiveBlocksThreshold"
    )
    sync_alert_repeat_interval: float = Field(
        default=DEFAULT_SYNC_ALERT_REPEAT_INTERVAL, alias="syncAlertRepeatInterval"
    )
    stuck_duration_threshold: float = Field(default=DEFAULT_STUCK_DURATION_THRESHOLD, alias="stuckDurationThreshold")
    out_of_sync_blocks_threshold: int = Field(default=5, ge=0, alias="outOfSyncBlocksThreshold")
    out_of_sync_critical_nodes_threshold: int = Field(default=5, ge=0, alias="outOfSyncCriticalNodesThreshold")

    @field_validator(
        "offline_alert_repeat_interval",
        "offline_duration_threshold",
        "sync_alert_repeat_interval",
        "stuck_duration_threshold",
        mode="before",
    )
    @classmethod
    def _coerce_duration(cls, value: Any, info: ValidationInfo) -> float:
        default = _DURATION_DEFAULTS[info.field_name]
        if value is None:
            return default
        try:
            return parse_duration(value)
        except ValueError as exc:
            logger.warning(
                "Invalid duration; using default",
                field=info.field_name,
                value=repr(value),
                default_seconds=default,
                error=str(exc),
            )
            return default

    @property
    def offline_consecutive_threshold(self) -> int:
        if self.offline_consecutive_blocks_threshold is not None:
            return int(self.offline_consecutive_blocks_threshold)
        return int(self.offline_duration_threshold // DEFAULT_AVG_SECONDS_PER_BLOCK)


class NodeConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    endpoint: str
    identity_key: str = Field(alias="IdentityKey")
    friendly_name: str = Field(default="", alias="friendlyName")
    rest_url: Optional[str] = Field(default=None, alias="restUrl")


class Config(BaseModel):
    """Top-level fork checker configuration."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    nodes: list[NodeConfig] = Field(default_factory=list)
    api_urls: list[str] = Field(default_factory=list, alias="apiUrls")
    discover: bool = False
    checkpoint: int = Field(default=0, ge=0)
    height_check_interval: int = Field(default=1, ge=1, alias="heightCheckInterval")
    cycle_interval_seconds: float = Field(default=10.0, ge=0, alias="cycleIntervalSeconds")
    bot_api_key: str = Field(default="", alias="botApiKey")
    chat_id: str = Field(default="", alias="chatID")
    notify: bool = True
    alert_config: AlertConfig = Field(default_factory=AlertConfig, alias="alertConfig")

    @field_validator("chat_id", mode="before")
    @classmethod
    def _chat_id_to_str(cls, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, int) and value == 0:
            return ""
        return str(value).strip()

    def validate_required(self) -> None:
        if not self.nodes:
            raise ConfigError("nodes cannot be empty")
        if not self.api_urls:
            raise ConfigError("API url cannot be empty")
        if self.notify and not self.bot_api_key:
            raise ConfigError("BotAPIKey cannot be empty")
        if self.notify and not self.chat_id:
            raise ConfigError("ChatID cannot be empty")

    def node_infos(self) -> list[NodeInfo]:
        try:
            return parse_nodes(self.nodes)
        except InvalidNodeError as exc:
            raise ConfigError(f"error parsing node info: {exc}") from exc


def _apply_env_overrides(data: dict[str, Any]) -> None:
    bot_token = os.getenv("TELEGRAM_BOT_TOKEN")
    chat_id = os.getenv("TELEGRAM_CHAT_ID")
    if bot_token and bot_token.strip():
        data.pop("botApiKey", None)
        data["bot_api_key"] = bot_token.strip()
    if chat_id and chat_id.strip():
        data.pop("chatID", None)
        data["chat_id"] = chat_id.strip()


def load_config(path: Path | str) -> Config:
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as exc:
        raise ConfigError(f"failed reading config file '{path}': {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed parsing config file '{path}': {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"config file '{path}' must contain a mapping")

    _apply_env_overrides(data)

    try:
        config = Config.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"validation error in config file '{path}': {exc}") from exc

    try:
        config.validate_required()
        config.node_infos()
    except ConfigError as exc:
        raise ConfigError(f"validation error in config file '{path}': {exc}") from exc

    return config
