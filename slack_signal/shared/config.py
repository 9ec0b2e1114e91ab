import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ValidationError, field_validator

from .config_keys import ConfigKeys
from .constants import (
    DEFAULT_DEVICE_HOST,
    DEFAULT_DEVICE_PORT,
    DEFAULT_HTTP_HOST,
    DEFAULT_HTTP_PORT,
    STORE_MAX_MESSAGES,
    STORE_RETENTION,
)
from .exceptions import ConfigurationError
from .utils import parse_duration_seconds

__all__ = ("Config",)

_MISSING = object()

_ENV_TO_KEY = {
    "SLACK_APP_TOKEN": ConfigKeys.SLACK_APP_TOKEN,
    "SLACK_BOT_TOKEN": ConfigKeys.SLACK_BOT_TOKEN,
    "SLACK_DEFAULT_USER_ID": ConfigKeys.SLACK_DEFAULT_USER_ID,
    "SLACK_RESOLVE_NAMES": ConfigKeys.SLACK_RESOLVE_NAMES,
    "ESP_WS_HOST": ConfigKeys.DEVICE_HOST,
    "ESP_WS_PORT": ConfigKeys.DEVICE_PORT,
    "HTTP_ENABLED": ConfigKeys.HTTP_ENABLED,
    "HTTP_HOST": ConfigKeys.HTTP_HOST,
    "PORT": ConfigKeys.HTTP_PORT,
    "MESSAGE_RETENTION": ConfigKeys.STORE_RETENTION,
    "MESSAGE_STORE_MAX": ConfigKeys.STORE_MAX_MESSAGES,
    "LOG_PATH": ConfigKeys.LOG_PATH,
    "LOG_LEVEL": ConfigKeys.LOG_LEVEL,
    "LOG_FULL_TEXT": ConfigKeys.LOG_FULL_TEXT,
    "LOG_REDACT_TEXT": ConfigKeys.LOG_REDACT_TEXT,
    "LOG_DUMP_EVENTS": ConfigKeys.LOG_DUMP_EVENTS,
}


def _set_dotted(config: dict[str, Any], dotted: str, value: Any) -> None:
    cur: dict[str, Any] = config
    parts = dotted.split(".")
    for key in parts[:-1]:
        nxt = cur.get(key)
        if not isinstance(nxt, dict):
            nxt = {}
            cur[key] = nxt
        cur = nxt
    cur[parts[-1]] = value


def _get_dotted(config: dict[str, Any], dotted: str) -> Any:
    cur: Any = config
    for key in dotted.split("."):
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _validate_port(v: int) -> int:
    if not (0 <= v <= 65535):
        raise ValueError("port must be between 0 and 65535")
    return v


class SlackConfig(BaseModel):
    app_token: str | None = None
    bot_token: str | None = None
    default_user_id: str | None = None
    resolve_names: bool = True

    @field_validator("app_token", "bot_token", "default_user_id")
    @classmethod
    def _blank_to_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        s = v.strip()
        return s or None


class DeviceConfig(BaseModel):
    host: str = DEFAULT_DEVICE_HOST
    port: int = DEFAULT_DEVICE_PORT

    @field_validator("port")
    @classmethod
    def _validate_port(cls, v: int) -> int:
        return _validate_port(v)


class HTTPConfig(BaseModel):
    enabled: bool = True
    host: str = DEFAULT_HTTP_HOST
    port: int = DEFAULT_HTTP_PORT

    @field_validator("port")
    @classmethod
    def _validate_port(cls, v: int) -> int:
        return _validate_port(v)


class StoreConfig(BaseModel):
    retention: int | str = STORE_RETENTION
    max_messages: int = STORE_MAX_MESSAGES

    @field_validator("retention")
    @classmethod
    def _validate_retention(cls, v: int | str) -> int:
        seconds = parse_duration_seconds(v)
        if seconds is None or seconds <= 0:
            raise ValueError("message retention must be a positive duration")
        return seconds

    @field_validator("max_messages")
    @classmethod
    def _validate_max_messages(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("message store size must be > 0")
        return v


class LogConfig(BaseModel):
    path: str = "logs/slack-signal.log"
    level: str = "INFO"
    full_text: bool = False
    redact_text: bool = False
    dump_events: bool = False

    @field_validator("level")
    @classmethod
    def _validate_level(cls, v: str) -> str:
        s = v.strip().upper()
        if s not in {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {v}")
        return s


class AppConfig(BaseModel):
    slack: SlackConfig = SlackConfig()
    device: DeviceConfig = DeviceConfig()
    http: HTTPConfig = HTTPConfig()
    store: StoreConfig = StoreConfig()
    log: LogConfig = LogConfig()


class Config:
    def __init__(self, config_path: str | None = None):
        self.config_path = config_path or os.environ.get("CONFIG_PATH", "config.yaml")
        self._model: AppConfig | None = None
        self.data: dict[str, Any] = {}

    def load(self) -> None:
        merged = self._load_yaml_config(Path(self.config_path))
        self._apply_env_overrides(merged)
        self._model = self._validate_model(merged)
        self.data = self._model.model_dump()
        self._ensure_paths()

    @staticmethod
    def _load_yaml_config(config_path: Path) -> dict[str, Any]:
        if not config_path.exists():
            return {}
        if not config_path.is_file():
            raise ConfigurationError(f"config path is not a file: {config_path}")
        try:
            raw = config_path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise ConfigurationError(f"Config file decode error: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Config file read error: {e}") from e
        try:
            loaded = yaml.safe_load(raw) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"YAML config parse error: {e}") from e
        if not isinstance(loaded, dict):
            raise ConfigurationError("config file root node must be an object")
        return loaded

    @staticmethod
    def _apply_env_overrides(config: dict[str, Any]) -> None:
        for env_name, key in _ENV_TO_KEY.items():
            if (env_value := os.environ.get(env_name)) is not None:
                _set_dotted(config, key, env_value)

    @staticmethod
    def _validate_model(config: dict[str, Any]) -> AppConfig:
        try:
            return AppConfig.model_validate(config)
        except ValidationError as e:
            raise ConfigurationError(str(e)) from e

    def _ensure_paths(self) -> None:
        path = self.get(ConfigKeys.LOG_PATH)
        if not isinstance(path, str) or not path:
            return
        try:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"failed to create log directory: {path}") from e

    def get(self, key: str, default: Any = _MISSING) -> Any:
        if self._model is None:
            if default is not _MISSING:
                return default
            return None
        value = _get_dotted(self.data, key)
        if value is None and default is not _MISSING:
            return default
        return value

    def get_required(self, key: str, desc: str | None = None) -> Any:
        value = self.get(key)
        if value is None:
            raise ConfigurationError(f"missing required config: {desc or key}")
        if isinstance(value, str) and not value.strip():
            raise ConfigurationError(f"missing required config: {desc or key}")
        return value
