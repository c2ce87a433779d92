from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Literal, Union

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator


_ENV_REF = re.compile(r"\$\{([A-Z0-9_]+)\}")
_TRUTHY = frozenset({"1", "true", "t", "yes", "y", "on"})


def _expand_env_vars(node: Any) -> Any:
    """Replace `${NAME}` inside YAML strings with the environment value (empty when unset)."""
    if isinstance(node, dict):
        return {key: _expand_env_vars(value) for key, value in node.items()}
    if isinstance(node, list):
        return [_expand_env_vars(item) for item in node]
    if isinstance(node, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), ""), node)
    return node


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    return raw in _TRUTHY if raw else default


def _deep_merge(base: Any, override: Any) -> Any:
    """Overlay `override` onto `base`; nested sections merge key by key, anything else replaces."""
    if not (isinstance(base, dict) and isinstance(override, dict)):
        return override
    merged = dict(base)
    for key, value in override.items():
        merged[key] = _deep_merge(merged[key], value) if key in merged else value
    return merged


def _env_defaults() -> dict:
    """Settings read from the environment (or `.env`); the YAML file, when present, is laid over these."""
    return {
        "store": {
            "db_path": os.getenv("DEBT_DB_PATH", "data/debts.db"),
            "busy_timeout_s": os.getenv("DEBT_DB_BUSY_TIMEOUT_S", "5.0"),
        },
        "interest": {
            "basis": os.getenv("INTEREST_BASIS", "outstanding_principal"),
            "month_rounding": os.getenv("INTEREST_MONTH_ROUNDING", "floor"),
        },
        "scheduler": {
            "run_hour": os.getenv("REMINDER_HOUR", "9"),
            "lookahead_days": os.getenv("REMINDER_LOOKAHEAD_DAYS", "3"),
            "send_timeout_s": os.getenv("REMINDER_SEND_TIMEOUT_S", "10"),
            "send_attempts": os.getenv("REMINDER_SEND_ATTEMPTS", "3"),
        },
        "notifications": {
            "enabled": _env_bool("NOTIFY_ENABLED", default=True),
            "channel": os.getenv("NOTIFY_CHANNEL", "email"),
            "default_recipient": os.getenv("NOTIFY_DEFAULT_RECIPIENT", ""),
            "sender_name": os.getenv("NOTIFY_SENDER_NAME", "Accounts Receivable"),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", "data/debt_tracker.log"),
        },
    }


class StoreConfig(BaseModel):
    db_path: str = "data/debts.db"
    # sqlite lock wait; the upper bound on any single persistence call.
    busy_timeout_s: float = Field(default=5.0, gt=0)


class InterestConfig(BaseModel):
    """
    Interest policy for overdue debts.

    `basis` picks the amount a monthly charge is computed on (what is still owed, or the full original
    amount); `month_rounding` decides whether a started month already counts.
    """

    basis: Literal["outstanding_principal", "total_amount"] = "outstanding_principal"
    month_rounding: Literal["floor", "ceil"] = "floor"


class SchedulerConfig(BaseModel):
    run_hour: int = Field(default=9, ge=0, le=23)
    lookahead_days: int = Field(default=3, ge=0)
    send_timeout_s: float = Field(default=10.0, gt=0)
    send_attempts: int = Field(default=3, ge=1)
    retry_base_delay_s: float = Field(default=0.25, ge=0)


class NotificationsConfig(BaseModel):
    enabled: bool = True
    channel: str = "email"
    # Fallback inbox (e.g. the collections desk) for clients without an email address.
    default_recipient: str = ""
    sender_name: str = "Accounts Receivable"

    @field_validator("channel")
    @classmethod
    def _channel_slug(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if not v:
            raise ValueError("notifications.channel must not be empty")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = "data/debt_tracker.log"


class AppConfig(BaseModel):
    store: StoreConfig = StoreConfig()
    interest: InterestConfig = InterestConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    notifications: NotificationsConfig = NotificationsConfig()
    logging: LoggingConfig = LoggingConfig()

    @model_validator(mode="after")
    def _check_store_path(self) -> "AppConfig":
        if not (self.store.db_path or "").strip():
            raise ValueError("store.db_path is required")
        return self


def load_config(path: Union[str, Path]) -> AppConfig:
    p = Path(path)
    raw: dict = {}
    if p.exists():
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        raw = _expand_env_vars(raw)

    merged = _deep_merge(_env_defaults(), raw)
    return AppConfig.model_validate(merged)
