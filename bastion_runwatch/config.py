"""Configuration for bastion-runwatch."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

# Default paths
DEFAULT_CONFIG_DIR = Path.home() / ".config" / "bastion-runwatch"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

DEFAULT_POLL_INTERVAL_S = 1.0
DEFAULT_MAX_POLL_FAILURES = 3
DEFAULT_RECONNECT_MAX_DELAY_S = 30.0
DEFAULT_FOLLOW_THRESHOLD_PX = 16.0
DEFAULT_FOLLOW_SUPPRESS_MS = 300


def _float_field(data: dict[str, Any], key: str, default: float | None) -> float | None:
    value = data.get(key, default)
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'{key}' must be a number, got {value!r}") from exc


def _int_field(data: dict[str, Any], key: str, default: int) -> int:
    value = data.get(key, default)
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'{key}' must be an integer, got {value!r}") from exc


@dataclass
class RunwatchConfig:
    """Connection and behaviour settings for following runs."""

    hub_url: str = ""
    session_token: str | None = None
    poll_interval_s: float = DEFAULT_POLL_INTERVAL_S
    max_poll_failures: int = DEFAULT_MAX_POLL_FAILURES
    reconnect_max_delay_s: float = DEFAULT_RECONNECT_MAX_DELAY_S
    follow_threshold_px: float = DEFAULT_FOLLOW_THRESHOLD_PX
    follow_suppress_ms: int = DEFAULT_FOLLOW_SUPPRESS_MS
    request_timeout_s: float | None = None  # hub requests have no deadline by default
    verify_tls: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunwatchConfig:
        """Create config from dictionary (e.g., parsed YAML)."""
        rw = data.get("runwatch", data)
        if not isinstance(rw, dict):
            raise ConfigError("'runwatch' section must be a mapping")

        poll_interval = _float_field(rw, "poll_interval_s", DEFAULT_POLL_INTERVAL_S)
        if poll_interval is None or poll_interval <= 0:
            raise ConfigError("'poll_interval_s' must be positive")

        return cls(
            hub_url=str(rw.get("hub_url", "") or "").rstrip("/"),
            session_token=rw.get("session_token"),
            poll_interval_s=poll_interval,
            max_poll_failures=_int_field(rw, "max_poll_failures", DEFAULT_MAX_POLL_FAILURES),
            reconnect_max_delay_s=_float_field(
                rw, "reconnect_max_delay_s", DEFAULT_RECONNECT_MAX_DELAY_S
            )
            or DEFAULT_RECONNECT_MAX_DELAY_S,
            follow_threshold_px=_float_field(rw, "follow_threshold_px", DEFAULT_FOLLOW_THRESHOLD_PX)
            or 0.0,
            follow_suppress_ms=_int_field(rw, "follow_suppress_ms", DEFAULT_FOLLOW_SUPPRESS_MS),
            request_timeout_s=_float_field(rw, "request_timeout_s", None),
            verify_tls=bool(rw.get("verify_tls", True)),
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> RunwatchConfig:
        """Load config from YAML file."""
        path = Path(path).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        return cls.from_dict(data or {})

    @classmethod
    def from_env(
        cls,
        hub_url: str | None = None,
        session_token: str | None = None,
        env: dict[str, str] | None = None,
    ) -> RunwatchConfig:
        """Create config from environment variables and CLI arguments.

        CLI arguments take precedence over environment variables.
        """
        env = dict(os.environ) if env is None else env

        config_path = env.get("BASTION_RUNWATCH_CONFIG")
        if config_path:
            config = cls.from_yaml(config_path)
        elif DEFAULT_CONFIG_FILE.exists():
            config = cls.from_yaml(DEFAULT_CONFIG_FILE)
        else:
            config = cls()

        resolved_hub = hub_url or env.get("BASTION_HUB_URL")
        if resolved_hub:
            config.hub_url = resolved_hub.rstrip("/")
        resolved_session = session_token or env.get("BASTION_SESSION")
        if resolved_session:
            config.session_token = resolved_session

        poll = env.get("BASTION_RUNWATCH_POLL_INTERVAL")
        if poll:
            try:
                interval = float(poll)
            except ValueError as exc:
                raise ConfigError(
                    f"BASTION_RUNWATCH_POLL_INTERVAL must be a number, got {poll!r}"
                ) from exc
            if not interval > 0:
                raise ConfigError(
                    f"BASTION_RUNWATCH_POLL_INTERVAL must be positive, got {poll!r}"
                )
            config.poll_interval_s = interval

        return config

    @classmethod
    def load(
        cls,
        config_path: str | None = None,
        hub_url: str | None = None,
        session_token: str | None = None,
    ) -> RunwatchConfig:
        """Load config with precedence: explicit path > CLI args > env vars > defaults.

        Args:
            config_path: Explicit path to config file (highest precedence).
            hub_url: Hub base URL from CLI argument.
            session_token: Session cookie value from CLI argument.

        Returns:
            Loaded runwatch config.
        """
        if config_path:
            config = cls.from_yaml(config_path)
            # CLI values still fill gaps the file leaves open
            if hub_url and not config.hub_url:
                config.hub_url = hub_url.rstrip("/")
            if session_token and not config.session_token:
                config.session_token = session_token
            return config

        return cls.from_env(hub_url=hub_url, session_token=session_token)
