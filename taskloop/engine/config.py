"""Configuration management for taskloop."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

APP_DIR_NAME = ".taskloop"
CONFIG_FILENAME = "config.json"
ENV_PREFIX = "TASKLOOP_"

# Approval waits are bounded by this regardless of configuration.
APPROVAL_TIMEOUT_SECONDS = 300.0

DEFAULT_CONFIG = {
    "provider": "ollama",
    "model": "llama3.2",
    "endpoint": "",
    "temperature": 0.7,
    "max_tokens": 8096,
    "request_timeout": 180.0,
    "max_retries": 2,
    "agent_max_turns": 50,
    "context_budget_tokens": 80000,
    "context_keep_recent": 4,
    "tool_result_max_chars": 8000,
    "tool_timeout": 30.0,
    "auto_approve_sensitive": False,
    "approval_timeout": APPROVAL_TIMEOUT_SECONDS,
    "permission_overrides": {},
    "tool_modules": [],
    "server_host": "127.0.0.1",
    "server_port": 3000,
    "log_file": "log/taskloop.log",
    "audit_log_file": "log/audit.log",
}


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from ~/.taskloop/config.json."""

    # Model provider
    provider: str
    model: str
    endpoint: str
    temperature: float
    max_tokens: int

    # Transport
    request_timeout: float
    max_retries: int

    # Agent loop controls
    agent_max_turns: int
    context_budget_tokens: int
    context_keep_recent: int
    tool_result_max_chars: int
    tool_timeout: float

    # Safety
    auto_approve_sensitive: bool
    approval_timeout: float
    permission_overrides: dict[str, str] = field(default_factory=dict)

    # Tool plugins: import paths of modules exposing register(registry)
    tool_modules: list[str] = field(default_factory=list)

    # Server
    server_host: str = "127.0.0.1"
    server_port: int = 3000

    log_file: str = "log/taskloop.log"
    audit_log_file: str = "log/audit.log"

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> Config:
        """Load config from specified path or default ~/.taskloop/config.json."""
        if config_path:
            config_file = Path(config_path)
        else:
            config_dir = Path.home() / APP_DIR_NAME
            config_file = config_dir / CONFIG_FILENAME
            if not config_dir.exists():
                config_dir.mkdir(parents=True, exist_ok=True)

        current_config = json.loads(json.dumps(DEFAULT_CONFIG))

        if config_file.exists():
            try:
                with open(config_file, "r") as f:
                    user_config = json.load(f)
                current_config.update(
                    {k: v for k, v in user_config.items() if k in DEFAULT_CONFIG}
                )
            except (OSError, json.JSONDecodeError) as e:
                print(f"ERROR: Failed to load config from {config_file}: {e}")
                print("Using default configuration.")
        else:
            if config_path is None:
                print(f"INFO: No config found. Generating default config at {config_file}")
                try:
                    with open(config_file, "w") as f:
                        json.dump(DEFAULT_CONFIG, f, indent=4)
                except OSError as e:
                    print(f"ERROR: Failed to write default config: {e}")
            else:
                print(f"WARNING: Configuration file not found at {config_file}")
                print("Using default configuration settings.")

        # Environment overrides, coerced by the type of the default
        for key in current_config:
            env_key = f"{ENV_PREFIX}{key.upper()}"
            if env_key in os.environ:
                current_config[key] = _coerce_env(key, os.environ[env_key], current_config[key])

        # The approval bound is not user-tunable
        current_config["approval_timeout"] = APPROVAL_TIMEOUT_SECONDS

        return cls(**current_config)

    def as_dict(self) -> dict[str, Any]:
        return {k: getattr(self, k) for k in DEFAULT_CONFIG}


def _coerce_env(key: str, val: str, current: Any) -> Any:
    default_val = DEFAULT_CONFIG.get(key)
    try:
        if isinstance(default_val, bool):
            return val.lower() in ("true", "1", "yes")
        if isinstance(default_val, int):
            return int(val)
        if isinstance(default_val, float):
            return float(val)
        if isinstance(default_val, (dict, list)):
            parsed = json.loads(val)
            if isinstance(parsed, type(default_val)):
                return parsed
            logger.warning(f"Ignoring {ENV_PREFIX}{key.upper()}: expected {type(default_val).__name__}")
            return current
    except (ValueError, json.JSONDecodeError):
        logger.warning(f"Ignoring unparseable {ENV_PREFIX}{key.upper()}={val!r}")
        return current
    return val


# Singleton
_config: Config | None = None


def get_config(config_path: str | None = None) -> Config:
    """Get or create the global config instance, optionally loading from a path."""
    global _config
    if _config is None:
        _config = Config.load(config_path)
    return _config


def reset_config() -> None:
    """Drop the cached singleton so the next get_config() reloads."""
    global _config
    _config = None
