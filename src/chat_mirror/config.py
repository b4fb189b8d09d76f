"""Configuration for the chat mirror.

Secrets (the user key) live in keys.yaml, everything else in the
``chat:`` section of config.yaml.

Priority order (highest wins):
1. Environment variables (CHAT_*)
2. keys.yaml for secrets
3. config.yaml chat: section
4. Dataclass defaults
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .conventions import (
    CHAT_HOME,
    CONFIG_FILENAME,
    DEFAULT_HOST_TEMPLATE,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_REQUEST_TIMEOUT,
    KEYS_FILENAME,
)
from .schema import UserIdentity

logger = logging.getLogger(__name__)


def _chat_home() -> Path:
    return Path(CHAT_HOME).expanduser()


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text())
        return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError):
        logger.warning("Failed to read %s", path, exc_info=True)
        return {}


def _load_keys() -> dict[str, Any]:
    """Load secrets from ~/.chat-mirror/keys.yaml."""
    return _read_yaml(_chat_home() / KEYS_FILENAME)


def _load_chat_section() -> dict[str, Any]:
    """Load the chat: section from ~/.chat-mirror/config.yaml."""
    data = _read_yaml(_chat_home() / CONFIG_FILENAME)
    section = data.get("chat")
    return section if isinstance(section, dict) else {}


def _str(
    env_key: str,
    keys: dict[str, Any],
    config: dict[str, Any],
    config_key: str,
    default: str = "",
) -> str:
    """Get string: env > keys.yaml > config.yaml > default."""
    env = os.environ.get(env_key, "")
    if env:
        return env
    k = keys.get(env_key, "")
    if k:
        return str(k)
    c = config.get(config_key, "")
    if c:
        return str(c)
    return default


def _bool(
    env_key: str,
    config: dict[str, Any],
    config_key: str,
    default: bool = False,
) -> bool:
    """Get bool: env > config.yaml > default."""
    env = os.environ.get(env_key, "")
    if env:
        return env.lower() in ("1", "true", "yes")
    val = config.get(config_key)
    if val is not None:
        return bool(val)
    return default


def _number(
    env_key: str,
    config: dict[str, Any],
    config_key: str,
    default: float,
    cast: type = int,
) -> Any:
    """Get a number: env > config.yaml > default. Unparseable values fall through."""
    for raw in (os.environ.get(env_key, ""), config.get(config_key)):
        if raw in ("", None):
            continue
        try:
            return cast(raw)
        except (ValueError, TypeError):
            logger.warning("Ignoring invalid %s value %r", env_key, raw)
    return default


@dataclass
class ChatConfig:
    """Chat mirror configuration."""

    # --- Application ---
    app_id: str = ""
    base_url: str = ""  # overrides https://{app_id}.qiscus.com

    # --- User identity ---
    email: str = ""
    user_key: str = ""  # secret, from keys.yaml
    username: str = ""
    avatar_url: str = ""

    # --- Behavior ---
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT

    # --- Mode ---
    simulator_mode: bool = False

    @classmethod
    def from_env(cls) -> ChatConfig:
        """Load from keys.yaml + config.yaml + env."""
        keys = _load_keys()
        cfg = _load_chat_section()
        return cls(
            app_id=_str("CHAT_APP_ID", {}, cfg, "app_id"),
            base_url=_str("CHAT_BASE_URL", {}, cfg, "base_url"),
            email=_str("CHAT_USER_EMAIL", {}, cfg, "email"),
            user_key=_str("CHAT_USER_KEY", keys, cfg, "user_key"),
            username=_str("CHAT_USERNAME", {}, cfg, "username"),
            avatar_url=_str("CHAT_AVATAR_URL", {}, cfg, "avatar_url"),
            poll_interval_seconds=_number(
                "CHAT_POLL_INTERVAL",
                cfg,
                "poll_interval_seconds",
                DEFAULT_POLL_INTERVAL,
            ),
            request_timeout=_number(
                "CHAT_REQUEST_TIMEOUT",
                cfg,
                "request_timeout",
                DEFAULT_REQUEST_TIMEOUT,
                cast=float,
            ),
            simulator_mode=_bool("CHAT_SIMULATOR_MODE", cfg, "simulator_mode"),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.app_id and self.email and self.user_key)

    @property
    def mode(self) -> str:
        if self.simulator_mode:
            return "simulator"
        if self.is_configured:
            return "http"
        return "unconfigured"

    @property
    def effective_base_url(self) -> str:
        if self.base_url:
            return self.base_url.rstrip("/")
        return DEFAULT_HOST_TEMPLATE.format(app_id=self.app_id)

    @property
    def identity(self) -> UserIdentity:
        return UserIdentity(
            email=self.email,
            key=self.user_key,
            username=self.username or self.email,
            avatar_url=self.avatar_url,
        )

    def validate(self) -> None:
        """Raise ValueError when a value required before login is missing."""
        missing = []
        if not self.app_id:
            missing.append("app_id")
        if not self.email:
            missing.append("email")
        if missing:
            raise ValueError(f"Chat config incomplete, missing: {', '.join(missing)}")
