"""Settings and signed-in user lookup from config.ini and the environment."""

from __future__ import annotations

import json
import os
from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from .errors import IdentityUnavailable
from .models import DEFAULT_ROLE, User
from .storage import DEFAULT_CACHE_PATH

DEFAULT_CONFIG_PATH = "config.ini"
DEFAULT_PROFILE_PATH = Path.home() / ".automate_chat_user"
ENV_PREFIX = "AUTOMATE_CHAT_"


@dataclass(frozen=True)
class ChatSettings:
    """Connection and behaviour settings for the messaging client."""

    remote_url: Optional[str] = None
    ws_url: Optional[str] = None
    api_token: Optional[str] = None
    upload_url: Optional[str] = None
    upload_preset: str = "automate_chats"
    upload_folder: str = "chat_images"
    cache_path: Path = DEFAULT_CACHE_PATH
    poll_interval: float = 2.0
    subscribe_timeout: float = 5.0
    request_timeout: float = 30.0
    log_level: str = "INFO"


def _read_config(config_path: str | Path) -> ConfigParser:
    parser = ConfigParser()
    config_file = Path(config_path).expanduser()
    if config_file.is_file():
        parser.read(config_file)
    return parser


def _lookup(parser: ConfigParser, section: str, option: str, env_name: str) -> Optional[str]:
    """Environment first, then ``config.ini``; placeholder values count as unset."""

    env_value = os.environ.get(f"{ENV_PREFIX}{env_name}")
    if env_value:
        return env_value.strip() or None

    value = parser.get(section, option, fallback="").strip()
    if value and not value.startswith("YOUR_"):
        return value
    return None


def _lookup_float(
    parser: ConfigParser, section: str, option: str, env_name: str, default: float
) -> float:
    value = _lookup(parser, section, option, env_name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def load_settings(config_path: str | Path = DEFAULT_CONFIG_PATH) -> ChatSettings:
    """Build :class:`ChatSettings` from the environment and ``config.ini``.

    ``config.ini`` sections: ``[remote]`` (``url``, ``ws_url``, ``token``),
    ``[media]`` (``upload_url``, ``upload_preset``, ``folder``), ``[cache]``
    (``path``) and ``[chat]`` (``poll_interval``, ``subscribe_timeout``,
    ``request_timeout``, ``log_level``). Each option can be overridden by an
    ``AUTOMATE_CHAT_*`` environment variable.
    """

    parser = _read_config(config_path)
    defaults = ChatSettings()

    cache_path = _lookup(parser, "cache", "path", "CACHE_PATH")
    return ChatSettings(
        remote_url=_lookup(parser, "remote", "url", "REMOTE_URL"),
        ws_url=_lookup(parser, "remote", "ws_url", "WS_URL"),
        api_token=_lookup(parser, "remote", "token", "API_TOKEN"),
        upload_url=_lookup(parser, "media", "upload_url", "UPLOAD_URL"),
        upload_preset=_lookup(parser, "media", "upload_preset", "UPLOAD_PRESET")
        or defaults.upload_preset,
        upload_folder=_lookup(parser, "media", "folder", "UPLOAD_FOLDER") or defaults.upload_folder,
        cache_path=Path(cache_path).expanduser() if cache_path else defaults.cache_path,
        poll_interval=_lookup_float(
            parser, "chat", "poll_interval", "POLL_INTERVAL", defaults.poll_interval
        ),
        subscribe_timeout=_lookup_float(
            parser, "chat", "subscribe_timeout", "SUBSCRIBE_TIMEOUT", defaults.subscribe_timeout
        ),
        request_timeout=_lookup_float(
            parser, "chat", "request_timeout", "REQUEST_TIMEOUT", defaults.request_timeout
        ),
        log_level=(_lookup(parser, "chat", "log_level", "LOG_LEVEL") or defaults.log_level).upper(),
    )


def get_current_user(
    config_file: str | Path | None = None,
    profile_file: str | Path | None = None,
) -> User:
    """Return the signed-in user's identity.

    The profile is read from one of the following locations (in order):

    1. ``config_file`` if provided.
    2. ``config.ini`` in the current working directory.
    3. ``~/.automate_chat_user`` (or ``profile_file``) in the user's home directory.

    ``config.ini`` files must contain a ``[user]`` section with ``id``, ``name``
    and optionally ``role``. The profile file holds the JSON object saved at
    login, e.g. ``{"_id": "...", "name": "...", "role": "renter"}``.
    """

    candidates: Iterable[Path | None] = (
        Path(config_file).expanduser() if config_file else None,
        Path(DEFAULT_CONFIG_PATH),
        Path(profile_file).expanduser() if profile_file else DEFAULT_PROFILE_PATH,
    )

    for path in candidates:
        if not path or not path.is_file():
            continue
        if path.suffix == ".ini":
            parser = ConfigParser()
            parser.read(path)
            user_id = parser.get("user", "id", fallback="").strip()
            if user_id:
                return User(
                    id=user_id,
                    name=parser.get("user", "name", fallback="").strip() or "User",
                    role=parser.get("user", "role", fallback="").strip() or DEFAULT_ROLE,
                )
        else:
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                raise IdentityUnavailable(f"unreadable profile {path}") from exc
            if isinstance(data, dict):
                user = User.from_dict(data)
                if user.id:
                    return user

    raise IdentityUnavailable("no [user] section in config.ini and no saved profile")
