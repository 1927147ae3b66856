import json
from pathlib import Path

import pytest

from automate_chat import config
from automate_chat.config import ChatSettings, get_current_user, load_settings
from automate_chat.errors import IdentityUnavailable


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    for name in list(config.os.environ):
        if name.startswith(config.ENV_PREFIX):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config, "DEFAULT_PROFILE_PATH", tmp_path / "no-profile")


def _write_ini(path: Path, body: str) -> Path:
    path.write_text(body, encoding="utf-8")
    return path


def test_defaults_without_config(tmp_path):
    settings = load_settings(tmp_path / "missing.ini")

    assert settings == ChatSettings()
    assert settings.remote_url is None
    assert settings.poll_interval == 2.0


def test_reads_ini_sections(tmp_path):
    ini = _write_ini(
        tmp_path / "config.ini",
        "[remote]\nurl = https://chat.example.com/api\nws_url = wss://chat.example.com/feed\n"
        "token = abc\n[media]\nupload_url = https://upload.example.com\nfolder = pics\n"
        "[cache]\npath = ~/chat.sqlite3\n[chat]\npoll_interval = 0.5\nlog_level = debug\n",
    )

    settings = load_settings(ini)

    assert settings.remote_url == "https://chat.example.com/api"
    assert settings.ws_url == "wss://chat.example.com/feed"
    assert settings.api_token == "abc"
    assert settings.upload_url == "https://upload.example.com"
    assert settings.upload_folder == "pics"
    assert settings.upload_preset == "automate_chats"
    assert settings.cache_path == Path("~/chat.sqlite3").expanduser()
    assert settings.poll_interval == 0.5
    assert settings.log_level == "DEBUG"


def test_environment_overrides_ini(tmp_path, monkeypatch):
    ini = _write_ini(tmp_path / "config.ini", "[remote]\nurl = https://from-ini\n")
    monkeypatch.setenv("AUTOMATE_CHAT_REMOTE_URL", "https://from-env")
    monkeypatch.setenv("AUTOMATE_CHAT_REQUEST_TIMEOUT", "12")

    settings = load_settings(ini)

    assert settings.remote_url == "https://from-env"
    assert settings.request_timeout == 12.0


def test_placeholders_and_bad_numbers_are_ignored(tmp_path):
    ini = _write_ini(
        tmp_path / "config.ini",
        "[remote]\nurl = YOUR_REMOTE_URL\n[chat]\npoll_interval = often\n",
    )

    settings = load_settings(ini)

    assert settings.remote_url is None
    assert settings.poll_interval == 2.0


def test_current_user_from_ini(tmp_path):
    ini = _write_ini(tmp_path / "custom.ini", "[user]\nid = u1\nname = Sam\nrole = renter\n")

    user = get_current_user(ini)

    assert (user.id, user.name, user.role) == ("u1", "Sam", "renter")


def test_current_user_from_working_directory_config(tmp_path):
    _write_ini(tmp_path / "config.ini", "[user]\nid = u1\n")

    user = get_current_user()

    assert user.id == "u1"
    assert user.name == "User"
    assert user.role == "unknown"


def test_current_user_from_saved_profile(tmp_path):
    profile = tmp_path / "profile.json"
    profile.write_text(json.dumps({"_id": "u2", "name": "Alex", "role": "mechanic"}), encoding="utf-8")

    user = get_current_user(profile_file=profile)

    assert (user.id, user.name, user.role) == ("u2", "Alex", "mechanic")


def test_unreadable_profile_raises(tmp_path):
    profile = tmp_path / "profile.json"
    profile.write_text("{broken", encoding="utf-8")

    with pytest.raises(IdentityUnavailable):
        get_current_user(profile_file=profile)


def test_missing_identity_raises():
    with pytest.raises(IdentityUnavailable):
        get_current_user()
