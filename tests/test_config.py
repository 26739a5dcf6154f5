import pytest

from notebooklm_rpc.auth import AuthTokens
from notebooklm_rpc.config import Settings


def test_settings_from_environment():
    settings = Settings.from_env({
        "NOTEBOOKLM_COOKIES": "SID=a; HSID=b",
        "NOTEBOOKLM_CSRF_TOKEN": "csrf",
        "NOTEBOOKLM_BL": "bl-1",
        "NOTEBOOKLM_TIMEOUT": "12.5",
        "NOTEBOOKLM_MAX_RETRIES": "1",
        "NOTEBOOKLM_DEBUG": "true",
    })
    assert settings.cookies == {"SID": "a", "HSID": "b"}
    assert settings.csrf_token == "csrf"
    assert settings.build_label == "bl-1"
    assert settings.timeout == 12.5
    assert settings.max_retries == 1
    assert settings.debug is True


def test_settings_fall_back_to_cache():
    cached = AuthTokens(cookies={"SID": "cached"}, csrf_token="c1", session_id="s1")
    settings = Settings.from_env({"NOTEBOOKLM_SESSION_ID": "env-sid"}, cached=cached)
    assert settings.cookies == {"SID": "cached"}
    assert settings.csrf_token == "c1"
    assert settings.session_id == "env-sid"
    assert settings.debug is False


def test_no_auth_found(monkeypatch):
    monkeypatch.setattr("notebooklm_rpc.config.load_cached_tokens", lambda: None)
    with pytest.raises(ValueError, match="No authentication found"):
        Settings.from_env({})


def test_invalid_number():
    with pytest.raises(ValueError, match="Invalid numeric setting"):
        Settings.from_env({"NOTEBOOKLM_COOKIES": "SID=a", "NOTEBOOKLM_TIMEOUT": "soon"})
