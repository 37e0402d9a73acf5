import pytest

from core import config as config_module
from core.security import create_access_token, decode_access_token, is_supervisor
from shifts import clock as clock_module


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    config_module.get_settings.cache_clear()
    clock_module.get_shift_clock.cache_clear()
    yield
    config_module.get_settings.cache_clear()
    clock_module.get_shift_clock.cache_clear()


def test_non_local_debug_mode_is_blocked(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("DEBUG", "true")
    monkeypatch.setenv("JWT_SECRET", "real-secret")

    with pytest.raises(ValueError, match="debug=true"):
        config_module.get_settings()


def test_non_local_default_secret_is_blocked(monkeypatch):
    monkeypatch.setenv("APP_ENV", "staging")
    monkeypatch.setenv("DEBUG", "false")
    monkeypatch.setenv("JWT_SECRET", config_module.DEFAULT_JWT_SECRET)

    with pytest.raises(ValueError, match="default JWT secret"):
        config_module.get_settings()


def test_local_allows_dev_defaults(monkeypatch):
    monkeypatch.setenv("APP_ENV", "local")
    monkeypatch.setenv("DEBUG", "false")
    monkeypatch.setenv("JWT_SECRET", config_module.DEFAULT_JWT_SECRET)

    settings = config_module.get_settings()
    assert settings.app_env == "local"
    assert settings.day_shift_start_hour == 7
    assert settings.night_shift_start_hour == 19


@pytest.mark.parametrize("day,night", [(19, 7), (7, 7), (7, 24)])
def test_shift_hours_must_be_ordered(monkeypatch, day, night):
    monkeypatch.setenv("DAY_SHIFT_START_HOUR", str(day))
    monkeypatch.setenv("NIGHT_SHIFT_START_HOUR", str(night))

    with pytest.raises(ValueError, match="Shift hours"):
        config_module.get_settings()


def test_custom_shift_hours_reach_the_clock(monkeypatch):
    monkeypatch.setenv("DAY_SHIFT_START_HOUR", "6")
    monkeypatch.setenv("NIGHT_SHIFT_START_HOUR", "18")

    shift_clock = clock_module.get_shift_clock()
    assert shift_clock.boundary_hours == (6, 18)


def test_write_retries_must_be_positive(monkeypatch):
    monkeypatch.setenv("MAX_WRITE_RETRIES", "0")

    with pytest.raises(ValueError, match="max_write_retries"):
        config_module.get_settings()


def test_token_round_trip():
    token = create_access_token({"sub": "op-1", "role": "LEADER"})
    payload = decode_access_token(token)
    assert payload["sub"] == "op-1"
    assert is_supervisor(payload)
    assert decode_access_token(token + "tampered") is None
    assert not is_supervisor({"role": "OPERATOR"})
