import os

import pytest

import env_validation
from env_validation import EnvironmentError, get_env_bool, get_env_int, validate_environment

_MANAGED = (
    "DB_PATH",
    "PROGRESSION_XP_HISTORY_LIMIT",
    "PROGRESSION_MAX_WRITE_RETRIES",
    "ENABLE_XAPI_ACHIEVEMENTS",
    "BADGE_CATALOG_PATH",
    "LRS_URL",
    "APP_BASE_URL",
)


@pytest.fixture
def clean_env(monkeypatch):
    for var in _MANAGED:
        # Register every variable so defaults written by validate_environment are undone.
        monkeypatch.setenv(var, "placeholder")
        monkeypatch.delenv(var)
    return monkeypatch


def test_defaults_are_applied(clean_env):
    validate_environment()
    for var, value in env_validation._DEFAULTS.items():
        assert os.environ[var] == value


@pytest.mark.parametrize("value", ["abc", "-1", "2.5"])
def test_integer_settings_are_checked(clean_env, value):
    clean_env.setenv("PROGRESSION_MAX_WRITE_RETRIES", value)
    with pytest.raises(EnvironmentError):
        validate_environment()


def test_missing_catalog_file_is_rejected(clean_env, tmp_path):
    clean_env.setenv("BADGE_CATALOG_PATH", str(tmp_path / "missing.json"))
    with pytest.raises(EnvironmentError):
        validate_environment()


def test_invalid_urls_are_rejected(clean_env):
    clean_env.setenv("LRS_URL", "ftp://lrs.example")
    with pytest.raises(EnvironmentError):
        validate_environment()


def test_optional_variables_only_warn(clean_env, caplog):
    clean_env.delenv("PROGRESSION_ADMIN_TOKEN", raising=False)
    with caplog.at_level("WARNING", logger="env_validation"):
        validate_environment()
    assert "PROGRESSION_ADMIN_TOKEN" in caplog.text


def test_env_helpers(monkeypatch):
    monkeypatch.setenv("FLAG_ON", "Yes")
    monkeypatch.setenv("FLAG_OFF", "0")
    monkeypatch.delenv("FLAG_MISSING", raising=False)
    assert get_env_bool("FLAG_ON") is True
    assert get_env_bool("FLAG_OFF", True) is False
    assert get_env_bool("FLAG_MISSING", True) is True

    monkeypatch.setenv("SOME_INT", "12")
    monkeypatch.setenv("BAD_INT", "twelve")
    assert get_env_int("SOME_INT", 3) == 12
    assert get_env_int("BAD_INT", 3) == 3
    assert get_env_int("FLAG_MISSING", 7) == 7
