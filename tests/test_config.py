"""Settings loading and validation."""
import logging
from dataclasses import replace
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

from common.config import Settings, get_settings, parse_tags
from common.errors import ConfigError
from common.logging_setup import configure_logging

ENV_KEYS = ("OPCUA_ENDPOINT", "BATCH_SIZE", "DEFAULT_TAGS", "LOG_DIR", "HEARTBEAT_INTERVAL",
            "HEARTBEAT_STALE_AFTER", "DISCARD_OLDEST", "BACKUP_YEAR", "LOG_LEVEL")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    # setenv first so teardown also undoes values that load_dotenv wrote.
    for key in ENV_KEYS:
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)
    monkeypatch.setenv("HISTORIAN_ENV_FILE", str(tmp_path / "missing.env"))


def test_defaults():
    settings = get_settings()

    assert settings.batch_size == 50
    assert settings.max_concurrent == 50
    assert settings.heartbeat_stale_after == 15.0
    assert settings.default_tags == {"location": "Ranna"}
    assert settings.measurement == "solar_data"
    assert settings.log_dir is None
    assert "dbname=industrial_data" in settings.dsn


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("OPCUA_ENDPOINT", "opc.tcp://plc:4840")
    monkeypatch.setenv("BATCH_SIZE", "25")
    monkeypatch.setenv("DEFAULT_TAGS", "location=Ranna, site=B2")
    monkeypatch.setenv("DISCARD_OLDEST", "false")
    monkeypatch.setenv("LOG_DIR", "/var/log/historian")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = get_settings()

    assert settings.opcua_endpoint == "opc.tcp://plc:4840"
    assert settings.batch_size == 25
    assert settings.default_tags == {"location": "Ranna", "site": "B2"}
    assert settings.discard_oldest is False
    assert settings.log_dir == Path("/var/log/historian")
    assert settings.log_level == "DEBUG"


def test_env_file_is_loaded_without_overriding(monkeypatch, tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("BATCH_SIZE=10\nBACKUP_YEAR=2024\n")
    monkeypatch.setenv("HISTORIAN_ENV_FILE", str(env_file))
    monkeypatch.setenv("BATCH_SIZE", "20")

    settings = get_settings()

    assert settings.batch_size == 20
    assert settings.backup_year == 2024


def test_non_numeric_value_is_config_error(monkeypatch):
    monkeypatch.setenv("BATCH_SIZE", "fifty")

    with pytest.raises(ConfigError, match="BATCH_SIZE"):
        get_settings()


def test_stale_threshold_must_exceed_heartbeat_interval(monkeypatch):
    monkeypatch.setenv("HEARTBEAT_INTERVAL", "10")
    monkeypatch.setenv("HEARTBEAT_STALE_AFTER", "12")

    with pytest.raises(ConfigError, match="HEARTBEAT_STALE_AFTER"):
        get_settings()


@pytest.mark.parametrize(
    "overrides",
    [
        {"batch_size": 0},
        {"max_concurrent": 0},
        {"discovery_id_min": 9000, "discovery_id_max": 8000},
        {"sink_batch_size": 0},
        {"heartbeat_interval": 0},
        {"max_restarts": -1},
    ],
)
def test_invalid_settings_are_rejected(overrides):
    with pytest.raises(ConfigError):
        replace(Settings(), **overrides).validate()


def test_parse_tags():
    assert parse_tags("") == {}
    assert parse_tags("location=Ranna,line=2") == {"location": "Ranna", "line": "2"}
    with pytest.raises(ConfigError):
        parse_tags("location")


def test_configure_logging_adds_rotating_file(tmp_path):
    root = logging.getLogger()
    before = list(root.handlers)
    try:
        logger = configure_logging("ingest", "INFO", tmp_path / "logs")
        added = [h for h in root.handlers if h not in before]
        assert logger.name == "ingest"
        assert [type(h) for h in added if isinstance(h, RotatingFileHandler)] == [RotatingFileHandler]
        assert (tmp_path / "logs" / "ingest.log").exists()
    finally:
        for handler in root.handlers[:]:
            if handler not in before:
                root.removeHandler(handler)
                handler.close()
