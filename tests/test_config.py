import os
import sys

import pytest

from suipanel import config
from suipanel.config import LogLevel


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in ("SUI_DEBUG", "SUI_LOG_LEVEL", "SUI_DB_FOLDER"):
        monkeypatch.delenv(key, raising=False)


def test_version_and_name_are_trimmed():
    assert config.get_version() == config.get_version().strip()
    assert config.get_version() != ""
    assert config.get_name() == "s-ui"


def test_is_debug_only_for_true(monkeypatch):
    assert config.is_debug() is False
    monkeypatch.setenv("SUI_DEBUG", "yes")
    assert config.is_debug() is False
    monkeypatch.setenv("SUI_DEBUG", "true")
    assert config.is_debug() is True


def test_log_level_default_is_info():
    assert config.get_log_level() is LogLevel.INFO


def test_log_level_from_env(monkeypatch):
    monkeypatch.setenv("SUI_LOG_LEVEL", "warn")
    assert config.get_log_level() is LogLevel.WARN


def test_debug_overrides_log_level(monkeypatch):
    monkeypatch.setenv("SUI_LOG_LEVEL", "error")
    monkeypatch.setenv("SUI_DEBUG", "true")
    assert config.get_log_level() is LogLevel.DEBUG


def test_unknown_log_level_raises(monkeypatch):
    monkeypatch.setenv("SUI_LOG_LEVEL", "verbose")
    with pytest.raises(ValueError):
        config.get_log_level()


def test_db_folder_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("SUI_DB_FOLDER", str(tmp_path))
    assert config.get_db_folder_path() == str(tmp_path)
    assert config.get_db_path() == f"{tmp_path}/{config.get_name()}.db"


def test_db_folder_next_to_program(monkeypatch, tmp_path):
    program = tmp_path / "bin" / "panel"
    monkeypatch.setattr(sys, "argv", [str(program)])
    expected = os.path.join(str(tmp_path / "bin"), "db")
    assert config.get_db_folder_path() == expected