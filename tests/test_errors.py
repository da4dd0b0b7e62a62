"""
Tests for the CLI error log.
"""

import sqlite3

from mindclone.errors import ERROR_LOG_FILENAME, error_log_path, log_exception, user_message
from mindclone.memory_store import StoreError
from mindclone.providers.base import InferenceError


def _raised(exc):
    try:
        raise exc
    except Exception as e:
        return e


class TestLogPath:

    def test_explicit_store_wins(self, clean_env, tmp_path):
        assert error_log_path(tmp_path / "other") == tmp_path / "other" / ERROR_LOG_FILENAME

    def test_env_store(self, clean_env):
        assert error_log_path() == clean_env / ERROR_LOG_FILENAME


class TestLogException:

    def test_appends_traceback(self, clean_env):
        path = log_exception(_raised(RuntimeError("first")), context="mindclone CLI")
        log_exception(_raised(ValueError("second")))
        text = path.read_text()
        assert "mindclone CLI" in text
        assert "argv:" in text
        assert "RuntimeError: first" in text
        assert "ValueError: second" in text
        assert text.count("=" * 60) == 2

    def test_unwritable_location_ignored(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        path = log_exception(_raised(RuntimeError("x")), store_path=blocker)
        assert path == blocker / ERROR_LOG_FILENAME


class TestUserMessage:

    def test_known_failures(self):
        assert "busy" in user_message(sqlite3.OperationalError("database is locked"))
        assert user_message(StoreError("disk full")) == "memory database error: disk full"
        assert user_message(InferenceError("timed out")) == "model call failed: timed out"

    def test_fallbacks(self):
        assert user_message(RuntimeError("plain")) == "plain"
        assert user_message(KeyError()) == "KeyError"
