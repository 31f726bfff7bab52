"""
Tests for observability — logging setup.
"""

import logging
from pathlib import Path

import pytest

from stackdeploy.core.observability.logging_config import (
    ENV_LOG_LEVEL,
    resolve_level,
    setup_logging,
)


class TestResolveLevel:
    def test_default(self):
        assert resolve_level(environ={}) == "WARNING"

    def test_env_var(self):
        assert resolve_level(environ={ENV_LOG_LEVEL: "INFO"}) == "INFO"

    @pytest.mark.parametrize(
        "flags, expected",
        [
            ({"debug": True, "verbose": True}, "DEBUG"),
            ({"verbose": True, "quiet": True}, "INFO"),
            ({"quiet": True}, "ERROR"),
        ],
    )
    def test_flags_beat_env(self, flags, expected):
        assert resolve_level(**flags, environ={ENV_LOG_LEVEL: "CRITICAL"}) == expected


class TestSetupLogging:
    def test_console_level(self):
        setup_logging("INFO")
        root = logging.getLogger()
        assert root.level == logging.INFO
        assert len(root.handlers) == 1
        assert root.handlers[0].level == logging.INFO

    def test_unknown_level_falls_back(self):
        setup_logging("LOUD")
        assert logging.getLogger().level == logging.WARNING

    def test_file_handler_with_own_level(self, tmp_path: Path):
        log_file = tmp_path / "stackdeploy.log"
        setup_logging("WARNING", log_file=str(log_file), log_file_level="DEBUG")

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 2

        logging.getLogger("stackdeploy.test").debug("written to file only")
        for handler in root.handlers:
            handler.flush()
        assert "written to file only" in log_file.read_text()

    def test_sdk_loggers_quieted(self):
        logging.getLogger("botocore").setLevel(logging.DEBUG)
        setup_logging("INFO")
        assert logging.getLogger("botocore").level == logging.WARNING

    def test_sdk_loggers_left_alone_at_debug(self):
        logging.getLogger("boto3").setLevel(logging.NOTSET)
        setup_logging("DEBUG")
        assert logging.getLogger("boto3").level == logging.NOTSET

    @pytest.mark.parametrize(
        "level, expected",
        [
            ("INFO", "%(asctime)s [%(name)s] %(message)s"),
            ("DEBUG", "%(lineno)d"),
        ],
    )
    def test_console_format_tracks_level(self, level, expected):
        setup_logging(level)
        assert expected in logging.getLogger().handlers[0].formatter._fmt

    def test_default_console_format_is_bare(self):
        setup_logging("WARNING")
        assert logging.getLogger().handlers[0].formatter._fmt == "%(message)s"

    def test_file_level_defaults_to_console(self, tmp_path: Path):
        setup_logging("ERROR", log_file=str(tmp_path / "run.log"))
        root = logging.getLogger()
        assert [h.level for h in root.handlers] == [logging.ERROR, logging.ERROR]
        assert root.level == logging.ERROR
