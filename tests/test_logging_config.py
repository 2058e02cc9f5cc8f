"""
Tests for logging setup and formatting.
"""

import json
import logging
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tapgate import logging_config
from tapgate.logging_config import (
    SECURITY,
    TapgateLogger,
    configure_from_environment,
    get_logger,
    setup_logging,
)


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestSetup:

    def test_quiet_by_default(self, capsys):
        setup_logging()
        get_logger("tapgate.gate").info("not shown")
        get_logger("tapgate.gate").warning("shown")
        err = capsys.readouterr().err
        assert "not shown" not in err
        assert "[gate] shown" in err

    def test_verbose_shows_debug(self, capsys):
        setup_logging(verbose=True)
        get_logger("tapgate.methods.yubikey").debug("probing")
        assert "[methods] probing" in capsys.readouterr().err

    def test_json_format(self, capsys):
        setup_logging(json_format=True)
        get_logger("tapgate.orchestrator").error("denied")
        record = json.loads(capsys.readouterr().err.strip())
        assert record['level'] == "ERROR"
        assert record['component'] == "orchestrator"
        assert record['message'] == "denied"
        assert 'extra' not in record

    def test_security_level_is_always_emitted(self, capsys):
        setup_logging()
        logger = get_logger("tapgate.anomaly")
        assert isinstance(logger, TapgateLogger)
        logger.security("bypass used")
        assert "SECURITY" in capsys.readouterr().err
        assert logging.getLevelName(SECURITY) == "SECURITY"


class TestEnvironment:

    def test_log_file_and_verbose(self, monkeypatch, temp_dir, capsys):
        log_file = temp_dir / "logs" / "tapgate.log"
        monkeypatch.setenv("TAPGATE_LOG_FILE", str(log_file))
        monkeypatch.setenv("TAPGATE_VERBOSE", "1")
        configure_from_environment()

        get_logger("tapgate.installer").debug("snapshot captured")
        for handler in logging.getLogger().handlers:
            handler.flush()
        assert "snapshot captured" in log_file.read_text()
        assert logging_config._state.verbose is True
