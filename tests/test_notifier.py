"""
Tests for desktop notifications.
"""

import os
import sys
from unittest.mock import MagicMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tapgate.alerts import Notifier
from tapgate.methods.runner import CommandRunner

from conftest import ScriptedRunner, failed, ok, timed_out


class TestCommands:
    """Platform notification command lines."""

    def test_macos(self):
        argv = Notifier(ScriptedRunner(), system="Darwin").command_for("tapgate", 'push "main" denied')
        assert argv[:2] == ["osascript", "-e"]
        assert argv[2] == 'display notification "push \\"main\\" denied" with title "tapgate"'

    def test_linux(self):
        argv = Notifier(ScriptedRunner(), system="Linux").command_for("Title", "Body")
        assert argv == ["notify-send", "--urgency=critical", "--app-name", "tapgate", "Title", "Body"]

    def test_unsupported_platform(self):
        assert Notifier(ScriptedRunner(), system="Windows").command_for("t", "m") is None


class TestDelivery:
    """Delivery is best effort and never raises."""

    def test_success(self):
        runner = ScriptedRunner({("notify-send",): ok()})
        assert Notifier(runner, system="Linux").notify("t", "m") is True
        assert runner.called("notify-send")

    def test_tool_missing(self, caplog):
        assert Notifier(ScriptedRunner({}), system="Linux").notify("t", "m") is False
        assert "not installed" in caplog.text

    def test_tool_fails(self):
        runner = ScriptedRunner({("osascript",): failed("no display")})
        assert Notifier(runner, system="Darwin").notify("t", "m") is False

    def test_tool_times_out(self):
        runner = ScriptedRunner({("notify-send",): timed_out()})
        assert Notifier(runner, system="Linux").notify("t", "m") is False

    def test_runner_exception_is_contained(self):
        runner = MagicMock(spec=CommandRunner)
        runner.run.side_effect = OSError("broken pipe")
        assert Notifier(runner, system="Linux").notify("t", "m") is False

    def test_alert_is_always_logged(self, caplog):
        Notifier(ScriptedRunner(), system="Windows").notify("tapgate: alert", "details")
        assert "ALERT: tapgate: alert: details" in caplog.text
