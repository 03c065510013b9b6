"""Unit tests for command execution and the rollback stack."""

import subprocess
from unittest.mock import Mock, patch

import pytest

from limawan.core.context import ExecutionContext
from limawan.core.exceptions import ExecutionError, RollbackError
from limawan.core.executor import CommandExecutor, CommandResult, RollbackStack


@pytest.fixture
def executor(quiet_console) -> CommandExecutor:
    return CommandExecutor(ExecutionContext(verbosity=0, _console=quiet_console))


class TestCommandExecutor:
    """Tests for CommandExecutor.run."""

    def test_success(self, executor):
        """Output is captured."""
        completed = subprocess.CompletedProcess(["pfctl"], 0, stdout="ok\n", stderr="")
        with patch("limawan.core.executor.subprocess.run", return_value=completed) as run:
            result = executor.run(["pfctl", "-s", "info"], timeout=5)
        assert result.success
        assert result.stdout == "ok\n"
        run.assert_called_once()
        assert run.call_args.kwargs["timeout"] == 5

    def test_failure_with_check(self, executor):
        """check=True raises with exit code and stderr."""
        completed = subprocess.CompletedProcess(["pfctl"], 1, stdout="", stderr="bad rule")
        with patch("limawan.core.executor.subprocess.run", return_value=completed):
            with pytest.raises(ExecutionError) as exc:
                executor.run(["pfctl", "-f", "/etc/pf.conf"])
        assert exc.value.return_code == 1
        assert "Error output: bad rule" in exc.value.details

    def test_failure_without_check(self, executor):
        """check=False returns the failed result."""
        completed = subprocess.CompletedProcess(["pfctl"], 1, stdout="", stderr="bad rule")
        with patch("limawan.core.executor.subprocess.run", return_value=completed):
            result = executor.run(["pfctl"], check=False)
        assert not result.success
        assert result.output == "bad rule"

    def test_timeout(self, executor):
        """Timeouts become ExecutionError."""
        with patch(
            "limawan.core.executor.subprocess.run",
            side_effect=subprocess.TimeoutExpired(["pfctl"], 3),
        ):
            with pytest.raises(ExecutionError) as exc:
                executor.run(["pfctl"], timeout=3)
        assert "timed out" in exc.value.message

    def test_missing_binary(self, executor):
        """A missing program becomes ExecutionError with a hint."""
        with patch("limawan.core.executor.subprocess.run", side_effect=FileNotFoundError("pfctl")):
            with pytest.raises(ExecutionError) as exc:
                executor.run(["pfctl"])
        assert exc.value.hint


class TestCommandResult:
    """Tests for CommandResult.output."""

    def test_combined_output(self):
        """stdout and stderr are joined, empty parts skipped."""
        assert CommandResult(["x"], 0, "out\n", "err\n").output == "out\nerr"
        assert CommandResult(["x"], 0, "", "err").output == "err"


class TestRollbackStack:
    """Tests for RollbackStack."""

    def test_reverse_order(self, quiet_console):
        """Actions run last-in, first-out."""
        order = []
        stack = RollbackStack(console=quiet_console)
        stack.add("first", lambda: order.append(1))
        stack.add("second", lambda: order.append(2))
        results = stack.rollback()
        assert order == [2, 1]
        assert [r.description for r in results] == ["second", "first"]
        assert all(r.succeeded for r in results)

    def test_non_critical_failure_continues(self, quiet_console):
        """A failing non-critical action is recorded and skipped."""
        after = Mock()
        stack = RollbackStack(console=quiet_console)
        stack.add("after", after)
        stack.add("fails", Mock(side_effect=OSError("disk")))
        results = stack.rollback()
        after.assert_called_once()
        assert results[0].succeeded is False
        assert "disk" in results[0].error

    def test_critical_failure_raises(self, quiet_console):
        """A failing critical action stops the rollback."""
        after = Mock()
        stack = RollbackStack(console=quiet_console)
        stack.add("after", after)
        stack.add("critical", Mock(side_effect=OSError("disk")), critical=True)
        with pytest.raises(RollbackError):
            stack.rollback()
        after.assert_not_called()
