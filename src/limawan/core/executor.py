"""Command execution with rollback support.

Provides:
- Safe command execution with output capture
- Rollback stack for compensating actions
"""

import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from limawan.core.context import ExecutionContext
from limawan.core.exceptions import ExecutionError, RollbackError
from limawan.core.output import Console, console as default_console


@dataclass
class RollbackAction:
    """A single rollback action."""
    description: str
    action: Callable[[], None]
    critical: bool = False  # If True, failure stops rollback


@dataclass
class RollbackStepResult:
    """Outcome of one rollback action."""
    description: str
    succeeded: bool
    error: Optional[str] = None


class RollbackStack:
    """Stack of compensating actions run in reverse order.

    Usage:
        rollback = RollbackStack()
        write_anchor(text)
        rollback.add("Remove anchor file", delete_anchor)

        # On failure:
        results = rollback.rollback()
    """

    def __init__(self, console: Optional[Console] = None) -> None:
        self.actions: list[RollbackAction] = []
        self._console = console or default_console

    def add(
        self,
        description: str,
        action: Callable[[], None],
        critical: bool = False,
    ) -> None:
        """Add a rollback action to the stack.

        Args:
            description: Human-readable description
            action: Callable to execute for rollback
            critical: If True, rollback stops on failure
        """
        self.actions.append(RollbackAction(description, action, critical))

    def rollback(self) -> list[RollbackStepResult]:
        """Execute all rollback actions in reverse order.

        Returns:
            One result per action that was attempted

        Raises:
            RollbackError: If a critical action fails
        """
        results: list[RollbackStepResult] = []
        self._console.warn("Rolling back changes...")

        for action in reversed(self.actions):
            try:
                self._console.step(f"Rollback: {action.description}")
                action.action()
                results.append(RollbackStepResult(action.description, True))
            except Exception as e:
                self._console.error(f"Rollback failed: {action.description}: {e}")
                results.append(RollbackStepResult(action.description, False, str(e)))
                if action.critical:
                    raise RollbackError(
                        f"Critical rollback action failed: {action.description}",
                        details=[str(e)],
                    ) from e

        self.actions.clear()
        return results


@dataclass
class CommandResult:
    """Result of a command execution."""
    command: list[str]
    return_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        """Check if command succeeded."""
        return self.return_code == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, as pfctl reports on both."""
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


class CommandExecutor:
    """Safe command execution with output capture.

    Features:
    - Output capture for processing
    - Timeout support
    - Debug logging of every command run
    """

    def __init__(self, ctx: ExecutionContext) -> None:
        """Initialize executor with context.

        Args:
            ctx: Execution context with flags
        """
        self.ctx = ctx

    def run(
        self,
        command: list[str],
        *,
        description: Optional[str] = None,
        check: bool = True,
        timeout: Optional[int] = None,
        cwd: Optional[Path] = None,
    ) -> CommandResult:
        """Execute a command.

        Args:
            command: Command as list of strings
            description: Human-readable description for logging
            check: Raise exception on non-zero exit
            timeout: Command timeout in seconds
            cwd: Working directory

        Returns:
            CommandResult with output

        Raises:
            ExecutionError: If command fails and check=True, times out,
                or the program is not installed
        """
        if description:
            self.ctx.console.step(description)

        cmd_display = shlex.join(command)
        self.ctx.console.debug(f"Running: {cmd_display}")

        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=timeout,
                cwd=cwd,
            )
        except subprocess.TimeoutExpired:
            raise ExecutionError(
                f"Command timed out after {timeout}s: {description or cmd_display}",
                command=cmd_display,
            )
        except FileNotFoundError as e:
            raise ExecutionError(
                f"Command not found: {command[0]}",
                command=cmd_display,
                hint=f"Install {command[0]} or fix its path in the configuration",
                details=[str(e)],
            ) from e

        cmd_result = CommandResult(
            command=command,
            return_code=result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
        )

        if check and result.returncode != 0:
            raise ExecutionError(
                f"Command failed: {description or cmd_display}",
                command=cmd_display,
                return_code=result.returncode,
                stderr=result.stderr,
            )

        return cmd_result
