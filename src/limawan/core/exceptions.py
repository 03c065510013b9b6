"""Custom exceptions for LimaWAN.

All exceptions provide:
- Clear error messages
- Optional hints for resolution
- Optional details for debugging
- Exit codes for proper shell integration
"""

from pathlib import Path
from typing import Any, Optional


class LimawanError(Exception):
    """Base exception for all LimaWAN errors.

    Attributes:
        message: Human-readable error description
        hint: Suggested action to resolve the error
        details: Additional context for debugging
        exit_code: Shell exit code (1-127)
    """

    exit_code: int = 1

    def __init__(
        self,
        message: str,
        *,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.details = details or []

    def __str__(self) -> str:
        return self.message


class ConfigurationError(LimawanError):
    """Configuration file or settings errors.

    Raised when:
    - Config file unreadable
    - Invalid YAML syntax
    - Invalid configuration values (e.g. malformed port range)
    """
    exit_code = 2


class InvalidSpecError(LimawanError):
    """Forwarding request rejected before any side effect.

    Raised when:
    - VM address is not an IPv4 literal
    - Ports are out of range or outside the allowed external range
    - Host interface is missing or down
    """
    exit_code = 3


class ExecutionError(LimawanError):
    """Command execution failures.

    Raised when:
    - Shell command returns non-zero exit code
    - Command times out
    """
    exit_code = 5

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        return_code: Optional[int] = None,
        stderr: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        if not details:
            details = []
        if return_code is not None:
            details.append(f"Exit code: {return_code}")
        if stderr:
            details.append(f"Error output: {stderr}")
        super().__init__(message, hint=hint, details=details)
        self.command = command
        self.return_code = return_code
        self.stderr = stderr


class PrerequisiteError(LimawanError):
    """Missing prerequisites.

    Raised when:
    - Not running as root
    - pfctl / limactl not available
    """
    exit_code = 6


class RollbackError(LimawanError):
    """A critical compensating action failed during rollback."""
    exit_code = 7


# Anchor lifecycle exceptions

class ConfigIOError(LimawanError):
    """Filesystem access failure on one of the pf artifacts.

    Raised when:
    - Main pf.conf cannot be read or written
    - Anchor file or backup cannot be written
    """
    exit_code = 20

    def __init__(
        self,
        message: str,
        *,
        path: Optional[Path] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.path = path


class RulesetSyntaxError(LimawanError):
    """pf rejected the configuration in check mode (pfctl -n)."""
    exit_code = 21

    def __init__(
        self,
        message: str,
        *,
        config_path: Optional[Path] = None,
        diagnostics: str = "",
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        if not details:
            details = [line for line in diagnostics.splitlines() if line.strip()]
        super().__init__(message, hint=hint, details=details)
        self.config_path = config_path
        self.diagnostics = diagnostics


class ResourceBusyError(LimawanError):
    """The pf configuration lock is held by another invocation."""
    exit_code = 22

    def __init__(
        self,
        message: str,
        *,
        lock_path: Optional[Path] = None,
        timeout: Optional[float] = None,
        hint: Optional[str] = "Another limawan run is in progress; retry shortly",
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.lock_path = lock_path
        self.timeout = timeout


class NoBackupError(LimawanError):
    """Restore requested but no pf.conf backup exists."""
    exit_code = 23


class EngineError(LimawanError):
    """pf refused to load or enable a configuration that passed check mode."""
    exit_code = 24

    def __init__(
        self,
        message: str,
        *,
        output: str = "",
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        if not details and output:
            details = [line for line in output.splitlines() if line.strip()]
        super().__init__(message, hint=hint, details=details)
        self.output = output


class SetupFailedError(LimawanError):
    """Setup failed and was rolled back.

    Carries both the original cause and the rollback outcome so the
    operator sees the whole picture in one error.
    """
    exit_code = 25

    def __init__(
        self,
        message: str,
        *,
        cause: LimawanError,
        rollback: Any = None,
        hint: Optional[str] = None,
    ) -> None:
        details = [f"Cause: {cause.message}"] + list(cause.details)
        if rollback is not None:
            details.append(f"Rollback: {rollback}")
        super().__init__(message, hint=hint, details=details)
        self.cause = cause
        self.rollback = rollback


class SetupIncompleteError(LimawanError):
    """Configuration loaded but anchor rules are not reported live."""
    exit_code = 26

    def __init__(
        self,
        message: str,
        *,
        status: Any = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.status = status


class FatalInconsistencyError(LimawanError):
    """Teardown could not reach a validated configuration, even from backup.

    No further automated remediation is attempted.
    """
    exit_code = 27


class VMUnreachableError(LimawanError):
    """The Lima VM is not running or has no usable address."""
    exit_code = 28
