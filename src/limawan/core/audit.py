"""Audit trail for anchor changes.

Provides:
- JSON-lines audit log of setup, teardown and rollback
- Session tracking per limawan invocation
- Size-based log rotation

Audit failures never break an operation; they are reported at debug level.
"""

import fcntl
import json
import os
import pwd
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Generator, Optional, TextIO

from limawan.core.output import console


DEFAULT_LOG_PATH = Path("/var/log/limawan/audit.log")
DEFAULT_MAX_SIZE_MB = 10
DEFAULT_BACKUP_COUNT = 5


class AuditEventType(Enum):
    """Types of auditable events."""
    ANCHOR_SETUP = "anchor.setup"
    ANCHOR_TEARDOWN = "anchor.teardown"
    ANCHOR_ROLLBACK = "anchor.rollback"
    ENGINE_ENABLE = "engine.enable"

    CONFIG_BACKUP = "config.backup"
    CONFIG_RESTORE = "config.restore"


class AuditResult(Enum):
    """Result of an audited operation."""
    SUCCESS = "success"
    FAILURE = "failure"
    DRY_RUN = "dry_run"
    NOOP = "noop"


def _actor_name() -> str:
    try:
        return pwd.getpwuid(os.getuid()).pw_name
    except KeyError:
        return str(os.getuid())


@dataclass
class AuditEvent:
    """A single audit record."""
    event_type: AuditEventType
    result: AuditResult
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    actor_uid: int = field(default_factory=os.getuid)
    actor_username: str = field(default_factory=_actor_name)
    actor_sudo_user: Optional[str] = field(default_factory=lambda: os.environ.get("SUDO_USER"))

    anchor: Optional[str] = None
    parameters: dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None
    error: Optional[str] = None

    session_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "event_type": self.event_type.value,
            "result": self.result.value,
            "timestamp": self.timestamp.isoformat(),
            "actor": {
                "uid": self.actor_uid,
                "username": self.actor_username,
                "sudo_user": self.actor_sudo_user,
            },
            "anchor": self.anchor,
            "parameters": self.parameters,
            "message": self.message,
            "error": self.error,
            "session_id": self.session_id,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class AuditLogger:
    """Append-only JSON-lines audit log.

    Appends are serialised with flock so concurrent invocations never
    interleave partial lines.
    """

    def __init__(
        self,
        log_path: Optional[Path] = None,
        max_size_mb: int = DEFAULT_MAX_SIZE_MB,
        backup_count: int = DEFAULT_BACKUP_COUNT,
        enabled: bool = True,
    ) -> None:
        """Initialize audit logger.

        Args:
            log_path: Path to audit log file
            max_size_mb: Maximum log file size before rotation
            backup_count: Number of rotated files to keep
            enabled: Whether logging is enabled
        """
        self.log_path = Path(log_path or DEFAULT_LOG_PATH)
        self.max_size_bytes = max_size_mb * 1024 * 1024
        self.backup_count = backup_count
        self.enabled = enabled
        self.session_id = str(uuid.uuid4())

    def log(self, event: AuditEvent) -> None:
        """Append an event to the log."""
        if not self.enabled:
            return

        event.session_id = self.session_id
        line = event.to_json() + "\n"

        try:
            self.log_path.parent.mkdir(mode=0o750, parents=True, exist_ok=True)
            with self._locked_append() as f:
                f.write(line)
            self._rotate_if_needed()
        except OSError as e:
            console.debug(f"Failed to write audit log {self.log_path}: {e}")

    @contextmanager
    def _locked_append(self) -> Generator[TextIO, None, None]:
        fd = os.open(self.log_path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o640)
        with os.fdopen(fd, "a") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            yield f
            f.flush()
            os.fsync(f.fileno())

    def _rotate_if_needed(self) -> None:
        if self.log_path.stat().st_size <= self.max_size_bytes:
            return

        oldest = self.log_path.with_suffix(f".{self.backup_count}")
        if oldest.exists():
            oldest.unlink()

        for i in range(self.backup_count - 1, 0, -1):
            src = self.log_path.with_suffix(f".{i}")
            if src.exists():
                src.rename(self.log_path.with_suffix(f".{i + 1}"))

        self.log_path.rename(self.log_path.with_suffix(".1"))
        self.log_path.touch(mode=0o640)

    # Convenience methods
    def log_operation(
        self,
        event_type: AuditEventType,
        result: AuditResult,
        anchor: str,
        parameters: Optional[dict[str, Any]] = None,
        message: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Log an anchor operation with common fields."""
        self.log(AuditEvent(
            event_type=event_type,
            result=result,
            anchor=anchor,
            parameters=parameters or {},
            message=message,
            error=error,
        ))


# Global audit logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get or create the global audit logger (disabled until configured)."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger(enabled=False)
    return _audit_logger


def configure_audit_logger(
    log_path: Optional[Path] = None,
    enabled: bool = True,
) -> AuditLogger:
    """Configure and return the global audit logger."""
    global _audit_logger
    _audit_logger = AuditLogger(log_path=log_path, enabled=enabled)
    return _audit_logger
