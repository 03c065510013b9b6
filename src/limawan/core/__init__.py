"""Core framework components for LimaWAN."""

from limawan.core.exceptions import (
    LimawanError,
    ConfigurationError,
    InvalidSpecError,
    ExecutionError,
    PrerequisiteError,
    RollbackError,
    ConfigIOError,
    RulesetSyntaxError,
    ResourceBusyError,
    NoBackupError,
    EngineError,
    SetupFailedError,
    SetupIncompleteError,
    FatalInconsistencyError,
    VMUnreachableError,
)

from limawan.core.context import ExecutionContext, create_context
from limawan.core.output import console, Console, Verbosity
from limawan.core.config import LimawanConfig
from limawan.core.audit import AuditLogger, AuditEvent, AuditEventType, AuditResult, get_audit_logger
from limawan.core.executor import CommandExecutor, RollbackStack
from limawan.core.lock import ConfigLock

__all__ = [
    # Exceptions
    "LimawanError",
    "ConfigurationError",
    "InvalidSpecError",
    "ExecutionError",
    "PrerequisiteError",
    "RollbackError",
    "ConfigIOError",
    "RulesetSyntaxError",
    "ResourceBusyError",
    "NoBackupError",
    "EngineError",
    "SetupFailedError",
    "SetupIncompleteError",
    "FatalInconsistencyError",
    "VMUnreachableError",
    # Context
    "ExecutionContext",
    "create_context",
    # Output
    "console",
    "Console",
    "Verbosity",
    # Config
    "LimawanConfig",
    # Audit
    "AuditLogger",
    "AuditEvent",
    "AuditEventType",
    "AuditResult",
    "get_audit_logger",
    # Execution
    "CommandExecutor",
    "RollbackStack",
    "ConfigLock",
]
