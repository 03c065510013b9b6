"""Anchor lifecycle controller.

Drives setup and teardown of the limawan anchor as explicit state
machines:

    setup:    ABSENT -> STAGED -> VALIDATED -> ACTIVE
    teardown: ACTIVE -> FLUSHED -> UNREFERENCED -> REVALIDATED -> RELOADED -> CLEANED

Every mutating sequence runs under the configuration lock. pf only ever
loads a configuration that passed the validation gate; a failure after
pf.conf was touched during setup is rolled back from the backup and
reported as one SetupFailedError carrying both cause and rollback outcome.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, NoReturn, Optional

from limawan.core.audit import AuditEventType, AuditLogger, AuditResult, get_audit_logger
from limawan.core.config import LimawanConfig
from limawan.core.exceptions import (
    EngineError,
    FatalInconsistencyError,
    LimawanError,
    NoBackupError,
    RollbackError,
    RulesetSyntaxError,
    SetupFailedError,
    SetupIncompleteError,
)
from limawan.core.executor import CommandExecutor, RollbackStack, RollbackStepResult
from limawan.core.lock import ConfigLock
from limawan.core.output import Console, console as default_console
from limawan.core.validation import DEFAULT_EXTERNAL_PORT_RANGE, PortRange
from limawan.services.anchor_store import AnchorStore, ReferenceChange
from limawan.services.gate import GateResult, ValidationGate
from limawan.services.network import InterfaceState, lookup_interface
from limawan.services.pfctl import FirewallEngine, FlushResult, PfctlEngine
from limawan.services.rules import (
    AnchorRuleset,
    ForwardingSpec,
    generate_ruleset,
    validate_forwarding_spec,
)
from limawan.services.status import AnchorStatus, StatusInspector


class LifecycleState(str, Enum):
    """Position of the controller in the setup or teardown sequence."""
    ABSENT = "absent"
    STAGED = "staged"
    VALIDATED = "validated"
    ACTIVE = "active"
    FLUSHED = "flushed"
    UNREFERENCED = "unreferenced"
    REVALIDATED = "revalidated"
    RELOADED = "reloaded"
    CLEANED = "cleaned"
    FAILED = "failed"


@dataclass
class RollbackOutcome:
    """What a setup rollback managed to undo."""
    restored: bool
    anchor_removed: bool
    steps: list[RollbackStepResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def clean(self) -> bool:
        return self.restored and self.anchor_removed

    def __str__(self) -> str:
        if not self.restored:
            return f"pf.conf NOT restored ({self.error})"
        if not self.anchor_removed:
            return "pf.conf restored from backup; anchor file could not be removed"
        return "pf.conf restored from backup; anchor file removed"


@dataclass
class SetupResult:
    """Outcome of AnchorLifecycle.setup."""
    spec: ForwardingSpec
    ruleset: AnchorRuleset
    state: LifecycleState
    changed: bool
    dry_run: bool = False
    backup_created: bool = False
    reference: Optional[ReferenceChange] = None
    status: Optional[AnchorStatus] = None


@dataclass
class EnableResult:
    """Outcome of validating, enabling and reloading pf."""
    enabled_now: bool
    dry_run: bool = False
    status: Optional[AnchorStatus] = None


@dataclass
class TeardownResult:
    """Outcome of AnchorLifecycle.teardown."""
    state: LifecycleState
    changed: bool
    dry_run: bool = False
    flush: Optional[FlushResult] = None
    restored_from_backup: bool = False
    backup_deleted: bool = False


def rollback_setup(store: AnchorStore, console: Console = default_console) -> RollbackOutcome:
    """Undo a partially applied setup.

    Restores pf.conf from the backup (critical) and then removes the
    anchor file (best-effort). Takes the store in its failed state and
    returns what was undone; never raises for rollback failures.
    """
    stack = RollbackStack(console=console)
    # Runs in reverse: restore first, then remove the anchor file
    stack.add("Remove anchor file", store.delete_anchor_file)
    stack.add("Restore pf.conf from backup", store.restore_from_backup, critical=True)

    try:
        steps = stack.rollback()
    except RollbackError as e:
        return RollbackOutcome(
            restored=False,
            anchor_removed=False,
            error="; ".join([e.message] + e.details),
        )

    removed = all(step.succeeded for step in steps if step.description == "Remove anchor file")
    if not removed:
        console.warn(f"Anchor file left behind: {store.anchor_path}")
    return RollbackOutcome(restored=True, anchor_removed=removed, steps=steps)


class AnchorLifecycle:
    """Sets up and tears down the limawan anchor.

    Collaborators are injected so tests can substitute a fake engine and
    temporary paths:
        store: pf.conf, anchor file and backup
        engine: pf control interface
        lock: cross-process lock around every mutation
    """

    def __init__(
        self,
        store: AnchorStore,
        engine: FirewallEngine,
        lock: ConfigLock,
        *,
        port_range: PortRange = DEFAULT_EXTERNAL_PORT_RANGE,
        interface_lookup: Optional[Callable[[str], InterfaceState]] = None,
        console: Console = default_console,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.lock = lock
        self.port_range = port_range
        self.interface_lookup = interface_lookup
        self.console = console
        self.audit = audit or get_audit_logger()
        self.gate = ValidationGate(engine, console)
        self.inspector = StatusInspector(store, engine)
        self.state = LifecycleState.ABSENT

    def _enter(self, state: LifecycleState) -> None:
        self.console.transition(f"anchor \"{self.store.anchor_name}\"", self.state.value, state.value)
        self.state = state

    @classmethod
    def from_config(
        cls,
        config: LimawanConfig,
        executor: CommandExecutor,
        *,
        console: Console = default_console,
        interface_lookup: Optional[Callable[[str], InterfaceState]] = lookup_interface,
        audit: Optional[AuditLogger] = None,
    ) -> "AnchorLifecycle":
        """Wire a controller against the real pfctl from configuration."""
        engine = PfctlEngine(
            executor,
            pfctl_path=config.engine.pfctl_path,
            timeout=config.engine.command_timeout,
        )
        lock = ConfigLock(
            config.lock.path,
            timeout=config.lock.timeout_seconds,
            poll_interval=config.lock.poll_interval_seconds,
            console=console,
        )
        return cls(
            AnchorStore.from_config(config.anchor, console),
            engine,
            lock,
            port_range=config.forwarding.port_range,
            interface_lookup=interface_lookup,
            console=console,
            audit=audit,
        )

    @property
    def anchor_name(self) -> str:
        return self.store.anchor_name

    def status(self) -> AnchorStatus:
        """Current AnchorStatus (read-only, no lock)."""
        return self.inspector.status()

    # =========================================================================
    # Setup
    # =========================================================================

    def setup(self, spec: ForwardingSpec, *, dry_run: bool = False) -> SetupResult:
        """Install the anchor for ``spec`` and load it into pf.

        Raises:
            InvalidSpecError: Spec rejected, nothing touched
            ResourceBusyError: Lock not acquired in time
            ConfigIOError: An artifact could not be read or written
            SetupFailedError: Validation or load failed; changes rolled back
            SetupIncompleteError: Loaded, but pf does not report the rules live
        """
        self._enter(LifecycleState.ABSENT)
        validate_forwarding_spec(
            spec,
            port_range=self.port_range,
            interface_lookup=self.interface_lookup,
        )
        ruleset = generate_ruleset(spec)

        if dry_run:
            self._plan_setup(ruleset)
            self._audit(AuditEventType.ANCHOR_SETUP, AuditResult.DRY_RUN, spec=spec)
            return SetupResult(
                spec=spec,
                ruleset=ruleset,
                state=self.state,
                changed=False,
                dry_run=True,
            )

        with self.lock.hold():
            try:
                result = self._setup_locked(spec, ruleset)
            except LimawanError as e:
                self._enter(LifecycleState.FAILED)
                self._audit(AuditEventType.ANCHOR_SETUP, AuditResult.FAILURE, spec=spec, error=e)
                raise

        outcome = AuditResult.SUCCESS if result.changed else AuditResult.NOOP
        self._audit(AuditEventType.ANCHOR_SETUP, outcome, spec=spec)
        return result

    def _setup_locked(self, spec: ForwardingSpec, ruleset: AnchorRuleset) -> SetupResult:
        status = self.inspector.status()
        if status.active and self.inspector.ruleset_matches(spec):
            self.console.info(f"Anchor \"{self.anchor_name}\" already active for {spec}")
            # Rules stay loaded across `pfctl -d`; only filtering needs turning back on
            changed = self._ensure_enabled()
            self._enter(LifecycleState.ACTIVE)
            return SetupResult(
                spec=spec,
                ruleset=ruleset,
                state=self.state,
                changed=changed,
                status=status,
            )

        self.console.step("Staging anchor configuration")
        backup = self.store.backup_main_config()
        if backup.created:
            self._audit(AuditEventType.CONFIG_BACKUP, AuditResult.SUCCESS, message=str(backup.path))
        self.store.write_anchor_ruleset(ruleset.text)
        reference = self.store.ensure_anchor_referenced()
        self._enter(LifecycleState.STAGED)

        try:
            self.gate.require_valid(self.store.main_conf_path)
        except RulesetSyntaxError as e:
            self._abort_setup(e)
        self._enter(LifecycleState.VALIDATED)

        try:
            self._ensure_enabled()
        except EngineError as e:
            self._abort_setup(e)

        self.console.step("Loading pf configuration")
        reloaded = self.engine.reload(self.store.main_conf_path)
        if not reloaded.ok:
            self._abort_setup(EngineError(
                f"pf refused to load {self.store.main_conf_path}",
                output=reloaded.output,
            ))

        status = self.inspector.status()
        if not (status.loaded_in_engine and status.nat_rules_loaded):
            raise SetupIncompleteError(
                f"Anchor \"{self.anchor_name}\" loaded but pf does not report its rules",
                status=status,
                hint=f"Inspect with: pfctl -a {self.anchor_name} -s nat",
                details=[f"Status: {status}"],
            )

        self._enter(LifecycleState.ACTIVE)
        self.console.success(f"Port forwarding active: {spec}")
        return SetupResult(
            spec=spec,
            ruleset=ruleset,
            state=self.state,
            changed=True,
            backup_created=backup.created,
            reference=reference,
            status=status,
        )

    def _ensure_enabled(self) -> bool:
        """Enable pf if it is off. Returns True if it had to be enabled."""
        if self.engine.is_enabled():
            return False
        self.console.step("Enabling pf")
        enabled = self.engine.enable()
        if not enabled.ok:
            raise EngineError("pf could not be enabled", output=enabled.output)
        return True

    def _abort_setup(self, cause: LimawanError) -> NoReturn:
        self._enter(LifecycleState.FAILED)
        self.console.error(cause.message)
        outcome = rollback_setup(self.store, self.console)
        self._audit(
            AuditEventType.ANCHOR_ROLLBACK,
            AuditResult.SUCCESS if outcome.restored else AuditResult.FAILURE,
            message=str(outcome),
        )
        raise SetupFailedError(
            "Setup failed and was rolled back" if outcome.restored else "Setup failed and rollback failed",
            cause=cause,
            rollback=outcome,
            hint=cause.hint if outcome.restored else f"Restore manually: cp {self.store.backup_path} {self.store.main_conf_path}",
        ) from cause

    def _plan_setup(self, ruleset: AnchorRuleset) -> None:
        self.console.ruleset(ruleset.text, title=f"{self.store.anchor_path}")
        self.console.dry_run_msg(f"back up {self.store.main_conf_path} to {self.store.backup_path} (unless a backup exists)")
        self.console.dry_run_msg(f"write anchor rules to {self.store.anchor_path}")
        self.console.dry_run_msg(f"reference anchor \"{self.anchor_name}\" in {self.store.main_conf_path}")
        self.console.dry_run_msg(f"validate and load {self.store.main_conf_path}")
        self.console.diff(self.store.reference_diff(add=True), title=f"{self.store.main_conf_path} (planned)")

    # =========================================================================
    # Teardown
    # =========================================================================

    def teardown(
        self,
        *,
        force: bool = False,
        keep_backup: bool = False,
        dry_run: bool = False,
    ) -> TeardownResult:
        """Remove the anchor from pf.conf and from the running pf.

        Args:
            force: Run the full sequence even when nothing is installed
            keep_backup: Keep the pf.conf backup afterwards
            dry_run: Print the plan only

        Raises:
            ResourceBusyError: Lock not acquired in time
            ConfigIOError: An artifact could not be read or written
            FatalInconsistencyError: No validated configuration reachable
            EngineError: pf refused to load the cleaned configuration
        """
        if dry_run:
            self._plan_teardown(keep_backup)
            self._audit(AuditEventType.ANCHOR_TEARDOWN, AuditResult.DRY_RUN)
            return TeardownResult(state=self.state, changed=False, dry_run=True)

        with self.lock.hold():
            try:
                result = self._teardown_locked(force=force, keep_backup=keep_backup)
            except LimawanError as e:
                self._enter(LifecycleState.FAILED)
                self._audit(AuditEventType.ANCHOR_TEARDOWN, AuditResult.FAILURE, error=e)
                raise

        outcome = AuditResult.SUCCESS if result.changed else AuditResult.NOOP
        self._audit(AuditEventType.ANCHOR_TEARDOWN, outcome)
        return result

    def _teardown_locked(self, *, force: bool, keep_backup: bool) -> TeardownResult:
        main_conf = self.store.main_conf_path
        if not self.store.anchor_file_exists() and not self.store.is_referenced() and not force:
            self.console.info(f"Anchor \"{self.anchor_name}\" is not installed, nothing to remove")
            self._enter(LifecycleState.CLEANED)
            return TeardownResult(state=self.state, changed=False)

        self._enter(LifecycleState.ACTIVE)
        self.console.step(f"Flushing anchor \"{self.anchor_name}\"")
        flush = self.engine.flush_anchor(self.anchor_name)
        if not flush.rules_flushed:
            self.console.warn("Could not flush anchor rules (may not be loaded)")
        if not flush.nat_flushed:
            self.console.warn("Could not flush anchor NAT rules (may not be loaded)")
        self._enter(LifecycleState.FLUSHED)

        self.store.remove_anchor_reference()
        self.store.delete_anchor_file()
        self._enter(LifecycleState.UNREFERENCED)

        restored = self._revalidate_after_removal()
        self._enter(LifecycleState.REVALIDATED)

        self.console.step("Reloading pf configuration")
        reloaded = self.engine.reload(main_conf)
        if not reloaded.ok:
            raise EngineError(
                f"pf refused to load {main_conf}",
                output=reloaded.output,
                hint=f"Backup kept at {self.store.backup_path}",
            )
        self._enter(LifecycleState.RELOADED)

        backup_deleted = False
        if keep_backup:
            if self.store.backup_exists():
                self.console.info(f"Backup kept at {self.store.backup_path}")
        else:
            backup_deleted = self.store.delete_backup()

        self._enter(LifecycleState.CLEANED)
        self.console.success(f"Anchor \"{self.anchor_name}\" removed")
        return TeardownResult(
            state=self.state,
            changed=True,
            flush=flush,
            restored_from_backup=restored,
            backup_deleted=backup_deleted,
        )

    def _revalidate_after_removal(self) -> bool:
        """Validate pf.conf, falling back to the backup once.

        Returns:
            True if the backup had to be restored
        """
        main_conf = self.store.main_conf_path
        result = self.gate.validate(main_conf)
        if result.ok:
            return False

        self.console.warn("Configuration invalid after anchor removal, restoring backup")
        try:
            self.store.restore_from_backup()
        except NoBackupError as e:
            raise FatalInconsistencyError(
                f"{main_conf} failed validation and no backup is available",
                hint=f"Repair {main_conf} manually, then check with: pfctl -n -f {main_conf}",
                details=result.details.splitlines(),
            ) from e
        self._audit(AuditEventType.CONFIG_RESTORE, AuditResult.SUCCESS, message="teardown fallback")

        retry = self.gate.validate(main_conf)
        if not retry.ok:
            raise FatalInconsistencyError(
                f"{main_conf} failed validation even after restoring the backup",
                hint=f"Repair {main_conf} manually; backup kept at {self.store.backup_path}",
                details=retry.details.splitlines(),
            )
        return True

    # =========================================================================
    # Engine control
    # =========================================================================

    def check_main_config(self) -> GateResult:
        """Syntax-check pf.conf as it is on disk. Read-only."""
        return self.gate.validate(self.store.main_conf_path)

    def enable_engine(self, *, dry_run: bool = False) -> EnableResult:
        """Validate pf.conf, enable pf if needed and reload the configuration.

        Raises:
            ResourceBusyError: Lock not acquired in time
            RulesetSyntaxError: pf.conf failed validation; nothing loaded
            EngineError: pf could not be enabled or refused the reload
        """
        main_conf = self.store.main_conf_path
        if dry_run:
            self.console.dry_run_msg(f"validate {main_conf}")
            self.console.dry_run_msg("enable pf if disabled")
            self.console.dry_run_msg(f"reload {main_conf}")
            self._audit(AuditEventType.ENGINE_ENABLE, AuditResult.DRY_RUN)
            return EnableResult(enabled_now=False, dry_run=True)

        with self.lock.hold():
            try:
                self.store.ensure_main_config()
                self.gate.require_valid(main_conf)
                enabled_now = self._ensure_enabled()

                self.console.step("Reloading pf configuration")
                reloaded = self.engine.reload(main_conf)
                if not reloaded.ok:
                    raise EngineError(f"pf refused to load {main_conf}", output=reloaded.output)
            except LimawanError as e:
                self._audit(AuditEventType.ENGINE_ENABLE, AuditResult.FAILURE, error=e)
                raise

        status = self.inspector.status()
        if status.active:
            self.console.success(f"Anchor \"{self.anchor_name}\" is active")
        else:
            self.console.warn(f"Anchor \"{self.anchor_name}\" is not active")
            self.console.hint("Configure forwarding with: limawan setup")

        self._audit(AuditEventType.ENGINE_ENABLE, AuditResult.SUCCESS if enabled_now else AuditResult.NOOP)
        return EnableResult(enabled_now=enabled_now, status=status)

    def _plan_teardown(self, keep_backup: bool) -> None:
        self.console.diff(self.store.reference_diff(add=False), title=f"{self.store.main_conf_path} (planned)")
        self.console.dry_run_msg(f"flush anchor \"{self.anchor_name}\" rules and NAT")
        self.console.dry_run_msg(f"remove the anchor reference from {self.store.main_conf_path}")
        self.console.dry_run_msg(f"delete {self.store.anchor_path}")
        self.console.dry_run_msg(f"validate and reload {self.store.main_conf_path}")
        if not keep_backup:
            self.console.dry_run_msg(f"delete backup {self.store.backup_path}")

    # =========================================================================
    # Audit
    # =========================================================================

    def _audit(
        self,
        event_type: AuditEventType,
        result: AuditResult,
        *,
        spec: Optional[ForwardingSpec] = None,
        message: Optional[str] = None,
        error: Optional[LimawanError] = None,
    ) -> None:
        parameters = {}
        if spec is not None:
            parameters = {
                "vm_address": spec.vm_address,
                "internal_port": spec.internal_port,
                "external_port": spec.external_port,
                "host_interface": spec.host_interface,
                "service_kind": spec.service_kind.value,
            }
        self.audit.log_operation(
            event_type,
            result,
            anchor=self.anchor_name,
            parameters=parameters,
            message=message,
            error=error.message if error else None,
        )
