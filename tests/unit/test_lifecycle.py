"""Unit tests for the anchor lifecycle controller."""

import json
from unittest.mock import patch

import pytest

from limawan.core.exceptions import (
    ConfigIOError,
    EngineError,
    FatalInconsistencyError,
    InvalidSpecError,
    NoBackupError,
    ResourceBusyError,
    RulesetSyntaxError,
    SetupFailedError,
    SetupIncompleteError,
)
from limawan.services.anchor_store import REFERENCE_MARKER, ReferenceChange, count_references
from limawan.core.lock import ConfigLock
from limawan.services.lifecycle import LifecycleState, rollback_setup
from limawan.services.rules import ForwardingSpec, ServiceKind


class TestSetup:
    """Tests for AnchorLifecycle.setup."""

    def test_setup_scenario(self, lifecycle, store, engine, ssh_spec, pf_conf):
        """SSH 2222 -> 22: one reference block, forward rule, rules live."""
        result = lifecycle.setup(ssh_spec)

        assert result.changed
        assert result.state is LifecycleState.ACTIVE
        assert result.backup_created
        assert result.reference is ReferenceChange.CHANGED
        assert result.status.loaded_in_engine

        assert count_references(pf_conf.read_text(), "limawan") == 1
        anchor_text = store.anchor_path.read_text()
        assert "port 2222 rdr-to 192.168.105.10 port 22" in anchor_text
        assert engine.enabled

    def test_call_order(self, lifecycle, engine, ssh_spec):
        """pf is validated before it is enabled and loaded."""
        lifecycle.setup(ssh_spec)
        assert engine.call_names() == ["check_syntax", "enable", "reload"]

    def test_enable_skipped_when_enabled(self, lifecycle, engine, ssh_spec):
        """An enabled pf is not enabled again."""
        engine.enabled = True
        lifecycle.setup(ssh_spec)
        assert "enable" not in engine.call_names()

    def test_invalid_spec_no_side_effects(self, lifecycle, store, engine, pf_conf):
        """A rejected spec touches nothing and takes no lock."""
        before = pf_conf.read_bytes()
        spec = ForwardingSpec("192.168.105.10", 80, 80, "en0", ServiceKind.HTTP)

        with pytest.raises(InvalidSpecError):
            lifecycle.setup(spec)

        assert pf_conf.read_bytes() == before
        assert not store.backup_exists()
        assert not store.anchor_file_exists()
        assert engine.calls == []
        assert not lifecycle.lock.path.exists()

    def test_idempotent(self, lifecycle, store, ssh_spec, pf_conf):
        """A second identical setup is a no-op with the same status."""
        first = lifecycle.setup(ssh_spec)
        conf_after_first = pf_conf.read_text()
        anchor_after_first = store.anchor_path.read_text()

        second = lifecycle.setup(ssh_spec)

        assert not second.changed
        assert second.status == first.status
        assert pf_conf.read_text() == conf_after_first
        assert store.anchor_path.read_text() == anchor_after_first
        assert count_references(pf_conf.read_text(), "limawan") == 1

    def test_reenables_pf_disabled_after_setup(self, lifecycle, engine, ssh_spec, pf_conf):
        """An active anchor with pf switched off gets pf enabled again."""
        lifecycle.setup(ssh_spec)
        conf_after_first = pf_conf.read_text()
        engine.enabled = False
        engine.calls.clear()

        result = lifecycle.setup(ssh_spec)

        assert engine.enabled
        assert result.changed
        assert result.state is LifecycleState.ACTIVE
        assert engine.call_names() == ["enable"]
        assert pf_conf.read_text() == conf_after_first

    def test_reenable_failure_raises(self, lifecycle, store, engine, ssh_spec, pf_conf):
        """If pf cannot be re-enabled the error surfaces and files stay put."""
        lifecycle.setup(ssh_spec)
        conf_after_first = pf_conf.read_text()
        engine.enabled = False
        engine.enable_ok = False

        with pytest.raises(EngineError):
            lifecycle.setup(ssh_spec)

        assert pf_conf.read_text() == conf_after_first
        assert store.anchor_file_exists()
        assert lifecycle.state is LifecycleState.FAILED

    def test_new_spec_regenerates(self, lifecycle, store, ssh_spec, pf_conf):
        """A different spec rewrites the anchor but keeps one reference."""
        original = pf_conf.read_bytes()
        lifecycle.setup(ssh_spec)
        web = ForwardingSpec("192.168.105.10", 80, 8080, "en0", ServiceKind.HTTP)
        result = lifecycle.setup(web)

        assert result.changed
        assert result.reference is ReferenceChange.ALREADY_PRESENT
        assert not result.backup_created
        assert "port 8080 rdr-to 192.168.105.10 port 80" in store.anchor_path.read_text()
        assert count_references(pf_conf.read_text(), "limawan") == 1
        assert store.backup_path.read_bytes() == original

    def test_dry_run(self, lifecycle, store, engine, ssh_spec, pf_conf):
        """Dry-run renders the rules and changes nothing."""
        before = pf_conf.read_bytes()
        result = lifecycle.setup(ssh_spec, dry_run=True)

        assert result.dry_run
        assert not result.changed
        assert "rdr-to 192.168.105.10 port 22" in result.ruleset.text
        assert pf_conf.read_bytes() == before
        assert not store.anchor_file_exists()
        assert engine.calls == []

    def test_lock_released_after_setup(self, lifecycle, ssh_spec):
        """The lock is free once setup returns."""
        lifecycle.setup(ssh_spec)
        assert not lifecycle.lock.held


class TestSetupRollback:
    """Failure paths of setup."""

    def test_syntax_failure_rolls_back(self, lifecycle, store, engine, ssh_spec, pf_conf):
        """A rejected config restores pf.conf byte for byte and removes the anchor."""
        original = pf_conf.read_bytes()
        engine.syntax_ok = False

        with pytest.raises(SetupFailedError) as exc:
            lifecycle.setup(ssh_spec)

        error = exc.value
        assert error.exit_code == 25
        assert error.cause.exit_code == 21
        assert error.rollback.clean
        assert any(d.startswith("Cause:") for d in error.details)
        assert any(d.startswith("Rollback:") for d in error.details)
        assert pf_conf.read_bytes() == original
        assert not store.anchor_file_exists()
        assert "reload" not in engine.call_names()
        assert lifecycle.state is LifecycleState.FAILED
        assert not lifecycle.lock.held

    def test_reload_failure_rolls_back(self, lifecycle, store, engine, ssh_spec, pf_conf):
        """pf refusing the load triggers the same rollback."""
        original = pf_conf.read_bytes()
        engine.reload_ok = False

        with pytest.raises(SetupFailedError) as exc:
            lifecycle.setup(ssh_spec)

        assert isinstance(exc.value.cause, EngineError)
        assert pf_conf.read_bytes() == original
        assert not store.anchor_file_exists()

    def test_enable_failure_rolls_back(self, lifecycle, engine, ssh_spec, pf_conf):
        """pf refusing to enable triggers the rollback."""
        original = pf_conf.read_bytes()
        engine.enable_ok = False

        with pytest.raises(SetupFailedError):
            lifecycle.setup(ssh_spec)

        assert pf_conf.read_bytes() == original
        assert "reload" not in engine.call_names()

    def test_not_reported_live(self, lifecycle, store, engine, ssh_spec):
        """Loaded but not listed is SetupIncomplete, with no rollback."""
        engine.report_loaded = False

        with pytest.raises(SetupIncompleteError) as exc:
            lifecycle.setup(ssh_spec)

        assert exc.value.status.file_exists
        assert not exc.value.status.loaded_in_engine
        assert store.anchor_file_exists()
        assert store.is_referenced()

    def test_audit_records_failure_and_rollback(self, lifecycle, engine, ssh_spec, audit):
        """Rollback and failure both land in the audit log."""
        engine.syntax_ok = False
        with pytest.raises(SetupFailedError):
            lifecycle.setup(ssh_spec)

        events = [json.loads(line) for line in audit.log_path.read_text().splitlines()]
        kinds = [(e["event_type"], e["result"]) for e in events]
        assert ("anchor.rollback", "success") in kinds
        assert ("anchor.setup", "failure") in kinds


class TestRollbackSetup:
    """Tests for the rollback_setup compensating function."""

    def test_restores_state_before(self, store, pf_conf, quiet_console):
        """pf.conf after rollback equals the backup exactly."""
        store.backup_main_config()
        backup = store.backup_path.read_bytes()
        store.write_anchor_ruleset("pass out all\n")
        store.ensure_anchor_referenced()

        outcome = rollback_setup(store, quiet_console)

        assert outcome.restored and outcome.anchor_removed
        assert pf_conf.read_bytes() == backup
        assert REFERENCE_MARKER not in pf_conf.read_text()
        assert not store.anchor_file_exists()
        assert str(outcome) == "pf.conf restored from backup; anchor file removed"

    def test_no_backup(self, store, quiet_console):
        """Without a backup the outcome reports pf.conf not restored."""
        store.write_anchor_ruleset("pass out all\n")
        outcome = rollback_setup(store, quiet_console)

        assert not outcome.restored
        assert "NOT restored" in str(outcome)
        # Restore is critical, so the anchor file is left for inspection
        assert store.anchor_file_exists()

    def test_anchor_removal_best_effort(self, store, quiet_console):
        """A failing anchor delete is reported, not raised."""
        store.backup_main_config()
        with patch.object(store, "delete_anchor_file", side_effect=ConfigIOError("busy")):
            outcome = rollback_setup(store, quiet_console)

        assert outcome.restored
        assert not outcome.anchor_removed
        assert not outcome.clean


class TestTeardown:
    """Tests for AnchorLifecycle.teardown."""

    def test_nothing_installed_noop(self, lifecycle, engine, pf_conf):
        """Teardown with no anchor succeeds without touching pf.conf."""
        before = pf_conf.read_bytes()
        result = lifecycle.teardown()

        assert not result.changed
        assert result.state is LifecycleState.CLEANED
        assert pf_conf.read_bytes() == before
        assert engine.calls == []

    def test_round_trip(self, lifecycle, store, engine, ssh_spec, pf_conf):
        """Setup then teardown restores the original pf.conf."""
        original = pf_conf.read_text()
        lifecycle.setup(ssh_spec)
        result = lifecycle.teardown()

        assert result.changed
        assert result.state is LifecycleState.CLEANED
        assert result.backup_deleted
        assert not result.restored_from_backup
        assert pf_conf.read_text() == original
        assert not store.anchor_file_exists()
        assert not store.backup_exists()
        assert "limawan" not in engine.anchors

    def test_order(self, lifecycle, engine, ssh_spec):
        """Flush comes before validation, and validation before reload."""
        lifecycle.setup(ssh_spec)
        engine.calls.clear()
        lifecycle.teardown()
        assert engine.call_names() == ["flush_anchor", "check_syntax", "reload"]

    def test_keep_backup(self, lifecycle, store, ssh_spec):
        """--keep-backup leaves the backup in place."""
        lifecycle.setup(ssh_spec)
        result = lifecycle.teardown(keep_backup=True)
        assert not result.backup_deleted
        assert store.backup_exists()

    def test_force_when_absent(self, lifecycle, engine):
        """force runs the full sequence even with nothing installed."""
        result = lifecycle.teardown(force=True)
        assert result.changed
        assert engine.call_names() == ["flush_anchor", "check_syntax", "reload"]

    def test_dry_run(self, lifecycle, store, engine, ssh_spec, pf_conf):
        """Dry-run teardown changes nothing."""
        lifecycle.setup(ssh_spec)
        before = pf_conf.read_bytes()
        engine.calls.clear()

        result = lifecycle.teardown(dry_run=True)

        assert result.dry_run
        assert pf_conf.read_bytes() == before
        assert store.anchor_file_exists()
        assert engine.calls == []

    def test_invalid_after_removal_restores_backup(self, lifecycle, store, ssh_spec, pf_conf):
        """A corrupted pf.conf falls back to the backup."""
        original = pf_conf.read_text()
        lifecycle.setup(ssh_spec)
        pf_conf.write_text(pf_conf.read_text() + "SYNTAX-ERROR\n")

        result = lifecycle.teardown()

        assert result.restored_from_backup
        assert pf_conf.read_text() == original

    def test_double_failure_is_fatal(self, lifecycle, store, engine, ssh_spec):
        """Backup also invalid: fatal, no reload, backup kept."""
        lifecycle.setup(ssh_spec)
        store.backup_path.write_text("SYNTAX-ERROR\n")
        engine.syntax_ok = False
        engine.calls.clear()

        with pytest.raises(FatalInconsistencyError) as exc:
            lifecycle.teardown()

        assert exc.value.exit_code == 27
        assert "reload" not in engine.call_names()
        assert store.backup_exists()
        assert lifecycle.state is LifecycleState.FAILED

    def test_no_backup_is_fatal(self, lifecycle, store, engine, ssh_spec):
        """Invalid config with no backup: fatal, chained from NoBackupError."""
        lifecycle.setup(ssh_spec)
        store.delete_backup()
        engine.syntax_ok = False

        with pytest.raises(FatalInconsistencyError) as exc:
            lifecycle.teardown()

        assert isinstance(exc.value.__cause__, NoBackupError)

    def test_reload_failure_keeps_backup(self, lifecycle, store, engine, ssh_spec):
        """pf refusing the cleaned config raises EngineError and keeps the backup."""
        lifecycle.setup(ssh_spec)
        engine.reload_ok = False

        with pytest.raises(EngineError):
            lifecycle.teardown()

        assert store.backup_exists()
        assert not lifecycle.lock.held


class TestLockContention:
    """Mutations wait for the configuration lock and give up cleanly."""

    @pytest.fixture
    def other_holder(self, lifecycle, lock_path, quiet_console):
        lifecycle.lock.timeout = 0.2
        lifecycle.lock.poll_interval = 0.02
        holder = ConfigLock(lock_path, timeout=1, console=quiet_console)
        with holder.hold():
            yield holder

    def test_setup_busy(self, lifecycle, store, engine, ssh_spec, pf_conf, other_holder):
        """Setup raises ResourceBusyError and touches nothing."""
        before = pf_conf.read_bytes()

        with pytest.raises(ResourceBusyError):
            lifecycle.setup(ssh_spec)

        assert pf_conf.read_bytes() == before
        assert not store.anchor_file_exists()
        assert not store.backup_exists()
        assert engine.calls == []

    def test_teardown_busy(self, lifecycle, store, engine, ssh_spec, pf_conf, lock_path, quiet_console):
        """Teardown raises ResourceBusyError and leaves the anchor installed."""
        lifecycle.setup(ssh_spec)
        installed = pf_conf.read_bytes()
        engine.calls.clear()
        lifecycle.lock.timeout = 0.2
        lifecycle.lock.poll_interval = 0.02

        with ConfigLock(lock_path, timeout=1, console=quiet_console).hold():
            with pytest.raises(ResourceBusyError):
                lifecycle.teardown()

        assert pf_conf.read_bytes() == installed
        assert store.anchor_file_exists()
        assert engine.calls == []


class TestEngineControl:
    """Tests for check_main_config and enable_engine."""

    def test_check_main_config(self, lifecycle, engine, pf_conf):
        """The check reports pf's verdict without loading anything."""
        assert lifecycle.check_main_config().ok
        pf_conf.write_text("SYNTAX-ERROR\n")
        assert not lifecycle.check_main_config().ok
        assert engine.call_names() == ["check_syntax", "check_syntax"]

    def test_enable(self, lifecycle, engine):
        """A disabled pf is validated, enabled and reloaded in that order."""
        result = lifecycle.enable_engine()
        assert result.enabled_now
        assert engine.enabled
        assert engine.call_names() == ["check_syntax", "enable", "reload"]
        assert not lifecycle.lock.held

    def test_enable_already_enabled(self, lifecycle, engine, ssh_spec):
        """An enabled pf is only reloaded; an installed anchor shows active."""
        lifecycle.setup(ssh_spec)
        engine.calls.clear()

        result = lifecycle.enable_engine()

        assert not result.enabled_now
        assert result.status.active
        assert engine.call_names() == ["check_syntax", "reload"]

    def test_enable_invalid_config(self, lifecycle, engine, pf_conf):
        """An invalid pf.conf is never enabled or loaded."""
        pf_conf.write_text("SYNTAX-ERROR\n")
        with pytest.raises(RulesetSyntaxError):
            lifecycle.enable_engine()
        assert engine.call_names() == ["check_syntax"]
        assert not engine.enabled

    def test_enable_creates_missing_config(self, lifecycle, pf_conf):
        """A missing pf.conf is created empty first."""
        pf_conf.unlink()
        lifecycle.enable_engine()
        assert pf_conf.read_text() == ""

    def test_enable_reload_failure(self, lifecycle, engine):
        """A refused reload raises EngineError."""
        engine.reload_ok = False
        with pytest.raises(EngineError):
            lifecycle.enable_engine()

    def test_enable_dry_run(self, lifecycle, engine):
        """Dry-run touches neither pf nor the lock."""
        result = lifecycle.enable_engine(dry_run=True)
        assert result.dry_run
        assert engine.calls == []
        assert not lifecycle.lock.path.exists()

    def test_enable_audited(self, lifecycle, audit):
        """Enabling pf is recorded in the audit log."""
        lifecycle.enable_engine()
        events = [json.loads(line) for line in audit.log_path.read_text().splitlines()]
        assert events[-1]["event_type"] == "engine.enable"
        assert events[-1]["result"] == "success"
