"""Shared fixtures: an in-memory pf engine and temp-path anchor artifacts."""

import re
from pathlib import Path
from typing import Optional

import pytest

from limawan.core.audit import AuditLogger
from limawan.core.lock import ConfigLock
from limawan.core.output import Console, Verbosity
from limawan.services.anchor_store import AnchorStore
from limawan.services.lifecycle import AnchorLifecycle
from limawan.services.network import InterfaceState
from limawan.services.pfctl import EngineResult, FlushResult
from limawan.services.rules import ForwardingSpec, ServiceKind


SAMPLE_PF_CONF = """\
scrub-anchor "com.apple/*"
nat-anchor "com.apple/*"
rdr-anchor "com.apple/*"
dummynet-anchor "com.apple/*"
anchor "com.apple/*"
load anchor "com.apple" from "/etc/pf.anchors/com.apple"
"""

_LOAD_ANCHOR = re.compile(r'load anchor "([^"]+)" from "([^"]+)"')


class FakeEngine:
    """In-memory stand-in for pfctl.

    check_syntax rejects any file containing ``reject_marker``; reload
    follows `load anchor` lines in the main config and keeps the anchor
    files' rule lines as the live ruleset.
    """

    def __init__(self) -> None:
        self.enabled = False
        self.anchors: dict[str, list[str]] = {}
        self.calls: list[tuple] = []
        self.reject_marker = "SYNTAX-ERROR"
        self.syntax_ok = True
        self.reload_ok = True
        self.enable_ok = True
        self.report_loaded = True

    def check_syntax(self, path: Path) -> EngineResult:
        self.calls.append(("check_syntax", Path(path)))
        text = Path(path).read_text() if Path(path).exists() else ""
        if not self.syntax_ok or self.reject_marker in text:
            return EngineResult(ok=False, output=f"{path}:7: syntax error")
        return EngineResult(ok=True, output="")

    def reload(self, path: Path) -> EngineResult:
        self.calls.append(("reload", Path(path)))
        if not self.reload_ok:
            return EngineResult(ok=False, output="pfctl: DIOCADDRULE: Invalid argument")

        anchors = {}
        for name, anchor_file in _LOAD_ANCHOR.findall(Path(path).read_text()):
            anchor_path = Path(anchor_file)
            if not anchor_path.exists():
                continue
            anchors[name] = [
                line for line in anchor_path.read_text().splitlines()
                if line.strip() and not line.startswith("#")
            ]
        self.anchors = anchors
        return EngineResult(ok=True, output="pf.conf loaded")

    def enable(self) -> EngineResult:
        self.calls.append(("enable",))
        if not self.enable_ok:
            return EngineResult(ok=False, output="pfctl: DIOCSTART: Operation not permitted")
        self.enabled = True
        return EngineResult(ok=True, output="pf enabled")

    def is_enabled(self) -> bool:
        return self.enabled

    def list_anchor_rules(self, name: str) -> Optional[str]:
        lines = self.anchors.get(name)
        if not lines or not self.report_loaded:
            return None
        return "\n".join(lines) + "\n"

    def list_anchor_nat(self, name: str) -> Optional[str]:
        lines = [
            line for line in self.anchors.get(name, [])
            if "rdr-to" in line or "nat-to" in line
        ]
        if not lines or not self.report_loaded:
            return None
        return "\n".join(lines) + "\n"

    def flush_anchor(self, name: str) -> FlushResult:
        self.calls.append(("flush_anchor", name))
        self.anchors.pop(name, None)
        return FlushResult(rules_flushed=True, nat_flushed=True)

    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]


def interface_up(name: str) -> InterfaceState:
    return InterfaceState(name=name, exists=True, up=True, addresses=["10.0.0.2"])


@pytest.fixture
def quiet_console() -> Console:
    """Console that only prints errors."""
    console = Console()
    console.configure(verbosity=Verbosity.QUIET)
    return console


@pytest.fixture
def pf_conf(tmp_path: Path) -> Path:
    """A main pf.conf with the stock macOS content."""
    path = tmp_path / "pf.conf"
    path.write_text(SAMPLE_PF_CONF)
    return path


@pytest.fixture
def store(tmp_path: Path, pf_conf: Path, quiet_console: Console) -> AnchorStore:
    return AnchorStore(
        "limawan",
        tmp_path / "pf.anchors" / "limawan",
        pf_conf,
        tmp_path / "pf.conf.bak",
        console=quiet_console,
    )


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def lock_path(tmp_path: Path) -> Path:
    return tmp_path / "run" / "limawan.lock"


@pytest.fixture
def audit(tmp_path: Path) -> AuditLogger:
    return AuditLogger(log_path=tmp_path / "log" / "audit.log")


@pytest.fixture
def lifecycle(
    store: AnchorStore,
    engine: FakeEngine,
    lock_path: Path,
    quiet_console: Console,
    audit: AuditLogger,
) -> AnchorLifecycle:
    return AnchorLifecycle(
        store,
        engine,
        ConfigLock(lock_path, timeout=2, poll_interval=0.01, console=quiet_console),
        interface_lookup=interface_up,
        console=quiet_console,
        audit=audit,
    )


@pytest.fixture
def ssh_spec() -> ForwardingSpec:
    return ForwardingSpec(
        vm_address="192.168.105.10",
        internal_port=22,
        external_port=2222,
        host_interface="en0",
        service_kind=ServiceKind.SSH,
    )
