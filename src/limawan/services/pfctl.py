"""pf engine adapter.

Wraps the pfctl control tool behind the small interface the anchor
lifecycle needs: check-mode syntax validation, atomic load, enable,
and read-only listings of an anchor's rules and NAT rules.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from limawan.core.exceptions import ExecutionError
from limawan.core.executor import CommandExecutor, CommandResult


@dataclass
class EngineResult:
    """Outcome of a pfctl invocation."""
    ok: bool
    output: str = ""


@dataclass
class FlushResult:
    """Which parts of an anchor were flushed."""
    rules_flushed: bool
    nat_flushed: bool


class FirewallEngine(Protocol):
    """Control interface of the host packet filter."""

    def check_syntax(self, path: Path) -> EngineResult: ...

    def reload(self, path: Path) -> EngineResult: ...

    def enable(self) -> EngineResult: ...

    def is_enabled(self) -> bool: ...

    def list_anchor_rules(self, name: str) -> Optional[str]: ...

    def list_anchor_nat(self, name: str) -> Optional[str]: ...

    def flush_anchor(self, name: str) -> FlushResult: ...


class PfctlEngine:
    """FirewallEngine backed by macOS pfctl.

    pfctl writes most diagnostics to stderr, even on success, so
    results carry the combined output.
    """

    def __init__(
        self,
        executor: CommandExecutor,
        *,
        pfctl_path: str = "pfctl",
        timeout: int = 30,
    ) -> None:
        """Initialize engine.

        Args:
            executor: Command executor
            pfctl_path: pfctl binary
            timeout: Per-command timeout in seconds
        """
        self.executor = executor
        self.pfctl_path = pfctl_path
        self.timeout = timeout

    def check_syntax(self, path: Path) -> EngineResult:
        """Parse ``path`` without loading it (pfctl -n -f)."""
        result = self._run(["-n", "-f", str(path)])
        return EngineResult(ok=result.success, output=result.output)

    def reload(self, path: Path) -> EngineResult:
        """Atomically load the ruleset in ``path`` (pfctl -f)."""
        result = self._run(["-f", str(path)])
        return EngineResult(ok=result.success, output=result.output)

    def enable(self) -> EngineResult:
        """Enable pf (pfctl -e). Already enabled counts as success."""
        result = self._run(["-e"])
        ok = result.success or "already enabled" in result.output.lower()
        return EngineResult(ok=ok, output=result.output)

    def is_enabled(self) -> bool:
        """Check `pfctl -s info` for 'Status: Enabled'."""
        info = self.info()
        return info is not None and "Status: Enabled" in info

    def list_anchor_rules(self, name: str) -> Optional[str]:
        """Filter rules loaded in anchor ``name``, or None if absent."""
        return self._listing(["-a", name, "-s", "rules"])

    def list_anchor_nat(self, name: str) -> Optional[str]:
        """NAT/redirect rules loaded in anchor ``name``, or None if absent."""
        return self._listing(["-a", name, "-s", "nat"])

    def flush_anchor(self, name: str) -> FlushResult:
        """Flush the anchor's filter and NAT rules. Never raises."""
        rules = self._run(["-a", name, "-F", "rules"])
        nat = self._run(["-a", name, "-F", "nat"])
        return FlushResult(rules_flushed=rules.success, nat_flushed=nat.success)

    def info(self) -> Optional[str]:
        """Raw `pfctl -s info` output, or None if pf is unavailable."""
        return self._listing(["-s", "info"])

    def _listing(self, args: list[str]) -> Optional[str]:
        result = self._run(args)
        if not result.success or not result.stdout.strip():
            return None
        return result.stdout

    def _run(self, args: list[str]) -> CommandResult:
        command = [self.pfctl_path] + args
        try:
            return self.executor.run(command, check=False, timeout=self.timeout)
        except ExecutionError as e:
            # Timeouts and a missing pfctl surface as a failed result
            return CommandResult(
                command=command,
                return_code=-1,
                stdout="",
                stderr="\n".join([e.message] + e.details),
            )
