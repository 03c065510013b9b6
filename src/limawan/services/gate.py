"""Validation gate in front of every pf load."""

from dataclasses import dataclass
from pathlib import Path

from limawan.core.exceptions import RulesetSyntaxError
from limawan.core.output import Console, console as default_console
from limawan.services.pfctl import FirewallEngine


@dataclass
class GateResult:
    """Pass/fail of a check-mode parse plus pf's diagnostics."""
    ok: bool
    config_path: Path
    details: str = ""

    def raise_for_failure(self) -> None:
        """Raise RulesetSyntaxError if the check failed."""
        if not self.ok:
            raise RulesetSyntaxError(
                f"pf rejected configuration: {self.config_path}",
                config_path=self.config_path,
                diagnostics=self.details,
                hint=f"Inspect with: pfctl -n -f {self.config_path}",
            )


class ValidationGate:
    """Runs pf's non-mutating syntax check on a configuration file."""

    def __init__(self, engine: FirewallEngine, console: Console = default_console) -> None:
        self.engine = engine
        self.console = console

    def validate(self, config_path: Path) -> GateResult:
        """Check ``config_path`` without applying it."""
        self.console.step(f"Validating pf configuration {config_path}")
        result = self.engine.check_syntax(config_path)
        if result.ok:
            self.console.success("pf configuration syntax is valid")
        else:
            self.console.error("pf configuration syntax validation failed")
            for line in result.output.splitlines():
                self.console.verbose(f"  {line}")
        return GateResult(ok=result.ok, config_path=config_path, details=result.output)

    def require_valid(self, config_path: Path) -> GateResult:
        """Validate and raise RulesetSyntaxError on failure."""
        result = self.validate(config_path)
        result.raise_for_failure()
        return result
