"""Read-only status of the limawan anchor.

Combines filesystem checks with pfctl listings. Never mutates anything
and never takes the configuration lock.
"""

from dataclasses import dataclass
from typing import Optional

from limawan.services.anchor_store import AnchorStore
from limawan.services.pfctl import FirewallEngine
from limawan.services.rules import ForwardingSpec, generate_ruleset, parse_ruleset, redirect_pattern


@dataclass(frozen=True)
class AnchorStatus:
    """Derived view of the anchor; computed on demand, never persisted."""
    file_exists: bool
    referenced_in_main_config: bool
    loaded_in_engine: bool
    nat_rules_loaded: bool

    @property
    def active(self) -> bool:
        """Every part of the anchor is in place and live."""
        return (
            self.file_exists
            and self.referenced_in_main_config
            and self.loaded_in_engine
            and self.nat_rules_loaded
        )

    @property
    def absent(self) -> bool:
        """Nothing of the anchor is on disk."""
        return not self.file_exists and not self.referenced_in_main_config

    def __str__(self) -> str:
        return (
            f"file={self.file_exists}, referenced={self.referenced_in_main_config}, "
            f"rules={self.loaded_in_engine}, nat={self.nat_rules_loaded}"
        )


class StatusInspector:
    """Queries anchor state from the store and the engine."""

    def __init__(self, store: AnchorStore, engine: FirewallEngine) -> None:
        self.store = store
        self.engine = engine

    @property
    def anchor_name(self) -> str:
        return self.store.anchor_name

    def status(self) -> AnchorStatus:
        """Compose the current AnchorStatus."""
        return AnchorStatus(
            file_exists=self.store.anchor_file_exists(),
            referenced_in_main_config=self.store.is_referenced(),
            loaded_in_engine=bool(self.live_rules()),
            nat_rules_loaded=bool(self.live_nat()),
        )

    def live_rules(self) -> Optional[str]:
        """Filter rules pf currently holds in the anchor."""
        return self.engine.list_anchor_rules(self.anchor_name)

    def live_nat(self) -> Optional[str]:
        """NAT rules pf currently holds in the anchor."""
        return self.engine.list_anchor_nat(self.anchor_name)

    def engine_enabled(self) -> bool:
        return self.engine.is_enabled()

    def ruleset_matches(self, spec: ForwardingSpec) -> bool:
        """True if the anchor file already holds the rules for ``spec``."""
        current = self.store.read_anchor_ruleset()
        if current is None:
            return False
        return generate_ruleset(spec).matches(current)

    def installed_spec(self) -> Optional[ForwardingSpec]:
        """The forwarding the anchor file on disk was generated for."""
        current = self.store.read_anchor_ruleset()
        return parse_ruleset(current) if current else None

    def forwarding_active(self, spec: ForwardingSpec) -> bool:
        """True if pf reports a live redirect for ``spec``."""
        pattern = redirect_pattern(spec)
        for listing in (self.live_nat(), self.live_rules()):
            if listing and pattern.search(listing):
                return True
        return False
