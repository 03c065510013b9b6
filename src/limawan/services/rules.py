"""pf anchor rule generation.

Turns a ForwardingSpec into the text body of the limawan anchor. Pure:
no filesystem, no subprocess. Each service kind maps to one template
function; SSH gets the stricter anti-scan rules, HTTP/HTTPS get a
commented rate-limit rule, anything else the minimal forward + state
rules.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from limawan.core.exceptions import InvalidSpecError
from limawan.core.validation import (
    DEFAULT_EXTERNAL_PORT_RANGE,
    PortRange,
    validate_external_port,
    validate_interface_name,
    validate_ipv4,
    validate_port,
)
from limawan.services.network import InterfaceState


TIMESTAMP_PREFIX = "# Generated on "
TIMESTAMP_FORMAT = "%a %b %d %H:%M:%S %Y"


class ServiceKind(str, Enum):
    """Kind of service behind a forwarded port."""
    SSH = "ssh"
    HTTP = "http"
    HTTPS = "https"
    GENERIC = "generic"

    @property
    def label(self) -> str:
        return "Generic" if self is ServiceKind.GENERIC else self.name

    @classmethod
    def for_port(cls, port: int) -> "ServiceKind":
        """Infer the service kind from a well-known internal port."""
        return _PORT_KINDS.get(port, cls.GENERIC)

    @classmethod
    def parse(cls, value: str) -> "ServiceKind":
        """Parse a user-supplied kind name (case-insensitive, 'web' = HTTP).

        Raises:
            InvalidSpecError: If the name is unknown
        """
        name = (value or "").strip().lower()
        if name == "web":
            return cls.HTTP
        try:
            return cls(name)
        except ValueError:
            valid = ", ".join(k.value for k in cls)
            raise InvalidSpecError(
                f"Unknown service kind: {value}",
                hint=f"Valid kinds: {valid}",
            )


_PORT_KINDS = {
    22: ServiceKind.SSH,
    80: ServiceKind.HTTP,
    443: ServiceKind.HTTPS,
}


@dataclass(frozen=True)
class ForwardingSpec:
    """One external-port to VM-service mapping.

    Immutable; build a new one per request.
    """
    vm_address: str
    internal_port: int
    external_port: int
    host_interface: str
    service_kind: ServiceKind = ServiceKind.GENERIC

    def __str__(self) -> str:
        return (
            f"{self.host_interface}:*:{self.external_port} -> "
            f"{self.vm_address}:{self.internal_port} ({self.service_kind.label})"
        )


def validate_forwarding_spec(
    spec: ForwardingSpec,
    *,
    port_range: PortRange = DEFAULT_EXTERNAL_PORT_RANGE,
    interface_lookup: Optional[Callable[[str], InterfaceState]] = None,
) -> ForwardingSpec:
    """Check every precondition of a forwarding request.

    Args:
        spec: Request to check
        port_range: Allowed external ports
        interface_lookup: Looks up the live state of the host interface;
            skipped when None (e.g. generating rules for another host)

    Returns:
        The same spec

    Raises:
        InvalidSpecError: On the first violated precondition
    """
    validate_ipv4(spec.vm_address)
    validate_port(spec.internal_port, "internal")
    validate_external_port(spec.external_port, port_range)
    validate_interface_name(spec.host_interface)

    if not isinstance(spec.service_kind, ServiceKind):
        raise InvalidSpecError(f"Unknown service kind: {spec.service_kind!r}")

    if interface_lookup is not None:
        state = interface_lookup(spec.host_interface)
        if not state.exists:
            raise InvalidSpecError(
                f"Network interface {spec.host_interface} does not exist",
                hint="List interfaces with: ifconfig -l",
            )
        if not state.up:
            raise InvalidSpecError(
                f"Network interface {spec.host_interface} is down",
                hint="Bring it up or choose another interface",
            )

    return spec


@dataclass(frozen=True)
class AnchorRuleset:
    """Generated anchor body for one ForwardingSpec."""
    spec: ForwardingSpec
    text: str

    @property
    def comparable_text(self) -> str:
        """Rule text without the generation timestamp."""
        return strip_generated_timestamp(self.text)

    def matches(self, text: str) -> bool:
        """True if ``text`` holds the same rules (timestamp ignored)."""
        return strip_generated_timestamp(text) == self.comparable_text


def strip_generated_timestamp(text: str) -> str:
    """Drop the '# Generated on ...' line from rule text."""
    return "".join(
        line for line in text.splitlines(keepends=True)
        if not line.startswith(TIMESTAMP_PREFIX)
    )


# =============================================================================
# Templates
# =============================================================================

def _forward_rules(spec: ForwardingSpec) -> list[str]:
    """Redirect, return path, SYN-only state, outbound NAT, stealth-scan block."""
    iface = spec.host_interface
    ext = spec.external_port
    vm = spec.vm_address
    port = spec.internal_port
    return [
        "# Port forwarding",
        f"pass in on {iface} inet proto tcp from any to any port {ext} rdr-to {vm} port {port}",
        f"pass out on {iface} inet proto tcp from any to {vm} port {port}",
        "",
        "# Connection tracking (handshake starts only)",
        f"pass in on {iface} inet proto tcp from any to any port {ext} flags S/SA keep state",
        f"pass out on {iface} inet proto tcp from {vm} to any nat-to ({iface})",
        "",
        "# Security rules",
        f"block in on {iface} inet proto tcp from any to any port {ext} flags FPU/FPU",
    ]


def _generic_template(spec: ForwardingSpec) -> list[str]:
    return _forward_rules(spec)


def _ssh_template(spec: ForwardingSpec) -> list[str]:
    iface = spec.host_interface
    ext = spec.external_port
    return _forward_rules(spec) + [
        f"block in on {iface} inet proto tcp from any to any port {ext} flags F/F",
        "",
        "# Rate limiting for SSH (optional - uncomment if needed)",
        f"# pass in on {iface} inet proto tcp from any to any port {ext} flags S/SA keep state "
        "(max-src-conn 5, max-src-conn-rate 3/60, overload <ssh_abusers> flush global)",
    ]


def _web_template(spec: ForwardingSpec) -> list[str]:
    iface = spec.host_interface
    ext = spec.external_port
    return _forward_rules(spec) + [
        "",
        "# Optional: Rate limiting for web services",
        f"# pass in on {iface} inet proto tcp from any to any port {ext} flags S/SA keep state "
        "(max-src-conn 100, max-src-conn-rate 50/10)",
    ]


TEMPLATES: dict[ServiceKind, Callable[[ForwardingSpec], list[str]]] = {
    ServiceKind.SSH: _ssh_template,
    ServiceKind.HTTP: _web_template,
    ServiceKind.HTTPS: _web_template,
    ServiceKind.GENERIC: _generic_template,
}


def generate_ruleset(spec: ForwardingSpec, *, now: Optional[datetime] = None) -> AnchorRuleset:
    """Render the anchor body for ``spec``.

    Deterministic apart from the timestamp comment.

    Args:
        spec: Validated forwarding request
        now: Timestamp for the header (defaults to the current time)

    Returns:
        AnchorRuleset holding the full anchor file text
    """
    body = TEMPLATES[spec.service_kind](spec)
    return _render(spec, "# LimaWAN PF Anchor Rules", body, now)


def generate_complete_ruleset(spec: ForwardingSpec, *, now: Optional[datetime] = None) -> AnchorRuleset:
    """Render a self-contained ruleset around the forwarding rules for ``spec``.

    Adds global options, normalization, macros, persistent tables, ICMP and
    DNS passes, antispoof and a default outbound pass. The options are only
    valid at the top level of a pf configuration, so this output is for
    review or a standalone pf.conf, never for the managed anchor.
    """
    iface = spec.host_interface
    preamble = [
        "# Skip loopback",
        "set skip on lo0",
        "",
        "# Default policies",
        "set block-policy return",
        'set fingerprints "/etc/pf.os"',
        "set ruleset-optimization basic",
        "",
        "# Normalization",
        "scrub in all no-df",
        "scrub out all no-df",
        "",
        "# Variables",
        f'vm_ip = "{spec.vm_address}"',
        f'host_if = "{iface}"',
        f'service_port = "{spec.external_port}"',
        f'internal_port = "{spec.internal_port}"',
        "",
        "# Tables for IP management",
        "table <trusted_ips> persist",
        "table <blocked_ips> persist",
        "",
    ]
    trailer = [
        "",
        "# ICMP rules",
        "pass inet proto icmp all icmp-type echoreq",
        "pass inet proto icmp all icmp-type unreach",
        "",
        "# DNS rules",
        f"pass out on {iface} inet proto udp from any to any port 53",
        f"pass out on {iface} inet proto tcp from any to any port 53",
        "",
        "# Anti-spoofing",
        f"antispoof for {iface}",
        "",
        "# Default allow outbound",
        f"pass out on {iface} all keep state",
    ]
    body = preamble + TEMPLATES[spec.service_kind](spec) + trailer
    return _render(spec, "# LimaWAN Complete Anchor Configuration", body, now)


def _render(spec: ForwardingSpec, title: str, body: list[str], now: Optional[datetime]) -> AnchorRuleset:
    now = now or datetime.now()
    header = [
        title,
        f"{TIMESTAMP_PREFIX}{now.strftime(TIMESTAMP_FORMAT)}",
        f"# Service: {spec.service_kind.label}",
        f"# VM: {spec.vm_address}:{spec.internal_port} -> External: {spec.external_port}",
        "",
    ]
    return AnchorRuleset(spec=spec, text="\n".join(header + body) + "\n")


_HEADER_VM = re.compile(r"^# VM: (\S+):(\d+) -> External: (\d+)$", re.MULTILINE)
_HEADER_SERVICE = re.compile(r"^# Service: (\w+)$", re.MULTILINE)
_RULE_INTERFACE = re.compile(r"^pass in on (\S+) inet proto tcp ", re.MULTILINE)


def parse_ruleset(text: str) -> Optional[ForwardingSpec]:
    """Recover the ForwardingSpec an anchor file was generated from.

    Returns None if the header or the inbound rule is missing.
    """
    vm = _HEADER_VM.search(text)
    iface = _RULE_INTERFACE.search(text)
    if not vm or not iface:
        return None

    service = _HEADER_SERVICE.search(text)
    try:
        kind = ServiceKind.parse(service.group(1)) if service else ServiceKind.GENERIC
    except InvalidSpecError:
        kind = ServiceKind.GENERIC

    return ForwardingSpec(
        vm_address=vm.group(1),
        internal_port=int(vm.group(2)),
        external_port=int(vm.group(3)),
        host_interface=iface.group(1),
        service_kind=kind,
    )


def redirect_pattern(spec: ForwardingSpec) -> re.Pattern:
    """Regex finding the redirect for ``spec`` in a pfctl listing.

    Accepts both the standalone form (``rdr ... port 2222 -> VM port 22``)
    and the inline form (``pass in ... port = 2222 ... rdr-to VM port 22``).
    """
    ext = spec.external_port
    vm = re.escape(spec.vm_address)
    port = spec.internal_port
    return re.compile(
        rf"rdr.*\b{ext}\b.*{vm}\b.*\b{port}\b"
        rf"|\b{ext}\b.*rdr-to\s+{vm}\s+port\s+(?:=\s*)?{port}\b"
    )
