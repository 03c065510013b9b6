"""Input validation utilities.

Provides validation for the values that make up a forwarding request:
- IPv4 literals (VM address)
- Port numbers and the allowed external port range
- Network interface and anchor names
- Paths (with traversal prevention)

All validators return the validated value or raise InvalidSpecError.
"""

import ipaddress
import re
from dataclasses import dataclass

from limawan.core.exceptions import InvalidSpecError


MIN_PORT = 1
MAX_PORT = 65535

# BSD interface names: en0, bridge100, utun3, lo0 ...
INTERFACE_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9]{0,14}$")

# pf anchor names, kept to a conservative subset
ANCHOR_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_][a-zA-Z0-9_.-]{0,63}$")


@dataclass(frozen=True)
class PortRange:
    """Inclusive range of ports, e.g. 1024-65535."""
    start: int
    end: int

    def __contains__(self, port: object) -> bool:
        return isinstance(port, int) and self.start <= port <= self.end

    def __str__(self) -> str:
        return f"{self.start}-{self.end}"

    @classmethod
    def parse(cls, value: str) -> "PortRange":
        """Parse a START-END string.

        Raises:
            ValueError: If the string is malformed or out of bounds
        """
        match = re.fullmatch(r"\s*(\d+)\s*-\s*(\d+)\s*", value)
        if not match:
            raise ValueError(f"Port range must look like START-END, got '{value}'")

        start, end = int(match.group(1)), int(match.group(2))
        if not MIN_PORT <= start <= end <= MAX_PORT:
            raise ValueError(
                f"Port range {start}-{end} must satisfy "
                f"{MIN_PORT} <= START <= END <= {MAX_PORT}"
            )
        return cls(start, end)


DEFAULT_EXTERNAL_PORT_RANGE = PortRange(1024, 65535)


def validate_ipv4(value: str) -> str:
    """Validate an IPv4 address literal.

    Args:
        value: Address to validate (e.g. "192.168.105.10")

    Returns:
        The validated address in canonical form

    Raises:
        InvalidSpecError: If not a dotted-quad IPv4 literal
    """
    value = (value or "").strip()

    try:
        address = ipaddress.IPv4Address(value)
    except ValueError as e:
        raise InvalidSpecError(
            f"Invalid IPv4 address: '{value}'",
            hint="Use a dotted-quad address like 192.168.105.10",
            details=[str(e)],
        ) from e

    return str(address)


def validate_port(value: int, port_type: str = "port") -> int:
    """Validate a port number.

    Args:
        value: Port number to validate
        port_type: Label used in error messages ("internal", "external")

    Returns:
        The validated port number

    Raises:
        InvalidSpecError: If port is out of valid range
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidSpecError(
            f"Invalid {port_type} port: {value!r} (must be numeric)",
            hint=f"Port must be between {MIN_PORT} and {MAX_PORT}",
        )

    if not MIN_PORT <= value <= MAX_PORT:
        raise InvalidSpecError(
            f"Invalid {port_type} port: {value}",
            hint=f"Port must be between {MIN_PORT} and {MAX_PORT}",
        )

    return value


def validate_external_port(value: int, allowed: PortRange = DEFAULT_EXTERNAL_PORT_RANGE) -> int:
    """Validate an external (WAN-facing) port against the allowed range.

    Privileged ports are refused by the default range so a forwarded VM
    service can never pose as one of the host's system services.

    Raises:
        InvalidSpecError: If port is invalid or outside the allowed range
    """
    validate_port(value, "external")

    if value not in allowed:
        raise InvalidSpecError(
            f"External port {value} outside allowed range {allowed}",
            hint=f"Choose a port between {allowed.start} and {allowed.end}",
        )

    return value


def validate_interface_name(value: str) -> str:
    """Validate a host network interface name (syntax only)."""
    value = (value or "").strip()

    if not INTERFACE_PATTERN.match(value):
        raise InvalidSpecError(
            f"Invalid network interface name: '{value}'",
            hint="Use an interface name like en0 or bridge100",
        )

    return value


def validate_anchor_name(value: str) -> str:
    """Validate a pf anchor name."""
    if not ANCHOR_NAME_PATTERN.match(value or ""):
        raise InvalidSpecError(
            f"Invalid anchor name: '{value}'",
            hint="Use letters, digits, '_', '-' or '.'",
        )
    return value


def validate_path(value: str, must_be_absolute: bool = True) -> str:
    """Validate a file path with traversal prevention.

    Args:
        value: Path to validate
        must_be_absolute: Require absolute path

    Returns:
        The validated path

    Raises:
        InvalidSpecError: If validation fails
    """
    dangerous_patterns = [
        "..",           # Parent directory traversal
        "$",            # Variable expansion
        "`",            # Command substitution
        "|",            # Pipe
        ";",            # Command separator
        "&",            # Background/AND
        "\n",           # Newline injection
        "\r",           # Carriage return
        "\x00",         # Null byte
        '"',            # Would break the quoted pf "load anchor" path
    ]

    for pattern in dangerous_patterns:
        if pattern in value:
            raise InvalidSpecError(
                f"Path contains dangerous pattern: {repr(pattern)}",
                hint="Use a simple path without special characters",
            )

    if must_be_absolute and not value.startswith("/"):
        raise InvalidSpecError(
            f"Path must be absolute: {value}",
            hint=f"Use /{value}",
        )

    return value
