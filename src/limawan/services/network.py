"""Host network and Lima VM lookup.

Provides:
- Host interface lookup (exists / up / addresses) via ifconfig
- Lima VM address resolution via limactl, optionally waiting for boot
- A warning-only reachability check of the VM service
"""

import ipaddress
import re
import socket
import subprocess
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from limawan.core.exceptions import ExecutionError, VMUnreachableError

if TYPE_CHECKING:
    from limawan.core.executor import CommandExecutor


DEFAULT_VM_NAME = "default"
LIMA_INTERFACE = "lima0"
DEFAULT_VM_SUBNET = "192.168.105.0/24"

_INET_PATTERN = re.compile(r"\binet (\d{1,3}(?:\.\d{1,3}){3})")
_FLAGS_PATTERN = re.compile(r"flags=\w+<([^>]*)>")


def _ipv4_addresses(text: str) -> list[str]:
    """Dotted quads after `inet`, skipping ones that are not valid addresses."""
    addresses = []
    for candidate in _INET_PATTERN.findall(text):
        try:
            ipaddress.IPv4Address(candidate)
        except ValueError:
            continue
        addresses.append(candidate)
    return addresses


@dataclass
class InterfaceState:
    """Observed state of a host network interface."""
    name: str
    exists: bool
    up: bool = False
    addresses: list[str] = field(default_factory=list)


def parse_ifconfig(name: str, output: str) -> InterfaceState:
    """Parse `ifconfig NAME` output into an InterfaceState.

    Example first line:
        en0: flags=8863<UP,BROADCAST,SMART,RUNNING,SIMPLEX,MULTICAST> mtu 1500
    """
    flags: list[str] = []
    match = _FLAGS_PATTERN.search(output)
    if match:
        flags = [f.strip() for f in match.group(1).split(",")]

    return InterfaceState(
        name=name,
        exists=True,
        up="UP" in flags,
        addresses=_ipv4_addresses(output),
    )


def lookup_interface(name: str, timeout: int = 5) -> InterfaceState:
    """Look up a host interface with ifconfig.

    Args:
        name: Interface name (e.g. en0)
        timeout: Command timeout in seconds

    Returns:
        InterfaceState; ``exists`` is False when ifconfig does not know it
    """
    try:
        result = subprocess.run(
            ["ifconfig", name],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError):
        return InterfaceState(name=name, exists=False)

    if result.returncode != 0:
        return InterfaceState(name=name, exists=False)

    return parse_ifconfig(name, result.stdout)


def vm_is_running(executor: "CommandExecutor", vm_name: str) -> bool:
    """Check `limactl list` for a running VM named ``vm_name``."""
    try:
        result = executor.run(
            ["limactl", "list", "-f", "{{.Name}}\t{{.Status}}"],
            check=False,
            timeout=30,
        )
    except ExecutionError:
        return False

    if not result.success:
        return False

    for line in result.stdout.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[0] == vm_name and parts[1] == "Running":
            return True
    return False


def resolve_vm_address(
    executor: "CommandExecutor",
    vm_name: str = DEFAULT_VM_NAME,
    *,
    subnet: str = DEFAULT_VM_SUBNET,
) -> str:
    """Find the IPv4 address a Lima VM holds on the shared network.

    Tries the lima0 interface first, then any address inside ``subnet``.

    Raises:
        VMUnreachableError: If the VM is not running or has no address
    """
    if not vm_is_running(executor, vm_name):
        raise VMUnreachableError(
            f"VM '{vm_name}' is not running",
            hint=f"Start it with: limactl start {vm_name}",
        )

    result = executor.run(
        ["limactl", "shell", vm_name, "ip", "addr", "show", LIMA_INTERFACE],
        check=False,
        timeout=30,
    )
    addresses = _ipv4_addresses(result.stdout) if result.success else []
    if addresses:
        return addresses[0]

    # Fallback: any address on the VM network
    network = ipaddress.IPv4Network(subnet, strict=False)
    result = executor.run(
        ["limactl", "shell", vm_name, "ip", "addr"],
        check=False,
        timeout=30,
    )
    if result.success:
        for address in _ipv4_addresses(result.stdout):
            if ipaddress.IPv4Address(address) in network:
                return address

    raise VMUnreachableError(
        f"Could not get IP address for VM '{vm_name}'",
        hint=f"Check that the VM has a {LIMA_INTERFACE} interface on {subnet}",
    )



def wait_for_vm(
    executor: "CommandExecutor",
    vm_name: str = DEFAULT_VM_NAME,
    *,
    subnet: str = DEFAULT_VM_SUBNET,
    timeout: float = 30,
    interval: float = 1,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Poll until the VM is running and has an address, then return it.

    Raises:
        VMUnreachableError: If the VM is not ready within ``timeout`` seconds
    """
    attempts = max(1, int(timeout / interval))
    last_error = None
    for attempt in range(attempts):
        try:
            return resolve_vm_address(executor, vm_name, subnet=subnet)
        except VMUnreachableError as e:
            last_error = e
        if attempt < attempts - 1:
            sleep(interval)

    raise VMUnreachableError(
        f"VM '{vm_name}' not ready after {timeout:g}s",
        hint=last_error.hint if last_error else None,
        details=[last_error.message] if last_error else None,
    )


@dataclass
class VmReachability:
    """Reachability of the forwarded service from the host."""
    address: str
    port: int
    pingable: bool
    port_open: bool

    @property
    def ok(self) -> bool:
        return self.pingable and self.port_open


def check_vm_connectivity(
    executor: "CommandExecutor",
    address: str,
    port: int,
    *,
    timeout: float = 5,
) -> VmReachability:
    """Ping the VM and try a TCP connect to the service port.

    Never raises; setup only warns when the service is unreachable, since
    it may not be started yet.
    """
    try:
        pinged = executor.run(["ping", "-c", "1", "-W", "1000", address], check=False, timeout=5)
        pingable = pinged.success
    except ExecutionError:
        pingable = False

    try:
        with socket.create_connection((address, port), timeout=timeout):
            port_open = True
    except OSError:
        port_open = False

    return VmReachability(address=address, port=port, pingable=pingable, port_open=port_open)
