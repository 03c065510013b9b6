"""Main CLI entry point using Typer.

Thin front end over the anchor lifecycle: parses options, builds the
forwarding request and delegates. All behaviour lives in the services.
"""

import os
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console

from limawan import __version__
from limawan.core.audit import configure_audit_logger
from limawan.core.config import DEFAULT_CONFIG_PATH, get_example_config, init_config
from limawan.core.context import ExecutionContext, create_context
from limawan.core.exceptions import ConfigIOError, LimawanError, PrerequisiteError
from limawan.core.executor import CommandExecutor
from limawan.core.files import write_atomic
from limawan.core.output import console as app_console
from limawan.services.lifecycle import AnchorLifecycle
from limawan.services.network import check_vm_connectivity, resolve_vm_address, wait_for_vm
from limawan.services.rules import (
    ForwardingSpec,
    ServiceKind,
    generate_complete_ruleset,
    generate_ruleset,
    validate_forwarding_spec,
)


app = typer.Typer(
    name="limawan",
    help="Expose Lima VM services to the WAN through a macOS pf anchor.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=True,
    pretty_exceptions_show_locals=False,
)

config_app = typer.Typer(
    name="config",
    help="Configuration management.",
    no_args_is_help=True,
)
app.add_typer(config_app, name="config")


# Type aliases for common options
DryRunOption = Annotated[
    bool,
    typer.Option(
        "--dry-run",
        help="Preview changes without executing. Shows what would happen.",
        is_flag=True,
    ),
]

VerboseOption = Annotated[
    int,
    typer.Option(
        "--verbose",
        "-v",
        count=True,
        help="Increase output verbosity. Can be repeated (-v, -vv).",
    ),
]

QuietOption = Annotated[
    bool,
    typer.Option(
        "--quiet",
        "-q",
        help="Suppress non-essential output. Only show errors.",
        is_flag=True,
    ),
]

NoColorOption = Annotated[
    bool,
    typer.Option(
        "--no-color",
        help="Disable colored output.",
        is_flag=True,
    ),
]

ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help=f"Path to configuration file. Default: {DEFAULT_CONFIG_PATH}",
        exists=False,
        file_okay=True,
        dir_okay=False,
    ),
]

VmIpOption = Annotated[
    Optional[str],
    typer.Option("--vm-ip", help="VM IPv4 address. Default: forwarding.default_vm_ip (or VM_IP)"),
]

InternalPortOption = Annotated[
    int,
    typer.Option("--internal-port", "-i", help="Service port inside the VM"),
]

ExternalPortOption = Annotated[
    int,
    typer.Option("--external-port", "-e", help="Port exposed on the host interface"),
]

InterfaceOption = Annotated[
    Optional[str],
    typer.Option("--interface", "-I", help="Host interface. Default: forwarding.default_interface (or HOST_INTERFACE)"),
]

ServiceOption = Annotated[
    Optional[str],
    typer.Option("--service", "-s", help="ssh, http, https or generic. Default: inferred from the internal port"),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console = Console()
        console.print(f"limawan version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """LimaWAN - expose Lima VM services to the WAN.

    Installs a "limawan" anchor into the host pf configuration, validating
    every change with pfctl before loading it and rolling back on failure.

    [bold]Examples:[/bold]
        sudo limawan setup -i 22 -e 2222
        sudo limawan setup --vm default -i 80 -e 8080 --dry-run
        limawan status
        sudo limawan teardown
    """
    pass


def handle_error(error: LimawanError) -> None:
    """Handle a LimawanError by printing formatted error and exiting."""
    app_console.error(error.message)

    if error.details:
        for detail in error.details:
            app_console.print(f"  [dim]{detail}[/dim]")

    if error.hint:
        app_console.hint(error.hint)

    raise typer.Exit(error.exit_code)


def _check_root(ctx: ExecutionContext) -> None:
    """Mutating commands need root unless previewing."""
    if os.geteuid() != 0 and not ctx.dry_run:
        raise PrerequisiteError(
            "This operation requires root privileges",
            hint="Run with: sudo limawan ... (or preview with --dry-run)",
        )


def _build_lifecycle(ctx: ExecutionContext) -> AnchorLifecycle:
    """Wire the lifecycle controller from the loaded configuration."""
    config = ctx.config
    audit = configure_audit_logger(config.audit.log_path, enabled=config.audit.enabled)
    return AnchorLifecycle.from_config(
        config,
        CommandExecutor(ctx),
        console=ctx.console,
        audit=audit,
    )


def _build_spec(
    ctx: ExecutionContext,
    *,
    vm_ip: Optional[str],
    vm: Optional[str],
    internal_port: int,
    external_port: int,
    interface: Optional[str],
    service: Optional[str],
    wait: bool = False,
) -> ForwardingSpec:
    """Assemble a ForwardingSpec from options and configured defaults."""
    forwarding = ctx.config.forwarding

    if vm:
        lookup = wait_for_vm if wait else resolve_vm_address
        address = lookup(CommandExecutor(ctx), vm, subnet=forwarding.vm_subnet)
        ctx.console.info(f"VM '{vm}' address: {address}")
    else:
        address = vm_ip or forwarding.default_vm_ip

    kind = ServiceKind.parse(service) if service else ServiceKind.for_port(internal_port)

    return ForwardingSpec(
        vm_address=address,
        internal_port=internal_port,
        external_port=external_port,
        host_interface=interface or forwarding.default_interface,
        service_kind=kind,
    )


# =============================================================================
# Setup / Teardown
# =============================================================================

@app.command("setup")
def setup_cmd(
    internal_port: InternalPortOption,
    external_port: ExternalPortOption,
    vm_ip: VmIpOption = None,
    vm: Annotated[
        Optional[str],
        typer.Option("--vm", help="Lima VM name; its address is looked up with limactl"),
    ] = None,
    wait: Annotated[
        bool,
        typer.Option("--wait", "-w", help="With --vm, wait up to 30s for the VM to get an address"),
    ] = False,
    interface: InterfaceOption = None,
    service: ServiceOption = None,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Forward an external host port to a service in the VM.

    Backs up pf.conf, writes the anchor rules, references the anchor,
    validates with pfctl -n and loads the configuration. Any failure
    after pf.conf was modified restores the backup.

    [bold]Examples:[/bold]

        sudo limawan setup -i 22 -e 2222
        sudo limawan setup --vm-ip 192.168.105.10 -i 443 -e 8443 -I en0
        sudo limawan setup --vm default --wait -i 80 -e 8080
    """
    ctx = create_context(dry_run=dry_run, verbose=verbose, quiet=quiet, no_color=no_color, config=config)

    try:
        _check_root(ctx)
        spec = _build_spec(
            ctx,
            vm_ip=vm_ip,
            vm=vm,
            internal_port=internal_port,
            external_port=external_port,
            interface=interface,
            service=service,
            wait=wait,
        )
        lifecycle = _build_lifecycle(ctx)
        result = lifecycle.setup(spec, dry_run=dry_run)

        if result.dry_run:
            return

        reach = check_vm_connectivity(CommandExecutor(ctx), spec.vm_address, spec.internal_port)
        if not reach.pingable:
            ctx.console.warn(f"VM {spec.vm_address} is not reachable via ping")
        if not reach.port_open:
            ctx.console.warn(f"Port {spec.internal_port} is not open on VM {spec.vm_address}")

        ctx.console.operation_summary("Setup", True, {
            "Forwarding": str(spec),
            "Changed": "yes" if result.changed else "no (already active)",
            "Anchor": lifecycle.store.anchor_path,
            "Backup": lifecycle.store.backup_path,
        })
        ctx.console.hint(f"Test with: nc -zv <host-ip> {spec.external_port}")

    except LimawanError as e:
        handle_error(e)


@app.command("teardown")
def teardown_cmd(
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Run the full removal even if no anchor is found"),
    ] = False,
    keep_backup: Annotated[
        bool,
        typer.Option("--keep-backup", "-k", help="Keep the pf.conf backup after teardown"),
    ] = False,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Remove the anchor and reload pf.

    Flushes the live anchor, removes its reference from pf.conf, deletes
    the anchor file, validates and reloads. Falls back to the backup if
    the cleaned configuration does not validate.

    [bold]Examples:[/bold]

        sudo limawan teardown
        sudo limawan teardown --keep-backup
    """
    ctx = create_context(
        dry_run=dry_run,
        force=force,
        verbose=verbose,
        quiet=quiet,
        no_color=no_color,
        config=config,
    )

    try:
        _check_root(ctx)
        lifecycle = _build_lifecycle(ctx)
        result = lifecycle.teardown(force=ctx.force, keep_backup=keep_backup, dry_run=dry_run)

        if result.dry_run or not result.changed:
            return

        ctx.console.operation_summary("Teardown", True, {
            "Restored from backup": "yes" if result.restored_from_backup else "no",
            "Backup removed": "yes" if result.backup_deleted else "no",
        })

    except LimawanError as e:
        handle_error(e)


# =============================================================================
# Read-only commands
# =============================================================================

@app.command("status")
def status_cmd(
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Show the anchor state on disk and in pf.

    [bold]Examples:[/bold]

        limawan status
        sudo limawan status -v   # include live rule listings
    """
    ctx = create_context(verbose=verbose, no_color=no_color, config=config)

    try:
        lifecycle = _build_lifecycle(ctx)
        inspector = lifecycle.inspector
        status = inspector.status()

        ctx.console.checks(f"Anchor \"{lifecycle.anchor_name}\"", {
            "pf enabled": inspector.engine_enabled(),
            "Anchor file": status.file_exists,
            "Referenced in pf.conf": status.referenced_in_main_config,
            "Rules loaded": status.loaded_in_engine,
            "NAT rules loaded": status.nat_rules_loaded,
            "Backup present": lifecycle.store.backup_exists(),
        })

        installed = inspector.installed_spec()
        if installed is not None:
            live = inspector.forwarding_active(installed)
            ctx.console.checks("Forwarding", {str(installed): live})

        if status.active:
            ctx.console.success("Port forwarding is active")
        elif status.absent:
            ctx.console.info("Port forwarding is not installed")
        else:
            ctx.console.warn("Port forwarding is partially installed")
            ctx.console.hint("Re-run 'limawan setup' or clean up with 'limawan teardown --force'")

        if ctx.is_verbose:
            for title, listing in (("Live rules", inspector.live_rules()), ("Live NAT", inspector.live_nat())):
                if listing:
                    ctx.console.ruleset(listing, title=title)

    except LimawanError as e:
        handle_error(e)


@app.command("generate")
def generate_cmd(
    internal_port: InternalPortOption,
    external_port: ExternalPortOption,
    vm_ip: VmIpOption = None,
    interface: InterfaceOption = None,
    service: ServiceOption = None,
    output: Annotated[
        Optional[Path],
        typer.Option("--output", "-o", help="Write the rules to a file instead of printing"),
    ] = None,
    complete: Annotated[
        bool,
        typer.Option("--complete", "-C", help="Standalone ruleset with options, scrub, tables and base policy"),
    ] = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Render anchor rules without touching pf.

    [bold]Examples:[/bold]

        limawan generate -i 22 -e 2222
        limawan generate -i 80 -e 8080 -o ./limawan.anchor
        limawan generate -i 443 -e 8443 --complete
    """
    ctx = create_context(no_color=no_color, config=config)

    try:
        spec = _build_spec(
            ctx,
            vm_ip=vm_ip,
            vm=None,
            internal_port=internal_port,
            external_port=external_port,
            interface=interface,
            service=service,
        )
        validate_forwarding_spec(spec, port_range=ctx.config.forwarding.port_range)
        ruleset = generate_complete_ruleset(spec) if complete else generate_ruleset(spec)

        if output:
            try:
                write_atomic(output, ruleset.text)
            except OSError as e:
                raise ConfigIOError(f"Cannot write {output}", path=output, details=[str(e)]) from e
            ctx.console.success(f"Anchor rules written to {output}")
        else:
            ctx.console.print(ruleset.text, markup=False, highlight=False, soft_wrap=True, end="")

    except LimawanError as e:
        handle_error(e)


@app.command("check")
def check_cmd(
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Validate pf.conf with pfctl -n without loading it.

    [bold]Examples:[/bold]

        sudo limawan check
    """
    ctx = create_context(verbose=verbose, no_color=no_color, config=config)

    try:
        _check_root(ctx)
        lifecycle = _build_lifecycle(ctx)
        result = lifecycle.check_main_config()
        result.raise_for_failure()

    except LimawanError as e:
        handle_error(e)


@app.command("enable")
def enable_cmd(
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Validate pf.conf, enable pf and reload the configuration.

    [bold]Examples:[/bold]

        sudo limawan enable
    """
    ctx = create_context(dry_run=dry_run, verbose=verbose, quiet=quiet, no_color=no_color, config=config)

    try:
        _check_root(ctx)
        lifecycle = _build_lifecycle(ctx)
        result = lifecycle.enable_engine(dry_run=dry_run)
        if not result.dry_run:
            ctx.console.success("pf enabled" if result.enabled_now else "pf was already enabled; configuration reloaded")

    except LimawanError as e:
        handle_error(e)


# =============================================================================
# Config commands
# =============================================================================

@config_app.command("show")
def config_show(
    config: ConfigOption = None,
    no_color: NoColorOption = False,
) -> None:
    """Show the effective configuration (file, defaults and environment)."""
    ctx = create_context(no_color=no_color, config=config)

    try:
        ctx.console.print()
        ctx.console.print(f"[bold]Configuration file:[/bold] {ctx.config_path}")
        ctx.console.print(f"[bold]File exists:[/bold] {ctx.config_path.exists()}")
        ctx.console.print()
        ctx.console.yaml(ctx.config.to_yaml(), title="Configuration")

    except LimawanError as e:
        handle_error(e)


@config_app.command("init")
def config_init(
    config: ConfigOption = None,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Overwrite an existing file"),
    ] = False,
    no_color: NoColorOption = False,
) -> None:
    """Write a commented example configuration file."""
    ctx = create_context(force=force, no_color=no_color, config=config)

    try:
        init_config(ctx.config_path, force=force)
        ctx.console.success(f"Configuration file created: {ctx.config_path}")

    except LimawanError as e:
        handle_error(e)


@config_app.command("example")
def config_example(no_color: NoColorOption = False) -> None:
    """Print the example configuration."""
    ctx = create_context(no_color=no_color)
    ctx.console.print(get_example_config(), markup=False, highlight=False, soft_wrap=True)


if __name__ == "__main__":
    app()
