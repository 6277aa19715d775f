#!/usr/bin/env python3
"""
CLI for managing the AP fleet by hand.

Usage:
    apfleet add-device ap-01 --local-address 192.168.88.1 --password secret --hotspot --ssid Cafe
    apfleet devices
    apfleet provision ap-01 [--plan plan.yaml]
    apfleet retry ap-01
    apfleet sync ap-01
    apfleet validate ap-01
    apfleet adopt ap-01 ip-pool '*3'
    apfleet history ap-01
"""

import argparse
import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import load_config
from .errors import InvalidRequestError
from .main import FleetComponents
from .models import Capabilities, ConnectionInfo, Device, ProvisioningResult, ServiceOptions
from .plan import Plan, build_plan
from .resources import ResourceType
from .store import SqliteDeviceStore

console = Console()

STATUS_STYLES = {
    "online": "green",
    "warning": "yellow",
    "offline": "dim",
    "error": "red",
    "active": "green",
    "drift": "yellow",
}


def setup_logging(verbose: bool = False):
    """Setup logging with rich handler."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


@asynccontextmanager
async def open_fleet(args) -> AsyncIterator[FleetComponents]:
    """Load configuration and open the store for one command."""
    config = load_config(args.config)
    store = SqliteDeviceStore(config.store.path)
    await store.connect()
    components = FleetComponents(config, store)
    try:
        yield components
    finally:
        await components.close()
        await store.close()


def load_plan_file(path: str, max_steps: int) -> Plan:
    """Load a plan from YAML: a list of steps, or a mapping with a `steps` list."""
    plan_path = Path(path)
    if not plan_path.exists():
        raise InvalidRequestError(f"Plan file not found: {path}")
    with open(plan_path, "r") as f:
        raw = yaml.safe_load(f) or []
    records = raw.get("steps", []) if isinstance(raw, dict) else raw
    if not isinstance(records, list):
        raise InvalidRequestError(f"Plan file {path} must contain a list of steps")
    return Plan.from_records(records, max_steps=max_steps)


def print_result(result: ProvisioningResult) -> None:
    style = "green" if result.success else "yellow"
    console.print(f"\n[bold {style}]{result.device_id}: {result.summary()}[/bold {style}]")

    if result.failed_steps:
        table = Table(title="Failed Steps")
        table.add_column("Step", style="cyan")
        table.add_column("Error", style="red")
        for failure in result.failed_steps:
            table.add_row(failure.step, failure.error)
        console.print(table)

    for warning in result.warnings:
        console.print(f"[yellow]! {warning}[/yellow]")


async def cmd_add_device(args) -> int:
    """Register (or replace) a device record."""
    async with open_fleet(args) as fleet:
        device = Device(
            id=args.device_id,
            name=args.name or args.device_id,
            model=args.model,
            connection=ConnectionInfo(
                local_address=args.local_address,
                overlay_address=args.overlay_address,
                overlay_ready=args.overlay_ready,
                prefer_overlay=args.prefer_overlay,
                port=args.port,
                scheme=args.scheme,
                username=args.username,
                secret=fleet.codec.encrypt(args.password) if args.password else "",
            ),
            capabilities=Capabilities(wireless=not args.no_wireless),
            services=ServiceOptions(
                wan_interface=args.wan_interface,
                hotspot_enabled=args.hotspot,
                pppoe_enabled=args.pppoe,
                ssid=args.ssid,
                wifi_passphrase=args.wifi_passphrase,
            ),
        )
        await fleet.store.save_device(device)
    console.print(f"[green]Device {device.id} saved[/green]")
    return 0


async def cmd_devices(args) -> int:
    """List stored devices."""
    async with open_fleet(args) as fleet:
        devices = await fleet.store.list_devices()

    if not devices:
        console.print("[yellow]No devices registered[/yellow]")
        return 0

    table = Table(title="Devices")
    table.add_column("ID", style="cyan")
    table.add_column("Address")
    table.add_column("Status")
    table.add_column("Configured")
    table.add_column("Users", justify="right")

    for device in devices:
        conn = device.connection
        address = conn.overlay_address if conn.prefer_overlay and conn.overlay_ready else conn.local_address
        style = STATUS_STYLES.get(device.status.value, "white")
        configured = device.configuration_status.get("configured")
        table.add_row(
            device.id,
            address or "-",
            f"[{style}]{device.status.value}[/{style}]",
            "-" if configured is None else ("yes" if configured else "partial"),
            str(device.health.get("connected_users", "-")),
        )

    console.print(table)
    return 0


async def cmd_provision(args) -> int:
    """Provision a device from a plan file or its requested services."""
    async with open_fleet(args) as fleet:
        device = await fleet.store.get_device(args.device_id)
        max_steps = fleet.config.provisioning.max_plan_steps
        if args.plan:
            plan = load_plan_file(args.plan, max_steps)
        else:
            plan = build_plan(device.services, device.capabilities, max_steps=max_steps)

        console.print(f"[bold]Provisioning {device.id} ({len(plan)} steps)...[/bold]")
        result = await fleet.provisioner.provision(device, plan)

    print_result(result)
    return 0 if result.success else 2


async def cmd_retry(args) -> int:
    """Re-run the failed steps of the last provisioning run."""
    async with open_fleet(args) as fleet:
        device = await fleet.store.get_device(args.device_id)
        result = await fleet.provisioner.retry_failed_steps(device)

    print_result(result)
    return 0 if result.success else 2


async def cmd_sync(args) -> int:
    """Collect a health snapshot."""
    async with open_fleet(args) as fleet:
        device = await fleet.store.get_device(args.device_id)
        snapshot = await fleet.engine.sync_health(device)

    table = Table(title=f"Health: {device.id}")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Version", snapshot.version or "N/A")
    table.add_row("Board", snapshot.board_name or "N/A")
    table.add_row("CPU Load", f"{snapshot.cpu_load}%")
    table.add_row("Memory", f"{snapshot.memory_usage}%")
    table.add_row("Uptime", f"{snapshot.uptime}s")
    table.add_row("Connected Users", str(snapshot.connected_users))
    if snapshot.wan:
        table.add_row("WAN", f"{snapshot.wan.get('status')} {snapshot.wan.get('address') or ''}")
    for pool, usage in snapshot.pool_usage.items():
        table.add_row(f"Pool {pool}", f"{usage['used']}/{usage['size']}")
    console.print(table)

    if snapshot.errors:
        console.print(f"[yellow]Unavailable: {', '.join(snapshot.errors)}[/yellow]")
    return 0


async def cmd_validate(args) -> int:
    """Check deployed configuration for drift."""
    async with open_fleet(args) as fleet:
        device = await fleet.store.get_device(args.device_id)
        report = await fleet.engine.validate_configuration(device)

    if report.drifts:
        table = Table(title="Drift")
        table.add_column("Type", style="cyan")
        table.add_column("Name")
        table.add_column("Finding")
        table.add_column("ID")
        for drift in report.drifts:
            style = STATUS_STYLES[drift.status.value]
            ids = f"{drift.previous_id} -> {drift.current_id}" if drift.current_id else drift.previous_id
            table.add_row(drift.resource_type.value, drift.name, f"[{style}]{drift.kind.value}[/{style}]", ids)
        console.print(table)
    else:
        console.print(f"[green]{device.id}: no drift[/green]")

    if report.unmanaged_resources:
        table = Table(title="Unmanaged")
        table.add_column("Type", style="cyan")
        table.add_column("Name")
        table.add_column("ID")
        table.add_column("Adoptable")
        for item in report.unmanaged_resources:
            table.add_row(item.resource_type.value, item.name, item.object_id, "yes" if item.can_adopt else "no")
        console.print(table)

    for error in report.errors:
        console.print(f"[red]{error}[/red]")
    return 2 if report.has_drift else 0


async def cmd_adopt(args) -> int:
    """Start tracking an unmanaged device object."""
    async with open_fleet(args) as fleet:
        device = await fleet.store.get_device(args.device_id)
        descriptor = await fleet.engine.adopt(device, ResourceType(args.resource_type), args.object_id)
    console.print(f"[green]Now tracking {descriptor.resource_type.value}/{descriptor.name} ({descriptor.object_id})[/green]")
    return 0


async def cmd_summary(args) -> int:
    """Show what is tracked for a device and when it was last checked."""
    async with open_fleet(args) as fleet:
        device = await fleet.store.get_device(args.device_id)
        summary = await fleet.engine.deployed_summary(device)

    table = Table(title=f"Deployed configuration: {device.id}")
    table.add_column("Type", style="cyan")
    table.add_column("Count", justify="right")
    for kind, count in sorted(summary.by_type.items()):
        table.add_row(kind, str(count))
    console.print(table)

    statuses = ", ".join(f"{count} {status}" for status, count in sorted(summary.by_status.items()))
    console.print(f"Total: {summary.total}" + (f" ({statuses})" if statuses else ""))
    if summary.oldest_check:
        console.print(f"Checked between {summary.oldest_check:%Y-%m-%d %H:%M:%S} and {summary.newest_check:%Y-%m-%d %H:%M:%S}")
    return 0


async def cmd_history(args) -> int:
    """Show the audit trail of a device."""
    async with open_fleet(args) as fleet:
        entries = await fleet.store.list_audit_entries(args.device_id, limit=args.limit)

    table = Table(title=f"History: {args.device_id}")
    table.add_column("When", style="dim")
    table.add_column("Action", style="cyan")
    table.add_column("Detail")
    for entry in entries:
        table.add_row(entry["created_at"].strftime("%Y-%m-%d %H:%M:%S"), entry["action"], str(entry["detail"]))
    console.print(table)
    return 0


def main(argv: Optional[list] = None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="AP fleet provisioning and reconciliation CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to configuration file")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    add_parser = subparsers.add_parser("add-device", help="Register a device")
    add_parser.add_argument("device_id", help="Platform device identifier")
    add_parser.add_argument("--name", help="Display name")
    add_parser.add_argument("--model", help="Device model")
    add_parser.add_argument("--local-address", help="Address on the local network")
    add_parser.add_argument("--overlay-address", help="Address on the VPN overlay")
    add_parser.add_argument("--overlay-ready", action="store_true", help="Overlay tunnel is up")
    add_parser.add_argument("--prefer-overlay", action="store_true", help="Reach the device over the overlay")
    add_parser.add_argument("--port", type=int, default=80, help="REST API port")
    add_parser.add_argument("--scheme", default="http", choices=["http", "https"], help="REST API scheme")
    add_parser.add_argument("--username", "-u", default="admin", help="Device username")
    add_parser.add_argument("--password", "-p", default="", help="Device password")
    add_parser.add_argument("--wan-interface", default="ether1", help="Upstream interface")
    add_parser.add_argument("--hotspot", action="store_true", help="Enable the hotspot service")
    add_parser.add_argument("--pppoe", action="store_true", help="Enable the PPPoE service")
    add_parser.add_argument("--ssid", help="Wireless network name")
    add_parser.add_argument("--wifi-passphrase", help="WPA2 passphrase (at least 8 characters)")
    add_parser.add_argument("--no-wireless", action="store_true", help="Device has no radio")

    subparsers.add_parser("devices", help="List devices")

    provision_parser = subparsers.add_parser("provision", help="Provision a device")
    provision_parser.add_argument("device_id", help="Platform device identifier")
    provision_parser.add_argument("--plan", help="Plan file (YAML); default is built from the device's services")

    for name, help_text in (
        ("retry", "Retry failed provisioning steps"),
        ("sync", "Sync device health"),
        ("validate", "Validate deployed configuration"),
        ("summary", "Summarize tracked configuration"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("device_id", help="Platform device identifier")

    adopt_parser = subparsers.add_parser("adopt", help="Track an unmanaged device object")
    adopt_parser.add_argument("device_id", help="Platform device identifier")
    adopt_parser.add_argument("resource_type", choices=[t.value for t in ResourceType], help="Resource type")
    adopt_parser.add_argument("object_id", help="Device-assigned identifier, e.g. *3")

    history_parser = subparsers.add_parser("history", help="Show a device's audit trail")
    history_parser.add_argument("device_id", help="Platform device identifier")
    history_parser.add_argument("--limit", "-n", type=int, default=20, help="Number of entries")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    setup_logging(args.verbose)

    commands = {
        "add-device": cmd_add_device,
        "devices": cmd_devices,
        "provision": cmd_provision,
        "retry": cmd_retry,
        "sync": cmd_sync,
        "validate": cmd_validate,
        "adopt": cmd_adopt,
        "summary": cmd_summary,
        "history": cmd_history,
    }

    try:
        exit_code = asyncio.run(commands[args.command](args))
    except KeyboardInterrupt:
        console.print("\n[dim]Interrupted[/dim]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        if args.verbose:
            console.print_exception()
        sys.exit(1)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
