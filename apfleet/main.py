#!/usr/bin/env python3
"""
AP Fleet Monitor

Long-running entry point: periodically syncs health and validates deployed
configuration for every device in the store.
"""

import argparse
import asyncio
import logging
import logging.handlers
import signal
import sys
from pathlib import Path
from typing import Dict, Optional

from rich.console import Console
from rich.logging import RichHandler

from .client import DeviceClient
from .config import Config, load_config
from .connection import ConnectionResolver
from .errors import DeviceConnectionError, FleetError
from .locks import DeviceLockRegistry
from .models import Device
from .orchestrator import Provisioner
from .reconcile import ReconciliationEngine
from .secrets import SecretCodec
from .store import DeviceStore, SqliteDeviceStore

logger = logging.getLogger(__name__)
console = Console()


class FleetComponents:
    """Wires the provisioner and reconciliation engine from configuration.

    Both share one client and one lock registry, so a provisioning run and a
    reconciliation pass never interleave on the same device.
    """

    def __init__(self, config: Config, store: DeviceStore, client: Optional[DeviceClient] = None):
        self.config = config
        self.store = store
        self.client = client or DeviceClient(
            timeout=config.client.timeout,
            verify_ssl=config.client.verify_ssl,
        )
        self.codec = SecretCodec(config.secrets.master_key)
        self.resolver = ConnectionResolver(self.codec)
        self.locks = DeviceLockRegistry(reject_when_busy=config.locks.reject_when_busy)
        self.provisioner = Provisioner(
            client=self.client,
            resolver=self.resolver,
            store=store,
            locks=self.locks,
            connection_mode=config.connection.default_mode,
            max_plan_steps=config.provisioning.max_plan_steps,
        )
        self.engine = ReconciliationEngine(
            client=self.client,
            resolver=self.resolver,
            store=store,
            locks=self.locks,
            connection_mode=config.connection.default_mode,
            max_objects_per_type=config.reconciliation.max_objects_per_type,
        )

    async def close(self) -> None:
        await self.client.close()


class FleetMonitor:
    """Periodic health sync and drift validation over the whole fleet."""

    def __init__(self, store: DeviceStore, engine: ReconciliationEngine, interval: int = 300, max_concurrency: int = 8):
        self.store = store
        self.engine = engine
        self.interval = interval
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._running = False
        self._stop_event = asyncio.Event()

    async def check_device(self, device: Device) -> str:
        """Sync and validate one device; returns a one-word outcome."""
        async with self._semaphore:
            try:
                await self.engine.sync_health(device)
                report = await self.engine.validate_configuration(device)
            except DeviceConnectionError as exc:
                logger.warning(f"[{device.id}] Offline: {exc}")
                return "offline"
            except FleetError as exc:
                logger.error(f"[{device.id}] Check failed: {exc}")
                return "error"
            except Exception:
                logger.exception(f"[{device.id}] Unexpected error during fleet check")
                return "error"
        if report.has_drift:
            return "drift"
        return "ok"

    async def run_once(self) -> Dict[str, str]:
        """One pass over every stored device."""
        devices = await self.store.list_devices()
        outcomes = await asyncio.gather(*(self.check_device(device) for device in devices))
        results = {device.id: outcome for device, outcome in zip(devices, outcomes)}
        summary = {outcome: list(results.values()).count(outcome) for outcome in set(results.values())}
        logger.info(f"Fleet pass complete: {len(devices)} devices {summary}")
        return results

    async def run(self) -> None:
        """Run passes until stop() is called."""
        self._running = True
        logger.info(f"Fleet monitor started (interval {self.interval}s)")
        while not self._stop_event.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        self._running = False

    async def stop(self) -> None:
        if self._running:
            logger.info("Stopping fleet monitor...")
        self._stop_event.set()


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure logging."""
    handlers = [
        RichHandler(
            console=console,
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
        )
    ]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=50 * 1024 * 1024,  # 50 MB per file
            backupCount=3,
        ))

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(message)s",
        handlers=handlers,
    )


async def async_main(config_path: str, once: bool = False) -> None:
    """Async main entry point."""
    try:
        config = load_config(config_path)
    except Exception as e:
        console.print(f"[red]Failed to load configuration: {e}[/red]")
        sys.exit(1)

    setup_logging(config.logging.level, config.logging.file)

    store = SqliteDeviceStore(config.store.path)
    await store.connect()
    components = FleetComponents(config, store)
    monitor = FleetMonitor(
        store,
        components.engine,
        interval=config.reconciliation.interval,
        max_concurrency=config.reconciliation.max_concurrency,
    )

    loop = asyncio.get_running_loop()

    def shutdown_handler():
        logger.info("Shutdown signal received")
        asyncio.create_task(monitor.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_handler)

    try:
        if once:
            await monitor.run_once()
        else:
            await monitor.run()
    finally:
        await monitor.stop()
        await components.close()
        await store.close()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="AP Fleet Monitor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single pass over the fleet and exit",
    )
    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 0.1.0",
    )

    args = parser.parse_args()

    console.print("[bold blue]AP Fleet Monitor[/bold blue]")
    console.print()

    asyncio.run(async_main(args.config, once=args.once))


if __name__ == "__main__":
    main()
