"""Stream telemetry from an InfiniTime watch.

Usage:
    uv run python examples/watch_telemetry.py --scan
    uv run python examples/watch_telemetry.py AA:BB:CC:DD:EE:FF --duration 60
    uv run python examples/watch_telemetry.py AA:BB:CC:DD:EE:FF --service heart_rate
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from contextlib import suppress
from datetime import datetime

from watchlink import (
    DesktopBridge,
    DeviceSession,
    NotificationStream,
    Service,
    SessionConfig,
    WatchLinkError,
    discover_devices,
    load_config,
)

_TELEMETRY_CHOICES = {
    "battery": Service.BATTERY_LEVEL,
    "heart_rate": Service.HEART_RATE,
    "steps": Service.STEP_COUNT,
}


def _timestamp() -> str:
    return datetime.now().strftime("%H:%M:%S")


async def _print_stream(label: str, stream: NotificationStream) -> None:
    async for item in stream:
        print(f"[{_timestamp()}] {label}: {item}")


async def scan(duration: float) -> None:
    """List watches in range."""
    print(f"Scanning for watches ({duration:.1f}s)...")
    devices = await discover_devices(timeout=duration)
    if not devices:
        print("No watches found")
    for address, handle in sorted(devices.items()):
        print(f"  {address}  {handle.name}")


async def watch(address: str, services: list[Service], duration: float, config: SessionConfig) -> None:
    """Connect and print telemetry samples and session status changes."""
    async with DeviceSession(address, config) as session:
        bridge = DesktopBridge(session)
        firmware = await session.read(Service.FIRMWARE_VERSION)
        battery = await session.read(Service.BATTERY_LEVEL)
        print(f"Connected to {address}: firmware {firmware}, battery {battery}%")

        tasks = [asyncio.create_task(_print_stream("status", bridge.session_status()))]
        for service in services:
            if not session.client.supports(service):
                print(f"  {service.value} not available, skipping")
                continue
            stream = await bridge.telemetry(service)
            tasks.append(asyncio.create_task(_print_stream(service.value, stream)))

        try:
            if duration > 0:
                await asyncio.sleep(duration)
            else:
                while True:
                    await asyncio.sleep(1)
        finally:
            for task in tasks:
                task.cancel()
            for task in tasks:
                with suppress(asyncio.CancelledError):
                    await task


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Stream telemetry from an InfiniTime watch.")
    parser.add_argument("address", nargs="?", help="Watch Bluetooth address")
    parser.add_argument("--scan", action="store_true", help="List watches in range and exit.")
    parser.add_argument(
        "--service",
        action="append",
        choices=sorted(_TELEMETRY_CHOICES),
        help="Telemetry to stream (repeatable). Default: all",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=30.0,
        help="Stream duration in seconds (0 = run until Ctrl+C). Default: 30",
    )
    parser.add_argument("--config", help="JSON session config file.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = load_config(args.config) if args.config else SessionConfig()
    services = [_TELEMETRY_CHOICES[name] for name in args.service or sorted(_TELEMETRY_CHOICES)]

    try:
        if args.scan or not args.address:
            asyncio.run(scan(config.scan_timeout))
        else:
            asyncio.run(watch(args.address, services, args.duration, config))
    except WatchLinkError as err:
        raise SystemExit(f"Error: {err}") from err
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
