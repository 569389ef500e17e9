"""Flash a firmware image or resource archive onto an InfiniTime watch.

Usage:
    uv run python examples/flash_firmware.py AA:BB:CC:DD:EE:FF firmware.bin --version 1.14.0
    uv run python examples/flash_firmware.py AA:BB:CC:DD:EE:FF resources.zip --resources --version 1.14.0
    uv run python examples/flash_firmware.py AA:BB:CC:DD:EE:FF --releases ./releases
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from contextlib import suppress

from watchlink import (
    DeviceSession,
    LocalFileSource,
    NotificationStream,
    Service,
    SessionConfig,
    UpdateImage,
    UpdateKind,
    UpdateProgress,
    WatchLinkError,
    fetch_image,
    latest_release,
    load_config,
)


async def _print_progress(stream: NotificationStream[UpdateProgress]) -> None:
    last = None
    async for progress in stream:
        line = f"{progress.state.value:<13} {progress.percent:5.1f}%  {progress.bytes_acked}/{progress.total_bytes} bytes"
        if line != last:
            print(line)
            last = line


async def flash(
        address: str,
        image: UpdateImage | None,
        releases: str | None,
        channel: str,
        force: bool,
        config: SessionConfig,
) -> None:
    """Connect, resolve an image if needed, and run the transfer."""
    async with DeviceSession(address, config) as session:
        installed = await session.read(Service.FIRMWARE_VERSION)
        print(f"Installed firmware: {installed}")

        if image is None:
            source = LocalFileSource(releases)
            candidate = latest_release(source, channel, installed)
            if candidate is None:
                print("Already up to date")
                return
            print(f"Selected {candidate.name}")
            image = await fetch_image(source, candidate)

        progress = session.update_progress()
        printer = asyncio.create_task(_print_progress(progress))
        try:
            transfer = await session.run_update(image, force=force)
            print(f"Update to {transfer.image.version} complete ({transfer.retries} retries)")
        finally:
            await progress.close()
            printer.cancel()
            with suppress(asyncio.CancelledError):
                await printer


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Flash an InfiniTime watch over BLE.")
    parser.add_argument("address", help="Watch Bluetooth address")
    parser.add_argument("image", nargs="?", help="Image file (.bin firmware or .zip resources)")
    parser.add_argument("--version", help="Version carried by the image file")
    parser.add_argument("--resources", action="store_true", help="Image is a resource archive.")
    parser.add_argument("--releases", help="Directory of <kind>-<version>.{bin,zip} files.")
    parser.add_argument("--channel", default="stable", choices=("stable", "prerelease"))
    parser.add_argument("--force", action="store_true", help="Allow firmware downgrades.")
    parser.add_argument("--config", help="JSON session config file.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    args = parser.parse_args()
    if args.image is None and args.releases is None:
        parser.error("either an image file or --releases is required")
    if args.image is not None and args.version is None:
        parser.error("--version is required with an image file")
    return args


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = load_config(args.config) if args.config else SessionConfig()

    image = None
    if args.image is not None:
        kind = UpdateKind.RESOURCES if args.resources else UpdateKind.FIRMWARE
        image = UpdateImage.from_file(args.image, kind, args.version)

    try:
        asyncio.run(flash(args.address, image, args.releases, args.channel, args.force, config))
    except WatchLinkError as err:
        raise SystemExit(f"Error: {err}") from err
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
