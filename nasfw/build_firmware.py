#!/usr/bin/env python3
"""
NAS Firmware Builder

Packs a kernel, initrd and optional squashfs/defaults images into a
firmware container with the device header the NAS bootloader expects.
"""

import argparse
import logging
import sys
from pathlib import Path

import yaml

from .config import DEFAULT_REGISTRY, PART_NAMES, DeviceRegistry
from .errors import FirmwareError
from .headers import build_image, resolve_identity, resolve_layout
from .validation import validate_parts

log = logging.getLogger(__name__)


def _u8(value: str) -> int:
    """argparse type for single-byte IDs; accepts 0x prefixes."""
    try:
        number = int(value, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}")
    if not 0 <= number <= 0xFF:
        raise argparse.ArgumentTypeError(f"must be 0-255: {value!r}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="NAS Firmware Builder — pack kernel, initrd, squashfs and defaults into a firmware image"
    )
    parser.add_argument("--kernel", "-k", type=Path, help="Kernel uImage")
    parser.add_argument("--initrd", "-i", type=Path, help="Initrd uImage")
    parser.add_argument("--squashfs", "-s", type=Path, help="SquashFS image (4-part devices)")
    parser.add_argument("--defaults", "-d", type=Path, help="Defaults tarball (gzip)")
    parser.add_argument("--output", "-o", type=Path, help="Output firmware image")
    parser.add_argument(
        "--device", "-t",
        help="Known device name supplying identity defaults (see --list-devices)",
    )
    parser.add_argument("--signature", "-S", help="Override the signature string")
    parser.add_argument("--product-id", "-p", type=_u8, help="Override the product ID")
    parser.add_argument("--custom-id", "-c", type=_u8, help="Override the custom ID")
    parser.add_argument("--model-id", "-m", type=_u8, help="Override the model ID")
    parser.add_argument("--hardware-id", "-H", type=_u8, help="Override the hardware ID")
    parser.add_argument("--sub-id", "-u", type=_u8, help="Override the sub ID")
    parser.add_argument(
        "--devices",
        type=Path,
        help="YAML file with additional device profiles",
    )
    parser.add_argument(
        "--list-devices",
        action="store_true",
        help="List known devices and exit",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose output",
    )
    return parser


def load_registry(devices_file: Path | None) -> DeviceRegistry:
    """Built-in registry, extended with a YAML device file if given."""
    if devices_file is None:
        return DEFAULT_REGISTRY
    return DeviceRegistry.from_yaml(devices_file)


def list_devices(registry: DeviceRegistry) -> None:
    for profile in sorted(registry, key=lambda p: p.name):
        log.info(
            "  %-12s sig=%-8s prod=%-3d custom=%-3d model=%-3d header=%d parts=%s",
            profile.name,
            profile.signature,
            profile.product_id,
            profile.custom_id,
            profile.model_id,
            profile.header_size,
            ",".join(profile.part_names),
        )


def read_parts(args: argparse.Namespace) -> dict[str, bytes | None]:
    """Read each given part file; parts not given map to None."""
    parts: dict[str, bytes | None] = {}
    for name in PART_NAMES:
        path = getattr(args, name)
        if path is None:
            parts[name] = None
            continue
        parts[name] = path.read_bytes()
        log.debug("Read %s: %s (%d bytes)", name, path, len(parts[name]))
    return parts


def write_image(path: Path, image: bytes) -> None:
    """Write via a sibling temp file so a failed write leaves no partial image."""
    tmp = path.with_name(f".{path.name}.tmp")
    try:
        tmp.write_bytes(image)
        tmp.replace(path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


def run(args: argparse.Namespace) -> None:
    """Resolve, validate, build and write. Raises on any failure."""
    registry = load_registry(args.devices)

    if args.list_devices:
        log.info("Known devices (%d):", len(registry))
        list_devices(registry)
        return

    if args.output is None:
        raise FirmwareError("No output file given (--output)")

    identity, profile = resolve_identity(
        registry,
        device=args.device,
        signature=args.signature,
        product_id=args.product_id,
        custom_id=args.custom_id,
        model_id=args.model_id,
        hardware_id=args.hardware_id,
        sub_id=args.sub_id,
    )

    parts = read_parts(args)
    part_names, header_size = resolve_layout(profile, parts)

    # Validate before building so nothing is written on failure
    validate_parts(parts, strict=True)
    header, image = build_image(parts, identity, part_names, header_size)

    write_image(args.output, image)

    log.info(
        "Wrote %s: %d bytes for %s (sig=%s prod=%d custom=%d model=%d hw=%d sub=%d)",
        args.output,
        len(image),
        profile.name if profile else "custom device",
        identity.signature,
        identity.product_id,
        identity.custom_id,
        identity.model_id,
        identity.hardware_id,
        identity.sub_id,
    )
    for spec in header.parts:
        log.info(
            "  %-9s offset=0x%08x size=%-9d checksum=%08x",
            spec.name, spec.offset, spec.size, spec.checksum,
        )


def main() -> None:
    args = build_parser().parse_args()

    # Setup logging
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-5s %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        run(args)
    except FirmwareError as e:
        log.error("%s", e)
        sys.exit(1)
    except yaml.YAMLError as e:
        log.error("%s: %s", args.devices, e)
        sys.exit(1)
    except OSError as e:
        log.error("%s: %s", e.filename or "I/O error", e.strerror or e)
        sys.exit(1)


if __name__ == "__main__":
    main()
