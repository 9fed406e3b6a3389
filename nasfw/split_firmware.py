#!/usr/bin/env python3
"""
NAS Firmware Splitter

Identifies the device a firmware image was built for, checks every part
against its header checksum and writes requested parts to disk.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

import yaml

from .build_firmware import load_registry
from .config import PART_NAMES
from .errors import FirmwareError
from .extractor import extract_parts, parse_image

log = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="NAS Firmware Splitter — identify a firmware image and extract its parts"
    )
    parser.add_argument("image", type=Path, help="Firmware image to split")
    parser.add_argument("--kernel", "-k", type=Path, help="Write the kernel here")
    parser.add_argument("--initrd", "-i", type=Path, help="Write the initrd here")
    parser.add_argument("--squashfs", "-s", type=Path, help="Write the squashfs image here")
    parser.add_argument("--defaults", "-d", type=Path, help="Write the defaults tarball here")
    parser.add_argument(
        "--report",
        type=Path,
        help="Write a JSON report of the decoded header",
    )
    parser.add_argument(
        "--devices",
        type=Path,
        help="YAML file with additional device profiles",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose output",
    )
    return parser


def run(args: argparse.Namespace) -> None:
    registry = load_registry(args.devices)

    if not args.image.is_file():
        raise FirmwareError(f"{args.image}: no such firmware image")
    data = args.image.read_bytes()
    parsed = parse_image(data, registry)

    identity = parsed.identity
    log.info("Image: %s (%d bytes)", args.image, len(data))
    log.info(
        "Device: %s (sig=%s prod=%d custom=%d model=%d hw=%d sub=%d)",
        parsed.device_name,
        identity.signature,
        identity.product_id,
        identity.custom_id,
        identity.model_id,
        identity.hardware_id,
        identity.sub_id,
    )
    if len(parsed.candidates) > 1:
        log.info("Candidates: %s", ", ".join(parsed.candidates))

    for part in parsed.parts:
        log.info(
            "  %-9s offset=0x%08x size=%-9d checksum=%08x %s%s",
            part.name,
            part.offset,
            part.size,
            part.checksum,
            "OK" if part.checksum_ok else "MISMATCH",
            " (truncated)" if part.truncated else "",
        )

    outputs = {
        name: getattr(args, name)
        for name in PART_NAMES
        if getattr(args, name) is not None
    }
    written = extract_parts(parsed, outputs)

    if args.report is not None:
        report = parsed.to_dict()
        report["image"] = str(args.image)
        report["written"] = written
        with open(args.report, "w") as f:
            json.dump(report, f, indent=2)
        log.info("Report: %s", args.report)


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
