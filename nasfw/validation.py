"""Magic-byte checks for firmware part payloads."""

import logging
from typing import Mapping

from .config import DEFAULTS, INITRD, KERNEL, SQUASHFS
from .errors import ValidationError

log = logging.getLogger(__name__)

UIMAGE_MAGIC = b"\x27\x05\x19\x56"
GZIP_MAGIC = b"\x1f\x8b"
SQUASHFS_MAGICS = (b"hsqs", b"shsq")  # little-endian, big-endian
SQUASHFS_MAGIC_OFFSET = 0x800


def check_part(name: str, data: bytes) -> str | None:
    """Return a description of what is wrong with ``data``, or None if it looks right."""
    if name in (KERNEL, INITRD):
        if data[:4] != UIMAGE_MAGIC:
            return f"{name}: missing u-boot image magic {UIMAGE_MAGIC.hex()}"
    elif name == DEFAULTS:
        if data[:2] != GZIP_MAGIC:
            return f"{name}: missing gzip magic {GZIP_MAGIC.hex()}"
    elif name == SQUASHFS:
        found = data[SQUASHFS_MAGIC_OFFSET:SQUASHFS_MAGIC_OFFSET + 4]
        if found not in SQUASHFS_MAGICS:
            return f"{name}: no squashfs magic at offset 0x{SQUASHFS_MAGIC_OFFSET:x}"
    return None


def validate_parts(parts: Mapping[str, bytes | None], strict: bool) -> list[str]:
    """
    Check every present part.

    With ``strict`` any problem raises ValidationError; otherwise problems
    are logged as warnings and returned.
    """
    problems = []
    for name, data in parts.items():
        if data is None:
            continue
        problem = check_part(name, data)
        if problem:
            problems.append(problem)

    if problems and strict:
        raise ValidationError(problems)
    for problem in problems:
        log.warning("Validation: %s", problem)
    return problems
