"""Firmware image parser: locate the header, identify the device, recover parts."""

import logging
import re
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from .checksum import fold
from .config import DeviceProfile, DeviceRegistry
from .errors import AmbiguousDeviceError, SignatureNotFoundError
from .headers import IDENTITY_FORMAT, IDENTITY_SIZE, MARKER, Identity
from .validation import check_part

log = logging.getLogger(__name__)

# Large enough for both the 64- and 128-byte headers
HEADER_WINDOW = 128
# Lookahead so overlapping candidates are all reported
MARKER_PATTERN = re.compile(
    b"(?=" + re.escape(MARKER) + b".{8}" + re.escape(MARKER) + b")", re.DOTALL
)

UNKNOWN_DEVICE = "unknown NAS"


@dataclass
class ParsedPart:
    """One part recovered from an image."""

    name: str
    offset: int
    size: int
    checksum: int
    data: bytes = b""  # bytes actually present in the image
    computed_checksum: int = 0
    truncated: bool = False

    @property
    def checksum_ok(self) -> bool:
        return self.computed_checksum == self.checksum

    def padded_data(self) -> bytes:
        """Part content zero-padded to the size recorded in the header."""
        return self.data.ljust(self.size, b"\x00")

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "offset": self.offset,
            "size": self.size,
            "checksum": f"{self.checksum:08x}",
            "computed_checksum": f"{self.computed_checksum:08x}",
            "checksum_ok": self.checksum_ok,
            "truncated": self.truncated,
        }


@dataclass
class ParsedHeader:
    """Everything decoded from a firmware image."""

    header_start: int
    identity: Identity
    device: DeviceProfile | None
    parts: list[ParsedPart]
    candidates: list[str] = field(default_factory=list)

    @property
    def device_name(self) -> str:
        return self.device.name if self.device else UNKNOWN_DEVICE

    @property
    def part_count(self) -> int:
        return len(self.parts)

    def part(self, name: str) -> ParsedPart | None:
        for p in self.parts:
            if p.name == name:
                return p
        return None

    @property
    def checksums_ok(self) -> bool:
        return all(p.checksum_ok for p in self.parts)

    def to_dict(self) -> dict[str, Any]:
        """Report for JSON serialization."""
        return {
            "device": self.device_name,
            "identified": self.device is not None,
            "candidates": self.candidates,
            "identity": self.identity.to_dict(),
            "header_start": self.header_start,
            "parts": [p.to_dict() for p in self.parts],
        }


def find_marker(data: bytes) -> int:
    """
    Offset of the identity block marker within the header window.

    A checksum in the part table can itself contain ``55 AA``, so every
    candidate is collected. The first one that ends a whole number of
    12-byte part entries wins; the leftmost is the fallback.
    """
    starts = [m.start() for m in MARKER_PATTERN.finditer(data[:HEADER_WINDOW])]
    if not starts:
        raise SignatureNotFoundError(
            f"No signature marker in the first {HEADER_WINDOW} bytes"
        )
    for start in starts:
        if start > 0 and start % 12 == 0:
            return start
    return starts[0]


def _decode_identity(data: bytes, header_start: int) -> Identity:
    if len(data) < header_start + IDENTITY_SIZE:
        raise SignatureNotFoundError(
            f"Identity block at 0x{header_start:x} is truncated"
        )
    _, sig, _, product, custom, model, hardware, sub = struct.unpack_from(
        IDENTITY_FORMAT, data, header_start
    )
    signature = sig.split(b"\x00", 1)[0].decode("ascii", "replace")
    return Identity(signature, product, custom, model, hardware, sub)


def identify(
    registry: DeviceRegistry, identity: Identity
) -> tuple[DeviceProfile | None, list[str]]:
    """
    Match a decoded identity against the registry.

    Returns the single matching profile (or None) and the names of all
    candidates. Several candidates are reported and treated as unknown.
    """
    matches = registry.match_by_signature(
        identity.signature, identity.product_id, identity.custom_id, identity.model_id
    )
    names = [p.name for p in matches]
    if len(matches) == 1:
        return matches[0], names
    if len(matches) > 1:
        log.warning("%s; treating as unknown", AmbiguousDeviceError(names))
    return None, names


def _read_part(data: bytes, name: str, offset: int, size: int) -> tuple[bytes, bool]:
    chunk = data[offset:offset + size]
    if len(chunk) < size:
        log.warning(
            "%s: image ends %d bytes short of offset+size (0x%x), padding with zeros",
            name, size - len(chunk), offset + size,
        )
        return chunk, True
    return chunk, False


def _padded_fold(chunk: bytes, size: int) -> int:
    """
    Checksum of ``chunk`` zero-padded to ``size``.

    Zero words leave an XOR fold unchanged, so only the partial word at
    the end of the chunk needs padding.
    """
    words = chunk[:size - size % 4]
    return fold(words.ljust(-(-len(words) // 4) * 4, b"\x00"))


def parse_image(data: bytes, registry: DeviceRegistry) -> ParsedHeader:
    """Decode the header of ``data`` and recover every part it describes."""
    header_start = find_marker(data)
    identity = _decode_identity(data, header_start)

    # The part table is offset/size pairs then checksums: 12 bytes per part
    part_count = header_start // 12
    if header_start % 12:
        log.warning(
            "Marker at 0x%x is not a multiple of 12; assuming %d parts",
            header_start, part_count,
        )
    pairs = struct.unpack_from(f"<{2 * part_count}I", data, 0)
    checksums = struct.unpack_from(f"<{part_count}I", data, 8 * part_count)

    device, candidates = identify(registry, identity)
    if device is not None and device.part_count != part_count:
        log.warning(
            "%s declares %d parts but the header holds %d; using generic names",
            device.name, device.part_count, part_count,
        )
        names = [f"unknown{i}" for i in range(part_count)]
    elif device is not None:
        names = list(device.part_names)
    else:
        names = [f"unknown{i}" for i in range(part_count)]

    parts = []
    for i, name in enumerate(names):
        offset, size = pairs[2 * i], pairs[2 * i + 1]
        content, truncated = _read_part(data, name, offset, size)
        part = ParsedPart(
            name=name,
            offset=offset,
            size=size,
            checksum=checksums[i],
            data=content,
            computed_checksum=_padded_fold(content, size),
            truncated=truncated,
        )
        if not part.checksum_ok:
            log.warning(
                "%s: checksum mismatch (header %08x, computed %08x)",
                name, part.checksum, part.computed_checksum,
            )
        parts.append(part)

    return ParsedHeader(
        header_start=header_start,
        identity=identity,
        device=device,
        parts=parts,
        candidates=candidates,
    )


def extract_parts(parsed: ParsedHeader, outputs: Mapping[str, Path]) -> list[str]:
    """
    Write requested parts to their output paths.

    Each written part gets an advisory magic-byte check. Returns the names
    of the parts written.
    """
    written = []
    for name, path in outputs.items():
        part = parsed.part(name)
        if part is None:
            log.warning(
                "Cannot extract %s: no such part in %s image", name, parsed.device_name
            )
            continue

        content = part.padded_data()
        Path(path).write_bytes(content)
        written.append(name)
        log.info("Wrote %s (%d bytes) to %s", name, part.size, path)

        if not content:
            log.info("%s is empty, skipping magic check", name)
            continue
        problem = check_part(name, content)
        if problem:
            log.warning("Validation: %s", problem)

    return written
