"""Firmware header layout and the image builder."""

import logging
import struct
from dataclasses import dataclass, field
from typing import Any, Mapping

from .checksum import fold
from .config import (
    MANDATORY_PARTS,
    SIGNATURE_WIDTH,
    SQUASHFS,
    DeviceProfile,
    DeviceRegistry,
    default_layout,
    min_header_size,
)
from .errors import ConfigError, MissingInputError

log = logging.getLogger(__name__)

MARKER = b"\x55\xaa"
IDENTITY_FORMAT = f"<2s{SIGNATURE_WIDTH}s2s5B"
IDENTITY_SIZE = struct.calcsize(IDENTITY_FORMAT)  # 17
U32_MAX = 0xFFFFFFFF


@dataclass(frozen=True)
class Identity:
    """Device identity fields written after the part table."""

    signature: str
    product_id: int
    custom_id: int
    model_id: int
    hardware_id: int
    sub_id: int

    @property
    def signature_bytes(self) -> bytes:
        """Signature null-padded or truncated to the fixed width."""
        raw = self.signature.encode("ascii", "replace")
        return raw[:SIGNATURE_WIDTH].ljust(SIGNATURE_WIDTH, b"\x00")

    def pack(self) -> bytes:
        return struct.pack(
            IDENTITY_FORMAT,
            MARKER,
            self.signature_bytes,
            MARKER,
            self.product_id,
            self.custom_id,
            self.model_id,
            self.hardware_id,
            self.sub_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "product_id": self.product_id,
            "custom_id": self.custom_id,
            "model_id": self.model_id,
            "hardware_id": self.hardware_id,
            "sub_id": self.sub_id,
        }


@dataclass
class PartSpec:
    """One header slot. Absent parts keep offset, size and checksum at 0."""

    name: str
    offset: int = 0
    size: int = 0
    checksum: int = 0

    @property
    def present(self) -> bool:
        return self.size > 0


@dataclass
class FirmwareHeader:
    """Part table plus identity block, padded to ``header_size``."""

    identity: Identity
    header_size: int
    parts: list[PartSpec] = field(default_factory=list)

    @property
    def part_names(self) -> list[str]:
        return [p.name for p in self.parts]

    @property
    def identity_offset(self) -> int:
        """Where the identity block starts: after the offset/size and checksum tables."""
        return 12 * len(self.parts)

    def pack(self) -> bytes:
        """Serialize to exactly ``header_size`` bytes."""
        needed = min_header_size(len(self.parts))
        if self.header_size < needed:
            raise ConfigError(
                f"header size {self.header_size} too small for "
                f"{len(self.parts)} parts (need {needed})"
            )

        header = bytearray()
        for part in self.parts:
            header.extend(struct.pack("<II", part.offset, part.size))
        for part in self.parts:
            header.extend(struct.pack("<I", part.checksum))
        header.extend(self.identity.pack())

        # Zero-pad the tail
        header.extend(b"\x00" * (self.header_size - len(header)))
        return bytes(header)


def _check_id(field_name: str, value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 0xFF:
        raise ConfigError(f"{field_name} must be an integer 0-255, got {value!r}")
    return value


def resolve_identity(
    registry: DeviceRegistry,
    device: str | None = None,
    signature: str | None = None,
    product_id: int | None = None,
    custom_id: int | None = None,
    model_id: int | None = None,
    hardware_id: int | None = None,
    sub_id: int | None = None,
) -> tuple[Identity, DeviceProfile | None]:
    """
    Merge explicit identity overrides with a named device profile.

    Explicit values win. Without a device every field must be given
    explicitly; a missing one raises ConfigError, as does an unknown
    device name.
    """
    profile = registry.lookup(device) if device is not None else None

    explicit = {
        "signature": signature,
        "product_id": product_id,
        "custom_id": custom_id,
        "model_id": model_id,
        "hardware_id": hardware_id,
        "sub_id": sub_id,
    }
    resolved: dict[str, Any] = {}
    missing = []
    for key, value in explicit.items():
        if value is None and profile is not None:
            value = getattr(profile, key)
        if value is None:
            missing.append(key)
        resolved[key] = value

    if missing:
        where = f"device {profile.name}" if profile else "no device given"
        raise ConfigError(
            f"Cannot resolve device identity ({where}): missing {', '.join(missing)}"
        )

    if not resolved["signature"]:
        raise ConfigError("signature must not be empty")
    if len(resolved["signature"].encode("ascii", "replace")) > SIGNATURE_WIDTH:
        log.warning(
            "Signature %r longer than %d bytes, truncating",
            resolved["signature"], SIGNATURE_WIDTH,
        )
    for key in explicit:
        if key != "signature":
            _check_id(key, resolved[key])

    return Identity(**resolved), profile


def resolve_layout(
    profile: DeviceProfile | None, parts: Mapping[str, bytes | None]
) -> tuple[tuple[str, ...], int]:
    """Part order and header size: the profile's, or the default framing."""
    if profile is not None:
        return profile.part_names, profile.header_size
    return default_layout(with_squashfs=parts.get(SQUASHFS) is not None)


def build_header(
    parts: Mapping[str, bytes | None],
    identity: Identity,
    part_names: tuple[str, ...] | list[str],
    header_size: int,
) -> FirmwareHeader:
    """Compute offsets, sizes and checksums for the declared parts."""
    for name in MANDATORY_PARTS:
        if parts.get(name) is None:
            raise MissingInputError(f"No {name} given; {name} is mandatory")

    extra = [n for n, d in parts.items() if d is not None and n not in part_names]
    if extra:
        raise ConfigError(
            f"Parts {extra} not used by this layout ({', '.join(part_names)})"
        )

    header = FirmwareHeader(identity=identity, header_size=header_size)
    offset = header_size
    for name in part_names:
        data = parts.get(name)
        if not data:
            # Absent: slot stays zeroed, running offset does not move
            header.parts.append(PartSpec(name=name))
            continue
        if offset + len(data) > U32_MAX:
            raise ConfigError(f"{name}: image would exceed 4 GiB")
        header.parts.append(PartSpec(
            name=name,
            offset=offset,
            size=len(data),
            checksum=fold(data),
        ))
        offset += len(data)

    return header


def build_image(
    parts: Mapping[str, bytes | None],
    identity: Identity,
    part_names: tuple[str, ...] | list[str],
    header_size: int,
) -> tuple[FirmwareHeader, bytes]:
    """Build the header and concatenate it with the present parts in order."""
    header = build_header(parts, identity, part_names, header_size)

    image = bytearray(header.pack())
    for spec in header.parts:
        if spec.present:
            image.extend(parts[spec.name])

    log.debug(
        "Built %d-byte image: %s",
        len(image),
        ", ".join(f"{p.name}@{p.offset}+{p.size}" for p in header.parts),
    )
    return header, bytes(image)
