"""Device registry: known NAS models and their firmware header layouts."""

import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Iterator, Mapping

import yaml

from .errors import ConfigError

log = logging.getLogger(__name__)

# Canonical part identifiers
KERNEL = "kernel"
INITRD = "initrd"
SQUASHFS = "squashfs"
DEFAULTS = "defaults"

PART_NAMES: tuple[str, ...] = (KERNEL, INITRD, SQUASHFS, DEFAULTS)
MANDATORY_PARTS: tuple[str, ...] = (KERNEL, INITRD)

# The two documented framings
THREE_PART_LAYOUT: tuple[str, ...] = (KERNEL, INITRD, DEFAULTS)
FOUR_PART_LAYOUT: tuple[str, ...] = (KERNEL, INITRD, SQUASHFS, DEFAULTS)
HEADER_SIZES: dict[int, int] = {
    len(THREE_PART_LAYOUT): 64,
    len(FOUR_PART_LAYOUT): 128,
}

SIGNATURE_WIDTH = 8


@dataclass(frozen=True)
class DeviceProfile:
    """One supported hardware model."""

    name: str
    signature: str
    product_id: int
    custom_id: int
    model_id: int
    hardware_id: int | None  # None in decode-only entries
    sub_id: int | None
    part_names: tuple[str, ...] = THREE_PART_LAYOUT
    header_size: int = 64

    @property
    def identity(self) -> tuple[str, int, int, int]:
        """The (signature, product, custom, model) tuple used for matching."""
        return (self.signature, self.product_id, self.custom_id, self.model_id)

    @property
    def part_count(self) -> int:
        return len(self.part_names)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "signature": self.signature,
            "product_id": self.product_id,
            "custom_id": self.custom_id,
            "model_id": self.model_id,
            "hardware_id": self.hardware_id,
            "sub_id": self.sub_id,
            "parts": list(self.part_names),
            "header_size": self.header_size,
        }


# Built-in device table
KNOWN_DEVICES: dict[str, DeviceProfile] = {
    "DNS-323": DeviceProfile(
        name="DNS-323",
        signature="FrodoII",
        product_id=7,
        custom_id=1,
        model_id=1,
        hardware_id=1,
        sub_id=2,
    ),
    "CH3SNAS": DeviceProfile(
        name="CH3SNAS",
        signature="FrodoII",
        product_id=7,
        custom_id=2,
        model_id=1,
        hardware_id=1,
        sub_id=2,
    ),
    "DNS-323-C1": DeviceProfile(
        name="DNS-323-C1",
        signature="FrodoIII",
        product_id=7,
        custom_id=1,
        model_id=1,
        hardware_id=None,
        sub_id=None,
    ),
    "DNS-321": DeviceProfile(
        name="DNS-321",
        signature="Chopper",
        product_id=10,
        custom_id=1,
        model_id=1,
        hardware_id=1,
        sub_id=3,
    ),
    "DNS-343": DeviceProfile(
        name="DNS-343",
        signature="Gandolf",
        product_id=9,
        custom_id=1,
        model_id=1,
        hardware_id=1,
        sub_id=3,
    ),
    "DNS-320": DeviceProfile(
        name="DNS-320",
        signature="DNS320",
        product_id=0,
        custom_id=8,
        model_id=7,
        hardware_id=1,
        sub_id=0,
        part_names=FOUR_PART_LAYOUT,
        header_size=128,
    ),
    "DNS-325": DeviceProfile(
        name="DNS-325",
        signature="DNS325",
        product_id=0,
        custom_id=8,
        model_id=5,
        hardware_id=1,
        sub_id=0,
        part_names=FOUR_PART_LAYOUT,
        header_size=128,
    ),
}


def min_header_size(part_count: int) -> int:
    """Bytes needed for the part table plus the identity block."""
    return 12 * part_count + 2 + SIGNATURE_WIDTH + 2 + 5


def default_layout(with_squashfs: bool) -> tuple[tuple[str, ...], int]:
    """Part names and header size used when no device profile applies."""
    names = FOUR_PART_LAYOUT if with_squashfs else THREE_PART_LAYOUT
    return names, HEADER_SIZES[len(names)]


def _check_u8(name: str, field_name: str, value: Any, optional: bool = False) -> None:
    if value is None and optional:
        return
    if not isinstance(value, int) or isinstance(value, bool) or not 0 <= value <= 0xFF:
        raise ConfigError(f"{name}: {field_name} must be an integer 0-255, got {value!r}")


def check_profile(profile: DeviceProfile) -> DeviceProfile:
    """Raise ConfigError if a profile cannot describe a valid header."""
    name = profile.name
    if not name:
        raise ConfigError("device entry without a name")
    if not profile.signature or len(profile.signature.encode("ascii", "replace")) > SIGNATURE_WIDTH:
        raise ConfigError(
            f"{name}: signature must be 1-{SIGNATURE_WIDTH} ASCII characters"
        )
    for field_name in ("product_id", "custom_id", "model_id"):
        _check_u8(name, field_name, getattr(profile, field_name))
    for field_name in ("hardware_id", "sub_id"):
        _check_u8(name, field_name, getattr(profile, field_name), optional=True)
    if not profile.part_names:
        raise ConfigError(f"{name}: no parts declared")
    unknown = [p for p in profile.part_names if p not in PART_NAMES]
    if unknown:
        raise ConfigError(f"{name}: unknown part names {unknown}")
    if len(set(profile.part_names)) != len(profile.part_names):
        raise ConfigError(f"{name}: duplicate part names")
    if profile.header_size < min_header_size(profile.part_count):
        raise ConfigError(
            f"{name}: header_size {profile.header_size} too small for "
            f"{profile.part_count} parts (need {min_header_size(profile.part_count)})"
        )
    return profile


def profile_from_dict(entry: dict[str, Any]) -> DeviceProfile:
    """Build a DeviceProfile from a YAML mapping."""
    if not isinstance(entry, dict):
        raise ConfigError(f"device entry must be a mapping, got {entry!r}")
    name = entry.get("name")
    try:
        part_names = tuple(entry.get("parts", THREE_PART_LAYOUT))
        profile = DeviceProfile(
            name=str(name),
            signature=str(entry["signature"]),
            product_id=entry["product_id"],
            custom_id=entry["custom_id"],
            model_id=entry["model_id"],
            hardware_id=entry.get("hardware_id"),
            sub_id=entry.get("sub_id"),
            part_names=part_names,
            header_size=entry.get("header_size", HEADER_SIZES.get(len(part_names), 64)),
        )
    except KeyError as e:
        raise ConfigError(f"device {name!r}: missing field {e.args[0]}") from e
    except TypeError as e:
        raise ConfigError(f"device {name!r}: {e}") from e
    return check_profile(profile)


def load_device_file(path: Path) -> list[DeviceProfile]:
    """Load device profiles from a YAML file with a top-level ``devices`` list."""
    with open(path) as f:
        raw = yaml.safe_load(f)
    if raw is None:
        return []
    if not isinstance(raw, dict) or not isinstance(raw.get("devices", []), list):
        raise ConfigError(f"{path}: expected a mapping with a 'devices' list")
    profiles = [profile_from_dict(entry) for entry in raw.get("devices", [])]
    log.debug("Loaded %d device profiles from %s", len(profiles), path)
    return profiles


class DeviceRegistry:
    """Immutable name -> DeviceProfile table with identity matching."""

    def __init__(self, profiles: Iterable[DeviceProfile]):
        table: dict[str, DeviceProfile] = {}
        for profile in profiles:
            if profile.name in table:
                raise ConfigError(f"duplicate device name: {profile.name}")
            table[profile.name] = check_profile(profile)
        self._profiles: Mapping[str, DeviceProfile] = MappingProxyType(table)

    @classmethod
    def builtin(cls) -> "DeviceRegistry":
        return cls(KNOWN_DEVICES.values())

    @classmethod
    def from_yaml(cls, path: Path, include_builtin: bool = True) -> "DeviceRegistry":
        """Registry from a YAML device file, optionally on top of the built-ins."""
        profiles = list(KNOWN_DEVICES.values()) if include_builtin else []
        profiles.extend(load_device_file(path))
        return cls(profiles)

    def with_profiles(self, profiles: Iterable[DeviceProfile]) -> "DeviceRegistry":
        """New registry holding these profiles plus the given ones."""
        return DeviceRegistry([*self._profiles.values(), *profiles])

    def __iter__(self) -> Iterator[DeviceProfile]:
        return iter(self._profiles.values())

    def __len__(self) -> int:
        return len(self._profiles)

    def __contains__(self, name: object) -> bool:
        return name in self._profiles

    def names(self) -> list[str]:
        return sorted(self._profiles)

    def lookup(self, name: str) -> DeviceProfile:
        """Get a device profile by name."""
        if name not in self._profiles:
            raise ConfigError(
                f"Unknown device: {name} (known: {', '.join(self.names())})"
            )
        return self._profiles[name]

    def match_by_signature(
        self, signature: str, product_id: int, custom_id: int, model_id: int
    ) -> list[DeviceProfile]:
        """All profiles whose identity tuple equals the given one."""
        wanted = (signature, product_id, custom_id, model_id)
        return [p for p in self._profiles.values() if p.identity == wanted]


DEFAULT_REGISTRY = DeviceRegistry.builtin()
