"""Firmware container builder and splitter for D-Link style NAS images."""

from .checksum import fold
from .config import (
    DEFAULT_REGISTRY,
    KNOWN_DEVICES,
    PART_NAMES,
    DeviceProfile,
    DeviceRegistry,
    load_device_file,
)
from .errors import (
    AmbiguousDeviceError,
    ConfigError,
    FirmwareError,
    MissingInputError,
    SignatureNotFoundError,
    ValidationError,
)
from .extractor import ParsedHeader, ParsedPart, extract_parts, find_marker, parse_image
from .headers import (
    FirmwareHeader,
    Identity,
    PartSpec,
    build_header,
    build_image,
    resolve_identity,
    resolve_layout,
)
from .validation import check_part, validate_parts

__all__ = [
    # Checksum
    "fold",
    # Registry
    "DEFAULT_REGISTRY",
    "KNOWN_DEVICES",
    "PART_NAMES",
    "DeviceProfile",
    "DeviceRegistry",
    "load_device_file",
    # Errors
    "AmbiguousDeviceError",
    "ConfigError",
    "FirmwareError",
    "MissingInputError",
    "SignatureNotFoundError",
    "ValidationError",
    # Parser
    "ParsedHeader",
    "ParsedPart",
    "extract_parts",
    "find_marker",
    "parse_image",
    # Builder
    "FirmwareHeader",
    "Identity",
    "PartSpec",
    "build_header",
    "build_image",
    "resolve_identity",
    "resolve_layout",
    # Validation
    "check_part",
    "validate_parts",
]
