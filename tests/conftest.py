import pytest

from nasfw.config import DeviceRegistry
from nasfw.validation import GZIP_MAGIC, SQUASHFS_MAGIC_OFFSET, UIMAGE_MAGIC


def uimage(size: int, fill: int = 0x11) -> bytes:
    return UIMAGE_MAGIC + bytes([fill]) * (size - len(UIMAGE_MAGIC))


def gzip_blob(size: int, fill: int = 0x5A) -> bytes:
    return GZIP_MAGIC + bytes([fill]) * (size - len(GZIP_MAGIC))


def squashfs_blob(size: int = 0x900, magic: bytes = b"hsqs") -> bytes:
    data = bytearray(b"\x33" * size)
    data[SQUASHFS_MAGIC_OFFSET:SQUASHFS_MAGIC_OFFSET + 4] = magic
    return bytes(data)


@pytest.fixture
def registry() -> DeviceRegistry:
    return DeviceRegistry.builtin()


@pytest.fixture
def valid_parts() -> dict[str, bytes]:
    return {
        "kernel": uimage(200, 0x11),
        "initrd": uimage(120, 0x22),
        "squashfs": squashfs_blob(),
        "defaults": gzip_blob(64),
    }
