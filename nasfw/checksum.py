"""XOR-fold checksum shared by the header builder and parser."""

import struct


def fold(data: bytes) -> int:
    """
    XOR together the little-endian 32-bit words of ``data``, seed 0.

    Trailing bytes beyond the last whole word are ignored, so a 6-byte
    input folds only its first 4 bytes.
    """
    count = len(data) // 4
    result = 0
    for word in struct.unpack_from(f"<{count}I", data):
        result ^= word
    return result
