import logging
import struct

import pytest

from conftest import gzip_blob, uimage
from nasfw.checksum import fold
from nasfw.config import DeviceProfile, DeviceRegistry
from nasfw.errors import SignatureNotFoundError
from nasfw.extractor import (
    UNKNOWN_DEVICE,
    extract_parts,
    find_marker,
    identify,
    parse_image,
)
from nasfw.headers import Identity, build_image, resolve_identity
from nasfw.validation import UIMAGE_MAGIC


def _build(registry, device, parts, **overrides):
    identity, profile = resolve_identity(registry, device=device, **overrides)
    return build_image(parts, identity, profile.part_names, profile.header_size)


def test_round_trip(registry, valid_parts):
    header, image = _build(registry, "DNS-320", valid_parts)
    parsed = parse_image(image, registry)

    assert parsed.device_name == "DNS-320"
    assert parsed.header_start == 48
    assert parsed.identity == header.identity
    assert parsed.checksums_ok
    for spec, part in zip(header.parts, parsed.parts):
        assert (part.name, part.offset, part.size, part.checksum) == (
            spec.name, spec.offset, spec.size, spec.checksum,
        )
        assert part.data == valid_parts[spec.name]
        assert not part.truncated


def test_round_trip_three_part_device(registry):
    parts = {"kernel": uimage(97), "initrd": uimage(33), "defaults": gzip_blob(21)}
    header, image = _build(registry, "CH3SNAS", parts)
    parsed = parse_image(image, registry)

    assert parsed.device_name == "CH3SNAS"
    assert parsed.header_start == 36
    assert [p.name for p in parsed.parts] == ["kernel", "initrd", "defaults"]
    assert [p.checksum for p in parsed.parts] == [p.checksum for p in header.parts]
    assert parsed.checksums_ok


def test_dns320_scenario(registry):
    _, image = _build(registry, "DNS-320", {"kernel": b"\xaa" * 100, "initrd": b"\x01" * 50})
    parsed = parse_image(image, registry)

    assert parsed.device_name == "DNS-320"
    kernel = parsed.part("kernel")
    assert kernel.checksum_ok and kernel.checksum == 0xAAAAAAAA
    for name in ("squashfs", "defaults"):
        part = parsed.part(name)
        assert (part.offset, part.size, part.checksum) == (0, 0, 0)
        assert part.data == b""
        assert part.checksum_ok


def test_unknown_signature(registry):
    identity = Identity("Mystery", 1, 2, 3, 4, 5)
    parts = {"kernel": b"k" * 40, "initrd": b"i" * 20, "defaults": b"d" * 12}
    header, image = build_image(parts, identity, ("kernel", "initrd", "defaults"), 64)

    parsed = parse_image(image, registry)
    assert parsed.device is None
    assert parsed.device_name == UNKNOWN_DEVICE
    assert parsed.identity == identity
    assert [p.name for p in parsed.parts] == ["unknown0", "unknown1", "unknown2"]
    assert [(p.offset, p.size, p.checksum) for p in parsed.parts] == [
        (s.offset, s.size, s.checksum) for s in header.parts
    ]


def test_ambiguous_match_is_unknown(caplog):
    twins = [
        DeviceProfile("Twin-A", "Twin", 1, 1, 1, 0, 0),
        DeviceProfile("Twin-B", "Twin", 1, 1, 1, 0, 0),
    ]
    registry = DeviceRegistry(twins)
    parts = {"kernel": b"k" * 8, "initrd": b"i" * 8}
    _, image = build_image(parts, Identity("Twin", 1, 1, 1, 0, 0), twins[0].part_names, 64)

    with caplog.at_level(logging.WARNING):
        parsed = parse_image(image, registry)

    assert parsed.device is None
    assert parsed.candidates == ["Twin-A", "Twin-B"]
    assert parsed.parts[0].name == "unknown0"
    assert "Twin-A, Twin-B" in caplog.text


def test_identify(registry):
    profile = registry.lookup("DNS-321")
    device, names = identify(registry, Identity("Chopper", 10, 1, 1, 77, 77))
    assert device == profile and names == ["DNS-321"]
    assert identify(registry, Identity("Chopper", 10, 1, 2, 0, 0)) == (None, [])


def test_part_count_mismatch_uses_generic_names(registry):
    # DNS-320 identity, but framed with three parts
    identity, _ = resolve_identity(registry, device="DNS-320")
    _, image = build_image({"kernel": b"k" * 4, "initrd": b"i" * 4}, identity, ("kernel", "initrd", "defaults"), 64)
    parsed = parse_image(image, registry)
    assert parsed.device_name == "DNS-320"
    assert [p.name for p in parsed.parts] == ["unknown0", "unknown1", "unknown2"]


def test_truncated_image_is_padded(registry, caplog):
    parts = {"kernel": uimage(64), "initrd": uimage(32), "defaults": gzip_blob(64)}
    header, image = _build(registry, "DNS-323", parts)

    with caplog.at_level(logging.WARNING):
        parsed = parse_image(image[:-4], registry)

    defaults = parsed.part("defaults")
    assert defaults.truncated
    assert defaults.data == parts["defaults"][:60]
    assert defaults.padded_data() == parts["defaults"][:60] + b"\x00" * 4
    assert defaults.computed_checksum == fold(defaults.padded_data())
    assert not defaults.checksum_ok
    assert defaults.checksum == header.parts[2].checksum
    assert parsed.part("kernel").checksum_ok
    assert "padding with zeros" in caplog.text
    assert "checksum mismatch" in caplog.text


@pytest.mark.parametrize("cut", [1, 2, 3, 5, 7])
def test_truncated_checksum_matches_zero_padding(registry, cut):
    parts = {"kernel": uimage(64), "initrd": uimage(30), "defaults": gzip_blob(23)}
    _, image = _build(registry, "DNS-323", parts)

    defaults = parse_image(image[:-cut], registry).part("defaults")
    assert defaults.truncated
    assert len(defaults.data) == 23 - cut
    assert defaults.computed_checksum == fold(defaults.padded_data())


def test_garbage_size_is_not_materialized(registry):
    parts = {"kernel": uimage(64), "initrd": uimage(32), "defaults": gzip_blob(64)}
    _, image = _build(registry, "DNS-323", parts)
    corrupted = bytearray(image)
    # defaults size field
    struct.pack_into("<I", corrupted, 20, 0xFFFFFFF0)

    defaults = parse_image(bytes(corrupted), registry).part("defaults")
    assert defaults.size == 0xFFFFFFF0
    assert defaults.truncated
    assert defaults.data == parts["defaults"]
    assert defaults.computed_checksum == fold(parts["defaults"])


def test_kernel_checksum_containing_marker_bytes(registry):
    # 0x56190527 ^ 0xFC4C0527 == 0xAA550000: the stored checksum holds 55 AA
    # exactly ten bytes before the real identity block
    kernel = UIMAGE_MAGIC + b"\x27\x05\x4c\xfc"
    assert fold(kernel) == 0xAA550000
    parts = {"kernel": kernel, "initrd": uimage(32), "defaults": gzip_blob(16)}
    header, image = _build(registry, "DNS-323", parts)
    assert image[26:28] == b"\x55\xaa"

    parsed = parse_image(image, registry)
    assert parsed.header_start == 36
    assert parsed.device_name == "DNS-323"
    assert [p.name for p in parsed.parts] == ["kernel", "initrd", "defaults"]
    assert parsed.checksums_ok
    assert parsed.part("kernel").checksum == 0xAA550000


def test_find_marker_prefers_part_table_boundary():
    block = b"\x55\xaaFrodoII\x00\x55\xaa"
    data = b"\x00" * 26 + b"\x55\xaa" + b"\x00" * 8 + block + b"\x07\x01\x01\x01\x02"
    assert find_marker(data) == 36


def test_find_marker_falls_back_to_leftmost():
    block = b"\x55\xaaFrodoII\x00\x55\xaa"
    data = b"\x00" * 5 + block + b"\x00" * 3 + block
    assert find_marker(data) == 5


def test_checksum_mismatch_is_not_fatal(registry, valid_parts):
    _, image = _build(registry, "DNS-320", valid_parts)
    corrupted = bytearray(image)
    corrupted[128 + 10] ^= 0xFF
    parsed = parse_image(bytes(corrupted), registry)

    assert not parsed.part("kernel").checksum_ok
    assert parsed.part("initrd").checksum_ok
    assert not parsed.checksums_ok


def test_no_marker():
    with pytest.raises(SignatureNotFoundError):
        parse_image(b"\x00" * 512, DeviceRegistry.builtin())


def test_marker_outside_window():
    data = b"\x00" * 200 + b"\x55\xaa" + b"x" * 8 + b"\x55\xaa" + b"\x00" * 5
    with pytest.raises(SignatureNotFoundError):
        find_marker(data)


def test_find_marker():
    data = b"\x00" * 36 + b"\x55\xaaFrodoII\x00\x55\xaa" + b"\x07\x01\x01\x01\x02"
    assert find_marker(data) == 36


def test_truncated_identity_block():
    data = b"\x00" * 36 + b"\x55\xaaFrodoII\x00\x55\xaa\x07"
    with pytest.raises(SignatureNotFoundError, match="truncated"):
        parse_image(data, DeviceRegistry.builtin())


def test_to_dict(registry, valid_parts):
    _, image = _build(registry, "DNS-320", valid_parts)
    report = parse_image(image, registry).to_dict()
    assert report["device"] == "DNS-320"
    assert report["identified"] is True
    assert report["identity"]["signature"] == "DNS320"
    assert [p["name"] for p in report["parts"]] == ["kernel", "initrd", "squashfs", "defaults"]
    assert all(p["checksum_ok"] for p in report["parts"])


def test_extract_parts(registry, valid_parts, tmp_path):
    _, image = _build(registry, "DNS-320", valid_parts)
    parsed = parse_image(image, registry)

    outputs = {"kernel": tmp_path / "kernel", "squashfs": tmp_path / "squashfs"}
    written = extract_parts(parsed, outputs)

    assert written == ["kernel", "squashfs"]
    assert (tmp_path / "kernel").read_bytes() == valid_parts["kernel"]
    assert (tmp_path / "squashfs").read_bytes() == valid_parts["squashfs"]


def test_extract_bad_magic_is_advisory(registry, tmp_path, caplog):
    _, image = _build(registry, "DNS-320", {"kernel": b"\xaa" * 100, "initrd": b"\x01" * 50})
    parsed = parse_image(image, registry)

    with caplog.at_level(logging.WARNING):
        written = extract_parts(parsed, {"kernel": tmp_path / "k", "defaults": tmp_path / "d"})

    assert written == ["kernel", "defaults"]
    assert (tmp_path / "k").read_bytes() == b"\xaa" * 100
    assert (tmp_path / "d").read_bytes() == b""
    assert "u-boot image magic" in caplog.text


def test_extract_unattributable_part(registry, tmp_path, caplog):
    identity = Identity("Mystery", 1, 2, 3, 4, 5)
    _, image = build_image({"kernel": b"k" * 4, "initrd": b"i" * 4}, identity, ("kernel", "initrd", "defaults"), 64)
    parsed = parse_image(image, registry)

    with caplog.at_level(logging.WARNING):
        written = extract_parts(parsed, {"kernel": tmp_path / "k"})

    assert written == []
    assert not (tmp_path / "k").exists()
    assert "Cannot extract kernel" in caplog.text


def test_extract_truncated_part_is_zero_padded(registry, tmp_path):
    parts = {"kernel": uimage(64), "initrd": uimage(32), "defaults": gzip_blob(64)}
    _, image = _build(registry, "DNS-323", parts)
    parsed = parse_image(image[:-10], registry)

    assert extract_parts(parsed, {"defaults": tmp_path / "d"}) == ["defaults"]
    assert (tmp_path / "d").read_bytes() == parts["defaults"][:54] + b"\x00" * 10
