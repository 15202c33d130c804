import os
import struct

import pytest

import upk_package
from upk_package import (
    ArchiveIOError,
    ByteArchive,
    FGenerationInfo,
    FGuid,
    InvalidFormatError,
    UnsupportedFeatureError,
    read_array,
    read_serializable,
    read_serializable_array,
    read_sized_serializable_array,
)


def test_typed_reads_are_little_endian() -> None:
    data = struct.pack("<BHhIiq", 0xAB, 0x1234, -2, 0x9E2A83C1, -5, -(2**40))
    archive = ByteArchive(data)

    assert archive.read_u8() == 0xAB
    assert archive.read_u16() == 0x1234
    assert archive.read_i16() == -2
    assert archive.read_u32() == 0x9E2A83C1
    assert archive.read_i32() == -5
    assert archive.read_i64() == -(2**40)
    assert archive.tell() == len(data)


def test_typed_read_rejects_inconsistent_width(monkeypatch) -> None:
    monkeypatch.setitem(upk_package.INT_FORMATS, "u32", ("<H", 4))
    archive = ByteArchive(bytes(8))
    with pytest.raises(ValueError, match="u32"):
        archive.read_u32()
    assert archive.tell() == 0


def test_short_read_fails_without_moving_cursor() -> None:
    archive = ByteArchive(b"\x01\x02\x03")
    with pytest.raises(ArchiveIOError):
        archive.read_u32()
    assert archive.tell() == 0
    assert archive.read_bytes(3) == b"\x01\x02\x03"
    with pytest.raises(ArchiveIOError):
        archive.read_u8()


def test_read_bytes_into_fills_buffer() -> None:
    archive = ByteArchive(b"abcdef")
    buffer = bytearray(4)
    archive.read_bytes_into(buffer)
    assert buffer == b"abcd"

    with pytest.raises(ArchiveIOError):
        archive.read_bytes_into(bytearray(3))


def test_seek_modes_return_absolute_position() -> None:
    archive = ByteArchive(bytes(10))
    assert archive.seek(4) == 4
    assert archive.seek(3, os.SEEK_CUR) == 7
    assert archive.seek(-2, os.SEEK_END) == 8
    assert archive.skip(-8) == 0


def test_negative_seek_fails() -> None:
    archive = ByteArchive(bytes(4))
    with pytest.raises(ArchiveIOError):
        archive.seek(-1)
    with pytest.raises(ArchiveIOError):
        archive.seek(-5, os.SEEK_END)


def test_len_reports_total_size() -> None:
    archive = ByteArchive(bytes(12))
    archive.seek(8)
    assert len(archive) == 12
    assert archive.size == 12


def test_write_all_overwrites_and_extends() -> None:
    archive = ByteArchive(b"abcdef")
    archive.seek(4)
    archive.write_all(b"XYZ")
    assert archive.getvalue() == b"abcdXYZ"
    assert archive.tell() == 7

    archive.seek(10)
    archive.write_all(b"!")
    assert archive.getvalue() == b"abcdXYZ\x00\x00\x00!"


def test_get_mut_patches_in_place() -> None:
    archive = ByteArchive(b"\x00" * 8)
    archive.get_mut()[2:4] = b"\xff\xff"
    assert archive.read_u32() == 0xFFFF0000


def test_fstring_empty_and_utf8() -> None:
    archive = ByteArchive()
    archive.write_fstring("")
    archive.write_fstring("TAGame")
    archive.write_fstring("Café\x00")
    archive.seek(0)

    assert archive.read_fstring() == ""
    assert archive.read_fstring() == "TAGame"
    assert archive.read_fstring() == "Café\x00"


def test_fstring_minimum_length_is_corruption() -> None:
    archive = ByteArchive(struct.pack("<i", -(2**31)))
    with pytest.raises(InvalidFormatError) as excinfo:
        archive.read_fstring()
    assert not isinstance(excinfo.value, UnsupportedFeatureError)


def test_fstring_utf16_is_unsupported() -> None:
    archive = ByteArchive(struct.pack("<i", -3) + "ab\x00".encode("utf-16-le"))
    with pytest.raises(UnsupportedFeatureError):
        archive.read_fstring()


def test_fstring_invalid_utf8() -> None:
    archive = ByteArchive(struct.pack("<i", 2) + b"\xc3\x28")
    with pytest.raises(InvalidFormatError):
        archive.read_fstring()


def test_fstring_truncated() -> None:
    archive = ByteArchive(struct.pack("<i", 10) + b"short")
    with pytest.raises(ArchiveIOError):
        archive.read_fstring()


def test_guid_reads_four_fields_in_order() -> None:
    archive = ByteArchive(struct.pack("<4I", 1, 2, 3, 0xFFFFFFFF))
    assert archive.read_guid() == FGuid(1, 2, 3, 0xFFFFFFFF)

    guid = FGuid()
    archive.seek(0)
    archive.read_guid_into(guid)
    assert (guid.a, guid.b, guid.c, guid.d) == (1, 2, 3, 0xFFFFFFFF)


def test_read_array_of_primitives() -> None:
    archive = ByteArchive(struct.pack("<i3i", 3, 7, -8, 9))
    assert read_array(archive, ByteArchive.read_i32) == [7, -8, 9]


def test_read_serializable_array_in_file_order() -> None:
    archive = ByteArchive(struct.pack("<i6i", 2, 1, 2, 3, 4, 5, 6))
    generations = read_serializable_array(archive, FGenerationInfo)
    assert generations == [FGenerationInfo(1, 2, 3), FGenerationInfo(4, 5, 6)]


def test_read_serializable_array_negative_size() -> None:
    archive = ByteArchive(struct.pack("<i", -1))
    with pytest.raises(InvalidFormatError, match="Invalid array size"):
        read_serializable_array(archive, FGenerationInfo)


def test_read_sized_serializable_array_uses_given_count() -> None:
    archive = ByteArchive(struct.pack("<3i", 10, 20, 30))
    assert read_sized_serializable_array(archive, FGenerationInfo, 1) == [FGenerationInfo(10, 20, 30)]
    assert read_sized_serializable_array(archive, FGenerationInfo, 0) == []
    with pytest.raises(InvalidFormatError):
        read_sized_serializable_array(archive, FGenerationInfo, -4)


def test_read_serializable_single_item() -> None:
    archive = ByteArchive(struct.pack("<3i", 4, 5, 6))
    assert read_serializable(archive, FGenerationInfo) == FGenerationInfo(4, 5, 6)
