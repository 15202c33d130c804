import struct

import pytest

from package_builder import make_summary
from upk_package import (
    PACKAGE_MAGIC,
    ByteArchive,
    ECompressionFlags,
    FCompressedChunk,
    FCompressedChunkBlock,
    FCompressedChunkHeader,
    FPackageFileSummary,
    InvalidFormatError,
)


def _serialize(summary: FPackageFileSummary) -> bytes:
    archive = ByteArchive()
    summary.serialize(archive)
    return archive.getvalue()


def test_summary_round_trip() -> None:
    summary = make_summary(
        header_size=4096,
        name_offset=300,
        export_offset=500,
        import_offset=700,
        depends_offset=900,
        compressed_chunks=[FCompressedChunk(1024, 2048, 400, 99)],
        garbage_size=12,
        compression_chunkinfo_offset=64,
        last_block_size=1234,
    )
    raw = _serialize(summary)

    archive = ByteArchive(raw)
    parsed = FPackageFileSummary.deserialize(archive)

    assert parsed == summary
    assert archive.tell() == len(raw)
    assert _serialize(parsed) == raw


def test_summary_rejects_bad_magic() -> None:
    raw = bytearray(_serialize(make_summary()))
    raw[0:4] = struct.pack("<I", 0xDEADBEEF)
    with pytest.raises(InvalidFormatError, match="magic"):
        FPackageFileSummary.deserialize(ByteArchive(bytes(raw)))


def test_summary_skips_unknown_structs() -> None:
    raw = _serialize(make_summary(garbage_size=5, compression_chunkinfo_offset=6, last_block_size=7))
    # Replace the trailing (unknown count, garbage, chunk info offset, last block size).
    prefix = raw[:-16]
    unknown = struct.pack("<i", 2)
    unknown += bytes(20) + struct.pack("<i3i", 3, 1, 2, 3)
    unknown += b"\xee" * 20 + struct.pack("<i", 0)
    raw = prefix + unknown + struct.pack("<3i", 5, 6, 7)

    archive = ByteArchive(raw)
    parsed = FPackageFileSummary.deserialize(archive)

    assert parsed.unknown_structs == 2
    assert (parsed.garbage_size, parsed.compression_chunkinfo_offset, parsed.last_block_size) == (5, 6, 7)
    assert archive.tell() == len(raw)


def test_summary_truncated_input() -> None:
    raw = _serialize(make_summary())
    with pytest.raises(IOError):
        FPackageFileSummary.deserialize(ByteArchive(raw[:-1]))


@pytest.mark.parametrize(
    "value, expected",
    [
        (0, ECompressionFlags.NONE),
        (1, ECompressionFlags.ZLIB),
        (2, ECompressionFlags.GZIP),
        (4, ECompressionFlags.NONE),
        (0xFFFFFFFF, ECompressionFlags.NONE),
    ],
)
def test_compression_flags_unknown_values_default_to_none(value: int, expected: ECompressionFlags) -> None:
    assert ECompressionFlags.from_value(value) is expected


def test_package_flags() -> None:
    summary = make_summary(package_flags=0x00000008)
    assert summary.is_cooked
    assert not summary.is_store_compressed
    assert make_summary(package_flags=0x02000000).is_store_compressed


@pytest.mark.parametrize(
    "header_size, garbage_size, name_offset, expected",
    [
        (80, 0, 64, 16),
        (96, 0, 64, 32),
        (81, 0, 64, 32),
        (200, 8, 100, 96),
        (64, 0, 64, 0),
    ],
)
def test_encrypted_size_rounds_up_to_block(header_size: int, garbage_size: int, name_offset: int, expected: int) -> None:
    summary = make_summary(header_size=header_size, garbage_size=garbage_size, name_offset=name_offset)
    assert summary.encrypted_size == expected


def test_compressed_chunk_offsets_are_range_checked() -> None:
    archive = ByteArchive(struct.pack("<qiqi", 2**31, 10, 0, 10))
    with pytest.raises(InvalidFormatError):
        FCompressedChunk.deserialize(archive)

    archive = ByteArchive(struct.pack("<qiqi", 4096, 10, 128, 20))
    assert FCompressedChunk.deserialize(archive) == FCompressedChunk(4096, 10, 128, 20)


def test_compressed_chunk_header_layout() -> None:
    archive = ByteArchive(struct.pack("<Ii2i", PACKAGE_MAGIC, 0x20000, 300, 1000))
    header = FCompressedChunkHeader.deserialize(archive)
    assert header.tag == PACKAGE_MAGIC
    assert header.block_size == 0x20000
    assert header.summary == FCompressedChunkBlock(300, 1000)
