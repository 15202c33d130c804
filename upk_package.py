# -*- coding: utf-8 -*-
"""
upk_package.py

This module defines the UnPackage class, which recovers the plaintext, decompressed
image of a cooked Unreal package (.upk) whose header region is AES encrypted and
whose body is zlib compressed in discrete chunks.

The cooked package format is structured as follows (all integers little-endian):
1.  Package File Summary (cleartext):
    - Magic (4 bytes, uint32): 0x9E2A83C1
    - File Version / Licensee Version (2 + 2 bytes, uint16)
    - Header Size (4 bytes, int32)
    - Package Group (FString: int32 length + UTF-8 bytes)
    - Package Flags (4 bytes, uint32)
    - Name/Export/Import Count and Offset pairs, Depends Offset (7 x int32)
    - Reserved (16 bytes)
    - GUID (4 x uint32)
    - Generations (int32 count + count x 3 x int32)
    - Engine Version / Cooker Version (2 x int32)
    - Compression Flags (uint32): 0 = none, 1 = zlib, 2 = gzip
    - Compressed Chunks (int32 count + count x FCompressedChunk)
    - Reserved (4 bytes)
    - Additional Packages To Cook (int32 count + count x FString)
    - Unknown Structs (int32 count + count x (20 bytes + int32 array))
    - Garbage Size, Compression Chunk Info Offset, Last Block Size (3 x int32)
2.  Encrypted Region: starts at Name Offset and spans
    (Header Size - Garbage Size - Name Offset) bytes rounded up to the AES block size.
    AES-256 in ECB mode, zero padded. Once decrypted, the real compressed chunk table
    lives at Name Offset + Compression Chunk Info Offset.
3.  Compressed Chunks: each chunk starts with an FCompressedChunkHeader, followed by
    the block descriptors and then the zlib streams of every block, back to back.

Requires:
    - Python 3.8+
    - cryptography library (`pip install cryptography`)
"""

import base64
import binascii
import enum
import logging
import os
import struct
import zlib
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Type, TypeVar

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

logger = logging.getLogger(__name__)

# --- Constants ---
PACKAGE_MAGIC = 0x9E2A83C1

AES_KEY_SIZE = 32  # bytes (for AES-256)
AES_BLOCK_SIZE = 16  # bytes

MAX_COMPRESSED_CHUNKS = 100

# Fixed-width little-endian layouts: name -> (struct format, byte width)
INT_FORMATS = {
    "u8": ("<B", 1),
    "u16": ("<H", 2),
    "i16": ("<h", 2),
    "u32": ("<I", 4),
    "i32": ("<i", 4),
    "i64": ("<q", 8),
}

INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1

SUMMARY_RESERVED_SIZE = 4 * 4
SUMMARY_CHUNKS_TRAILER_SIZE = 4
UNKNOWN_STRUCT_SKIP_SIZE = 4 * 5


class EPackageFlags(enum.IntFlag):
    """Package flag bits. Informational only; the loader does not enforce them."""

    COOKED = 0x00000008
    STORE_COMPRESSED = 0x02000000


class ECompressionFlags(enum.IntEnum):
    NONE = 0x00
    ZLIB = 0x01
    GZIP = 0x02

    @classmethod
    def from_value(cls, value: int) -> "ECompressionFlags":
        """Maps an on-disk value to a flag; unknown values decode as NONE."""
        try:
            return cls(value)
        except ValueError:
            return cls.NONE


# --- Custom Exceptions ---
class UnPackageError(Exception):
    """Base class for exceptions in this module."""

    pass


class InvalidFormatError(UnPackageError):
    """Raised when the package is corrupted or does not follow the expected layout."""

    pass


class UnsupportedFeatureError(InvalidFormatError):
    """Raised when the package uses an encoding or compression this module cannot read."""

    pass


class DecryptionError(UnPackageError):
    """Raised for AES decryption specific errors."""

    pass


class NoValidKeyError(DecryptionError):
    """Raised when none of the registered keys decrypts the header region."""

    pass


class InvalidKeyError(DecryptionError, ValueError):
    """Raised when an AES key cannot be constructed (bad base64, wrong length)."""

    pass


class ArchiveIOError(UnPackageError, IOError):
    """Raised on short reads, invalid seeks and failed file reads/writes."""

    pass


class ConfigurationError(UnPackageError):
    """Raised for batch-level setup problems (key file, directories, install lookup)."""

    pass


class PackageNotFoundError(UnPackageError, KeyError):
    """Raised when a requested package is not known to the file provider."""

    pass


# --- Byte Archive ---
class ByteArchive:
    """
    Growable in-memory byte buffer with a cursor.

    Reads never go past the end of the buffer; writes overwrite at the cursor and
    extend the buffer when needed.
    """

    def __init__(self, data: bytes = b""):
        self._buffer: bytearray = bytearray(data)
        self._pos: int = 0

    def __len__(self) -> int:
        return len(self._buffer)

    def __repr__(self) -> str:
        return f"<ByteArchive size={len(self._buffer)} pos={self._pos}>"

    @property
    def size(self) -> int:
        return len(self._buffer)

    def tell(self) -> int:
        return self._pos

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        """Moves the cursor and returns the new absolute position."""
        if whence == os.SEEK_SET:
            target = offset
        elif whence == os.SEEK_CUR:
            target = self._pos + offset
        elif whence == os.SEEK_END:
            target = len(self._buffer) + offset
        else:
            raise ValueError(f"Invalid whence: {whence}")

        if target < 0:
            raise ArchiveIOError(f"Invalid seek to a negative position ({target}).")
        self._pos = target
        return target

    def skip(self, count: int) -> int:
        return self.seek(count, os.SEEK_CUR)

    def read_bytes(self, count: int) -> bytes:
        """Reads exactly `count` bytes from the cursor."""
        if count < 0:
            raise ArchiveIOError(f"Invalid read size: {count}")
        end = self._pos + count
        if end > len(self._buffer):
            available = max(0, len(self._buffer) - self._pos)
            raise ArchiveIOError(f"Unexpected end of archive at offset {self._pos} (wanted {count} bytes, {available} available).")
        data = bytes(self._buffer[self._pos : end])
        self._pos = end
        return data

    def read_bytes_into(self, buffer: bytearray) -> None:
        buffer[:] = self.read_bytes(len(buffer))

    def write_all(self, data: bytes) -> None:
        if self._pos > len(self._buffer):
            self._buffer.extend(b"\x00" * (self._pos - len(self._buffer)))
        end = self._pos + len(data)
        self._buffer[self._pos : end] = data
        self._pos = end

    def get_mut(self) -> bytearray:
        """Returns the backing buffer for in-place patching."""
        return self._buffer

    def getvalue(self) -> bytes:
        return bytes(self._buffer)

    # --- Typed reads/writes ---
    def _read_int(self, kind: str) -> int:
        fmt, width = INT_FORMATS[kind]
        if struct.calcsize(fmt) != width:
            raise ValueError(f"Invalid size for {kind}: format {fmt!r} is {struct.calcsize(fmt)} bytes, expected {width}")
        data = self.read_bytes(width)
        return struct.unpack(fmt, data)[0]

    def _write_int(self, kind: str, value: int) -> None:
        fmt, _ = INT_FORMATS[kind]
        try:
            self.write_all(struct.pack(fmt, value))
        except struct.error as e:
            raise ValueError(f"Value {value} does not fit {kind}: {e}") from e

    def read_u8(self) -> int:
        return self._read_int("u8")

    def read_u16(self) -> int:
        return self._read_int("u16")

    def read_i16(self) -> int:
        return self._read_int("i16")

    def read_u32(self) -> int:
        return self._read_int("u32")

    def read_i32(self) -> int:
        return self._read_int("i32")

    def read_i64(self) -> int:
        return self._read_int("i64")

    def write_u8(self, value: int) -> None:
        self._write_int("u8", value)

    def write_u16(self, value: int) -> None:
        self._write_int("u16", value)

    def write_u32(self, value: int) -> None:
        self._write_int("u32", value)

    def write_i32(self, value: int) -> None:
        self._write_int("i32", value)

    def write_i64(self, value: int) -> None:
        self._write_int("i64", value)

    # --- Strings and GUIDs ---
    def read_fstring(self) -> str:
        """
        Reads a length-prefixed string.

        A zero length is the empty string. A negative length marks a UTF-16 string,
        which is not supported; the minimum int32 value only shows up in corrupted data.
        """
        length = self.read_i32()
        if length == 0:
            return ""

        if length < 0:
            if length == INT32_MIN:
                raise InvalidFormatError(f"Archive is corrupted (string length {length} at offset {self._pos - 4}).")
            raise UnsupportedFeatureError(f"UTF-16 strings are not supported (length {length} at offset {self._pos - 4}).")

        data = self.read_bytes(length)
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidFormatError(f"Invalid UTF-8 string at offset {self._pos - length}: {e}") from e

    def write_fstring(self, value: str) -> None:
        data = value.encode("utf-8")
        self.write_i32(len(data))
        self.write_all(data)

    def read_guid(self) -> "FGuid":
        guid = FGuid()
        self.read_guid_into(guid)
        return guid

    def read_guid_into(self, guid: "FGuid") -> None:
        guid.a = self.read_u32()
        guid.b = self.read_u32()
        guid.c = self.read_u32()
        guid.d = self.read_u32()


# --- Binary Protocol Helpers ---
T = TypeVar("T")


def read_array(archive: ByteArchive, item_reader: Callable[[ByteArchive], T]) -> List[T]:
    """Reads an int32 count followed by that many items. The count is not validated."""
    length = archive.read_i32()
    return [item_reader(archive) for _ in range(length)]


def read_serializable_array(archive: ByteArchive, cls: Type[T]) -> List[T]:
    length = archive.read_i32()
    return read_sized_serializable_array(archive, cls, length)


def read_sized_serializable_array(archive: ByteArchive, cls: Type[T], length: int) -> List[T]:
    if length < 0:
        raise InvalidFormatError(f"Invalid array size: {length}")
    return [cls.deserialize(archive) for _ in range(length)]


def read_serializable(archive: ByteArchive, cls: Type[T]) -> T:
    return cls.deserialize(archive)


def write_serializable_array(archive: ByteArchive, items: Sequence) -> None:
    archive.write_i32(len(items))
    for item in items:
        item.serialize(archive)


def _check_offset(value: int, name: str) -> int:
    if not INT32_MIN <= value <= INT32_MAX:
        raise InvalidFormatError(f"{name} out of 32-bit range: {value}")
    return value


# --- Format Model ---
@dataclass
class FGuid:
    a: int = 0
    b: int = 0
    c: int = 0
    d: int = 0

    @classmethod
    def deserialize(cls, archive: ByteArchive) -> "FGuid":
        return archive.read_guid()

    def serialize(self, archive: ByteArchive) -> None:
        for part in (self.a, self.b, self.c, self.d):
            archive.write_u32(part)


@dataclass
class FGenerationInfo:
    export_count: int = 0
    name_count: int = 0
    net_object_count: int = 0

    @classmethod
    def deserialize(cls, archive: ByteArchive) -> "FGenerationInfo":
        return cls(archive.read_i32(), archive.read_i32(), archive.read_i32())

    def serialize(self, archive: ByteArchive) -> None:
        archive.write_i32(self.export_count)
        archive.write_i32(self.name_count)
        archive.write_i32(self.net_object_count)


@dataclass
class FCompressedChunk:
    """Location of one compressed chunk in both the packed and the unpacked file."""

    uncompressed_offset: int = 0
    uncompressed_size: int = 0
    compressed_offset: int = 0
    compressed_size: int = 0

    @classmethod
    def deserialize(cls, archive: ByteArchive) -> "FCompressedChunk":
        # Offsets are stored as int64 but packages never exceed 32-bit sizes.
        uncompressed_offset = _check_offset(archive.read_i64(), "uncompressed_offset")
        uncompressed_size = archive.read_i32()
        compressed_offset = _check_offset(archive.read_i64(), "compressed_offset")
        compressed_size = archive.read_i32()
        return cls(uncompressed_offset, uncompressed_size, compressed_offset, compressed_size)

    def serialize(self, archive: ByteArchive) -> None:
        archive.write_i64(self.uncompressed_offset)
        archive.write_i32(self.uncompressed_size)
        archive.write_i64(self.compressed_offset)
        archive.write_i32(self.compressed_size)


@dataclass
class FCompressedChunkBlock:
    compressed_size: int = 0
    uncompressed_size: int = 0

    @classmethod
    def deserialize(cls, archive: ByteArchive) -> "FCompressedChunkBlock":
        return cls(archive.read_i32(), archive.read_i32())

    def serialize(self, archive: ByteArchive) -> None:
        archive.write_i32(self.compressed_size)
        archive.write_i32(self.uncompressed_size)


@dataclass
class FCompressedChunkHeader:
    tag: int = 0
    block_size: int = 0
    summary: FCompressedChunkBlock = field(default_factory=FCompressedChunkBlock)

    @classmethod
    def deserialize(cls, archive: ByteArchive) -> "FCompressedChunkHeader":
        tag = archive.read_u32()
        block_size = archive.read_i32()
        summary = FCompressedChunkBlock.deserialize(archive)
        return cls(tag, block_size, summary)

    def serialize(self, archive: ByteArchive) -> None:
        archive.write_u32(self.tag)
        archive.write_i32(self.block_size)
        self.summary.serialize(archive)


@dataclass
class FPackageFileSummary:
    magic: int = 0
    file_version: int = 0
    licensee_version: int = 0
    header_size: int = 0
    package_group: str = ""
    package_flags: int = 0
    name_count: int = 0
    name_offset: int = 0
    export_count: int = 0
    export_offset: int = 0
    import_count: int = 0
    import_offset: int = 0
    depends_offset: int = 0
    guid: FGuid = field(default_factory=FGuid)
    generations: List[FGenerationInfo] = field(default_factory=list)
    engine_version: int = 0
    cooker_version: int = 0
    compression_flags: ECompressionFlags = ECompressionFlags.NONE
    compressed_chunks: List[FCompressedChunk] = field(default_factory=list)
    additional_packages_to_cook: List[str] = field(default_factory=list)
    unknown_structs: int = 0
    garbage_size: int = 0
    compression_chunkinfo_offset: int = 0
    last_block_size: int = 0

    @classmethod
    def deserialize(cls, archive: ByteArchive) -> "FPackageFileSummary":
        """
        Reads the summary from the start of a raw (still encrypted) package.

        The compressed chunk table read here is the cleartext placeholder; the real
        one is re-read from the decrypted region at `header_end`.
        """
        val = cls()
        val.magic = archive.read_u32()
        if val.magic != PACKAGE_MAGIC:
            raise InvalidFormatError(f"Invalid file magic 0x{val.magic:08X} (expected 0x{PACKAGE_MAGIC:08X}).")

        val.file_version = archive.read_u16()
        val.licensee_version = archive.read_u16()
        val.header_size = archive.read_i32()
        val.package_group = archive.read_fstring()
        val.package_flags = archive.read_u32()
        val.name_count = archive.read_i32()
        val.name_offset = archive.read_i32()
        val.export_count = archive.read_i32()
        val.export_offset = archive.read_i32()
        val.import_count = archive.read_i32()
        val.import_offset = archive.read_i32()
        val.depends_offset = archive.read_i32()
        archive.skip(SUMMARY_RESERVED_SIZE)

        archive.read_guid_into(val.guid)
        val.generations = read_serializable_array(archive, FGenerationInfo)
        val.engine_version = archive.read_i32()
        val.cooker_version = archive.read_i32()
        val.compression_flags = ECompressionFlags.from_value(archive.read_u32())
        val.compressed_chunks = read_serializable_array(archive, FCompressedChunk)
        archive.skip(SUMMARY_CHUNKS_TRAILER_SIZE)

        val.additional_packages_to_cook = read_array(archive, ByteArchive.read_fstring)
        val.unknown_structs = archive.read_i32()
        for _ in range(val.unknown_structs):
            archive.skip(UNKNOWN_STRUCT_SKIP_SIZE)
            read_array(archive, ByteArchive.read_i32)

        val.garbage_size = archive.read_i32()
        val.compression_chunkinfo_offset = archive.read_i32()
        val.last_block_size = archive.read_i32()
        return val

    def serialize(self, archive: ByteArchive) -> None:
        """Writes the summary layout back. Unknown structs are written as an empty list."""
        archive.write_u32(self.magic)
        archive.write_u16(self.file_version)
        archive.write_u16(self.licensee_version)
        archive.write_i32(self.header_size)
        archive.write_fstring(self.package_group)
        archive.write_u32(self.package_flags)
        for value in (self.name_count, self.name_offset, self.export_count, self.export_offset, self.import_count, self.import_offset, self.depends_offset):
            archive.write_i32(value)
        archive.write_all(b"\x00" * SUMMARY_RESERVED_SIZE)

        self.guid.serialize(archive)
        write_serializable_array(archive, self.generations)
        archive.write_i32(self.engine_version)
        archive.write_i32(self.cooker_version)
        archive.write_u32(int(self.compression_flags))
        write_serializable_array(archive, self.compressed_chunks)
        archive.write_all(b"\x00" * SUMMARY_CHUNKS_TRAILER_SIZE)

        archive.write_i32(len(self.additional_packages_to_cook))
        for name in self.additional_packages_to_cook:
            archive.write_fstring(name)
        archive.write_i32(0)

        archive.write_i32(self.garbage_size)
        archive.write_i32(self.compression_chunkinfo_offset)
        archive.write_i32(self.last_block_size)

    @property
    def is_cooked(self) -> bool:
        return bool(self.package_flags & EPackageFlags.COOKED)

    @property
    def is_store_compressed(self) -> bool:
        return bool(self.package_flags & EPackageFlags.STORE_COMPRESSED)

    @property
    def encrypted_size(self) -> int:
        """Length of the encrypted region, rounded up to the AES block size."""
        return (self.header_size - self.garbage_size - self.name_offset + AES_BLOCK_SIZE - 1) & ~(AES_BLOCK_SIZE - 1)

    @property
    def header_end(self) -> int:
        return self.name_offset + self.compression_chunkinfo_offset


# --- Encryption ---
class AesKey:
    """A raw AES-256 key. Packages are encrypted in ECB mode with zero padding."""

    def __init__(self, key: bytes):
        if len(key) != AES_KEY_SIZE:
            raise InvalidKeyError(f"AES key must be {AES_KEY_SIZE} bytes, got {len(key)}.")
        self.key: bytes = bytes(key)

    @classmethod
    def from_base64(cls, text: str) -> "AesKey":
        try:
            decoded = base64.b64decode(text.strip(), validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidKeyError(f"Invalid base64 AES key: {e}") from e
        return cls(decoded)

    def to_hex(self) -> str:
        return "0x" + self.key.hex().upper()

    def __repr__(self) -> str:
        return f"<AesKey {self.to_hex()[:10]}...>"

    def __eq__(self, other) -> bool:
        return isinstance(other, AesKey) and other.key == self.key

    def __hash__(self) -> int:
        return hash(self.key)

    def decrypt(self, archive: ByteArchive, offset: int, length: int) -> None:
        """Decrypts `length` bytes at `offset` and writes the plaintext back in place."""
        archive.seek(offset)
        encrypted = archive.read_bytes(length)

        try:
            cipher = Cipher(algorithms.AES(self.key), modes.ECB(), backend=default_backend())
            decryptor = cipher.decryptor()
            decrypted = decryptor.update(encrypted) + decryptor.finalize()
        except ValueError as e:
            raise DecryptionError(f"AES decryption failed with key {self.to_hex()[:10]}...: {e}") from e

        if len(decrypted) != length:
            raise InvalidFormatError(f"Decrypted size mismatch (expected {length} bytes, got {len(decrypted)}).")
        logger.debug("Decrypted block of %d bytes", len(decrypted))

        archive.seek(offset)
        archive.write_all(decrypted)


# --- Main Class ---
class UnPackage:
    """
    Represents one cooked package file.

    `file` is any object exposing `file_name` and `read() -> bytes`.
    """

    def __init__(self, file, keys: Sequence[AesKey] = ()):
        self.file = file
        # Snapshot so worker threads never observe a key list being modified.
        self.keys: tuple = tuple(keys)
        self.summary: FPackageFileSummary = FPackageFileSummary()
        self.archive: Optional[ByteArchive] = None

    @property
    def name(self) -> str:
        return getattr(self.file, "file_name", str(self.file))

    def load(self) -> ByteArchive:
        """Parses, decrypts and decompresses the package. Returns the reconstructed archive."""
        logger.info("Loading package %s", self.name)

        try:
            data = self.file.read()
        except (IOError, OSError) as e:
            raise ArchiveIOError(f'Failed to read package "{self.name}": {e}') from e

        archive = ByteArchive(data)
        self.summary = FPackageFileSummary.deserialize(archive)

        encrypted_size = self.summary.encrypted_size
        if encrypted_size < 0:
            raise InvalidFormatError(f"Invalid encrypted region size {encrypted_size} (header_size={self.summary.header_size}, garbage_size={self.summary.garbage_size}, name_offset={self.summary.name_offset}).")

        self._decrypt(archive, encrypted_size)
        self.archive = self._decompress(archive, encrypted_size)
        return self.archive

    def save(self, path: str) -> None:
        """Loads the package and writes the reconstructed bytes to `path`."""
        archive = self.load()
        temp_path = path + ".tmp"
        try:
            with open(temp_path, "wb") as f_out:
                f_out.write(archive.get_mut())
            os.replace(temp_path, path)
        except (IOError, OSError) as e:
            try:
                os.remove(temp_path)
            except OSError:
                pass
            raise ArchiveIOError(f'Failed to write "{path}": {e}') from e
        logger.info("Saved package %s (%d bytes)", self.name, len(archive))

    def _decrypt(self, archive: ByteArchive, encrypted_size: int) -> None:
        offset = self.summary.name_offset
        if offset < 0:
            raise InvalidFormatError(f"Invalid name offset: {offset}")

        for key in self.keys:
            logger.info("Decrypting package %s with key: %s", self.name, key.to_hex())
            try:
                key.decrypt(archive, offset, encrypted_size)
                return
            except DecryptionError as e:
                logger.debug("Key %s rejected for %s: %s", key.to_hex(), self.name, e)

        raise NoValidKeyError(f'No valid AES key for package "{self.name}" ({len(self.keys)} keys tried).')

    def _decompress(self, archive: ByteArchive, encrypted_size: int) -> ByteArchive:
        header_end = self.summary.header_end
        archive.seek(header_end)

        chunk_count = archive.read_i32()
        if not 0 <= chunk_count <= MAX_COMPRESSED_CHUNKS:
            raise InvalidFormatError(f"Invalid compressed chunk count {chunk_count} (allowed 0..{MAX_COMPRESSED_CHUNKS}).")
        compressed_chunks = read_sized_serializable_array(archive, FCompressedChunk, chunk_count)
        self.summary.compressed_chunks = compressed_chunks

        if compressed_chunks and self.summary.compression_flags == ECompressionFlags.GZIP:
            raise UnsupportedFeatureError(f'Gzip compressed package "{self.name}" is not supported.')

        base_size = self.summary.name_offset + encrypted_size
        output_limit = base_size + sum(max(chunk.uncompressed_size, 0) for chunk in compressed_chunks)
        for chunk in compressed_chunks:
            self._check_chunk_target(chunk, header_end, output_limit)

        # Chunk headers and block tables are validated before anything is inflated.
        chunk_blocks = []
        for chunk in compressed_chunks:
            archive.seek(chunk.compressed_offset)
            header = FCompressedChunkHeader.deserialize(archive)
            if header.tag != PACKAGE_MAGIC:
                logger.warning("Unexpected chunk tag 0x%08X at offset %d in %s", header.tag, chunk.compressed_offset, self.name)
            if header.summary.uncompressed_size != chunk.uncompressed_size:
                raise InvalidFormatError(f"Chunk at offset {chunk.compressed_offset} declares {chunk.uncompressed_size} bytes but its header holds {header.summary.uncompressed_size}.")

            blocks = self._read_blocks(archive, header)
            chunk_blocks.append((chunk, archive.tell(), blocks))

        result = ByteArchive(bytes(base_size))
        source = archive.get_mut()
        copy_size = min(header_end, len(result), len(source))
        result.get_mut()[0:copy_size] = source[0:copy_size]

        for chunk, data_offset, blocks in chunk_blocks:
            archive.seek(data_offset)
            result.seek(chunk.uncompressed_offset)
            for block in blocks:
                if block.compressed_size < 0:
                    raise InvalidFormatError(f"Invalid compressed block size: {block.compressed_size}")
                compressed_data = archive.read_bytes(block.compressed_size)
                try:
                    decompressed = zlib.decompress(compressed_data)
                except zlib.error as e:
                    raise InvalidFormatError(f"Decompression failed (zlib) at chunk offset {chunk.compressed_offset}: {e}") from e
                if len(decompressed) != block.uncompressed_size:
                    raise InvalidFormatError(f"Block size mismatch after decompression (expected {block.uncompressed_size}, got {len(decompressed)}).")
                logger.debug("Decompressed block of %d bytes", len(decompressed))

                result.write_all(decompressed)

        result.seek(0)
        return result

    @staticmethod
    def _check_chunk_target(chunk: FCompressedChunk, header_end: int, output_limit: int) -> None:
        """Rejects a chunk whose unpacked range falls outside the reconstructed file."""
        if chunk.uncompressed_size < 0:
            raise InvalidFormatError(f"Invalid chunk uncompressed size: {chunk.uncompressed_size}")
        if chunk.uncompressed_offset < header_end:
            raise InvalidFormatError(f"Chunk uncompressed offset {chunk.uncompressed_offset} overlaps the package header (ends at {header_end}).")
        if chunk.uncompressed_offset + chunk.uncompressed_size > output_limit:
            raise InvalidFormatError(f"Chunk range {chunk.uncompressed_offset}+{chunk.uncompressed_size} exceeds the unpacked size limit {output_limit}.")

    @staticmethod
    def _read_blocks(archive: ByteArchive, header: FCompressedChunkHeader) -> List[FCompressedChunkBlock]:
        """Reads block descriptors until their sizes add up to the chunk total."""
        target = header.summary.uncompressed_size
        blocks: List[FCompressedChunkBlock] = []
        total_block_size = 0

        while total_block_size < target:
            block = FCompressedChunkBlock.deserialize(archive)
            if block.uncompressed_size <= 0:
                raise InvalidFormatError(f"Invalid block uncompressed size {block.uncompressed_size} (chunk total {target}).")
            total_block_size += block.uncompressed_size
            if total_block_size > target:
                raise InvalidFormatError(f"Block sizes overrun the chunk total ({total_block_size} > {target}).")
            blocks.append(block)

        return blocks
