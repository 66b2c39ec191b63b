from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import BinaryIO, Tuple

from .constants import (
    REC_SYNC,
    RFLAG_HEADER_EXT,
    STREAM_MAGIC,
    VERSION_MAJOR,
    VERSION_MINOR,
)
from .crc32c import crc32c


# Stream header (fixed 20 bytes), first thing inside the ciphertext
# struct: <8s H H I I
#  - magic[8]
#  - version_major u16, version_minor u16
#  - flags u32 (reserved, zero)
#  - header_crc32c u32 (over the preceding 16 bytes)
_STREAM_HDR_STRUCT = struct.Struct("<8sHHII")

# Record header (fixed 16 bytes)
# struct: <4s B B H I I
#  - sync[4]
#  - rtype u8
#  - rflags u8
#  - header_len u16 (bytes of header_ext following this fixed header)
#  - payload_len u32
#  - header_crc32c u32 (over fixed header without crc, plus header_ext)
_REC_HDR_STRUCT = struct.Struct("<4sBBHII")

_CHUNK_HDR_EXT_STRUCT = struct.Struct("<QI")
_ENTRY_END_EXT_STRUCT = struct.Struct("<QIQ32s")
_ARCHIVE_END_EXT_STRUCT = struct.Struct("<Q")


@dataclass
class Record:
    rtype: int
    rflags: int
    header_ext: bytes
    payload: bytes


@dataclass
class StreamHeader:
    version_major: int
    version_minor: int
    flags: int


def read_exact(f: BinaryIO, n: int) -> bytes:
    """Read exactly ``n`` bytes, looping over short reads."""
    buf = bytearray()
    while len(buf) < n:
        b = f.read(n - len(buf))
        if not b:
            raise EOFError("Unexpected EOF")
        buf += b
    return bytes(buf)


def write_stream_header(f: BinaryIO, flags: int = 0) -> None:
    pre = _STREAM_HDR_STRUCT.pack(STREAM_MAGIC, VERSION_MAJOR, VERSION_MINOR, flags, 0)
    f.write(pre[:-4] + struct.pack("<I", crc32c(pre[:-4])))


def read_stream_header(f: BinaryIO) -> StreamHeader:
    raw = read_exact(f, _STREAM_HDR_STRUCT.size)
    magic, vmaj, vmin, flags, hdr_crc = _STREAM_HDR_STRUCT.unpack(raw)
    if magic != STREAM_MAGIC:
        raise ValueError("Bad stream magic")
    if crc32c(raw[:-4]) != hdr_crc:
        raise ValueError("Stream header CRC mismatch")
    if vmaj != VERSION_MAJOR:
        raise ValueError(f"Unsupported archive version {vmaj}.{vmin}")
    return StreamHeader(version_major=vmaj, version_minor=vmin, flags=flags)


def pack_record_header(rtype: int, rflags: int, header_ext: bytes, payload_len: int) -> bytes:
    header_len = len(header_ext)
    if header_len > 0xFFFF:
        raise ValueError("header_ext too long")
    if header_len:
        rflags |= RFLAG_HEADER_EXT
    pre_crc = _REC_HDR_STRUCT.pack(REC_SYNC, rtype, rflags, header_len, payload_len, 0)
    crc = crc32c(pre_crc[:-4] + header_ext)
    return pre_crc[:-4] + struct.pack("<I", crc) + header_ext


def write_record(f: BinaryIO, rtype: int, rflags: int, header_ext: bytes, payload: bytes) -> int:
    """Write one record and return the number of bytes emitted."""
    hdr = pack_record_header(rtype, rflags, header_ext, len(payload))
    f.write(hdr)
    if payload:
        f.write(payload)
    return len(hdr) + len(payload)


def read_record(f: BinaryIO, *, max_payload: int) -> Record:
    fixed = read_exact(f, _REC_HDR_STRUCT.size)
    sync, rtype, rflags, header_len, payload_len, hdr_crc = _REC_HDR_STRUCT.unpack(fixed)
    if sync != REC_SYNC:
        raise ValueError("Bad record sync")
    header_ext = read_exact(f, header_len) if header_len else b""
    if crc32c(fixed[:-4] + header_ext) != hdr_crc:
        raise ValueError("Record header CRC32C mismatch")
    if payload_len > max_payload:
        raise ValueError("Record payload exceeds safety bound")
    payload = read_exact(f, payload_len) if payload_len else b""
    return Record(rtype=rtype, rflags=rflags, header_ext=header_ext, payload=payload)


def build_chunk_header_ext(entry_id: int, chunk_index: int) -> bytes:
    return _CHUNK_HDR_EXT_STRUCT.pack(entry_id, chunk_index)


def parse_chunk_header_ext(header_ext: bytes) -> Tuple[int, int]:
    """Returns: (entry_id, chunk_index)"""
    if len(header_ext) < _CHUNK_HDR_EXT_STRUCT.size:
        raise ValueError("chunk header_ext too short")
    return _CHUNK_HDR_EXT_STRUCT.unpack(header_ext[: _CHUNK_HDR_EXT_STRUCT.size])


def build_entry_end_ext(entry_id: int, chunk_count: int, length: int, digest32: bytes) -> bytes:
    if len(digest32) != 32:
        raise ValueError("digest must be 32 bytes")
    return _ENTRY_END_EXT_STRUCT.pack(entry_id, chunk_count, length, digest32)


def parse_entry_end_ext(header_ext: bytes) -> Tuple[int, int, int, bytes]:
    """Returns: (entry_id, chunk_count, length, digest32)"""
    if len(header_ext) < _ENTRY_END_EXT_STRUCT.size:
        raise ValueError("entry end header_ext too short")
    return _ENTRY_END_EXT_STRUCT.unpack(header_ext[: _ENTRY_END_EXT_STRUCT.size])


def build_archive_end_ext(entry_count: int) -> bytes:
    return _ARCHIVE_END_EXT_STRUCT.pack(entry_count)


def parse_archive_end_ext(header_ext: bytes) -> int:
    if len(header_ext) < _ARCHIVE_END_EXT_STRUCT.size:
        raise ValueError("archive end header_ext too short")
    (entry_count,) = _ARCHIVE_END_EXT_STRUCT.unpack(header_ext[: _ARCHIVE_END_EXT_STRUCT.size])
    return entry_count
