"""
CRC32C (Castagnoli) over record headers.

Table-driven, pure Python. Only record headers are checksummed; content is
covered by the per-entry BLAKE2s digest.
"""

from __future__ import annotations

_POLY = 0x82F63B78  # reflected Castagnoli polynomial


def _make_table():
    tbl = []
    for n in range(256):
        c = n
        for _ in range(8):
            c = (c >> 1) ^ _POLY if c & 1 else c >> 1
        tbl.append(c & 0xFFFFFFFF)
    return tuple(tbl)


_TABLE = _make_table()


def crc32c(data: bytes, crc: int = 0) -> int:
    """Return the CRC32C of ``data``, continuing from ``crc`` when given."""
    c = (~crc) & 0xFFFFFFFF
    for b in data:
        c = _TABLE[(c ^ b) & 0xFF] ^ (c >> 8)
    return (~c) & 0xFFFFFFFF
