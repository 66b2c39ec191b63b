from __future__ import annotations

"""
Minimal TLV encoder/decoder for Capsule entry headers.

Encoding
- TLV: varint(tag) || varint(length) || payload
- Integers: unsigned LEB128 varint, at most 64 bits
- Strings: UTF-8 bytes (length provided by TLV len)

EntryBegin payload
- 1: entry_id (varint)
- 2: kind (varint; 0=record collection, 1=blob)
- 3: name (utf8)
- 4: size (varint, optional; byte length when known up front)
- 5: record_count (varint, optional; record collections only)

Unknown tags are skipped so newer writers can add fields.
"""

from typing import Dict, Iterator, Optional, Tuple

TAG_ENTRY_ID = 1
TAG_KIND = 2
TAG_NAME = 3
TAG_SIZE = 4
TAG_RECORD_COUNT = 5

_MAX_VARINT_BYTES = 10


def _varint_encode(n: int) -> bytes:
    if n < 0:
        raise ValueError("varint: negative not supported")
    out = bytearray()
    while n > 0x7F:
        out.append((n & 0x7F) | 0x80)
        n >>= 7
    out.append(n)
    return bytes(out)


def _varint_decode(data: bytes, pos: int) -> Tuple[int, int]:
    """Decode one varint at ``pos``; return (value, next position)."""
    value = 0
    for i in range(_MAX_VARINT_BYTES):
        if pos + i >= len(data):
            raise ValueError("varint: truncated")
        b = data[pos + i]
        value |= (b & 0x7F) << (7 * i)
        if b < 0x80:
            if value >> 64:
                raise ValueError("varint: too large")
            return value, pos + i + 1
    raise ValueError("varint: too long")


def _tlv(tag: int, payload: bytes) -> bytes:
    return _varint_encode(tag) + _varint_encode(len(payload)) + payload


def _varint_only(payload: bytes) -> int:
    value, end = _varint_decode(payload, 0)
    if end != len(payload):
        raise ValueError("varint: trailing bytes")
    return value


def _iter_tlvs(data: bytes) -> Iterator[Tuple[int, bytes]]:
    pos = 0
    while pos < len(data):
        tag, pos = _varint_decode(data, pos)
        length, pos = _varint_decode(data, pos)
        end = pos + length
        if end > len(data):
            raise ValueError("TLV length out of range")
        yield tag, data[pos:end]
        pos = end


def dumps_entry(
    *,
    entry_id: int,
    kind: int,
    name: str,
    size: Optional[int] = None,
    record_count: Optional[int] = None,
) -> bytes:
    out = bytearray()
    out += _tlv(TAG_ENTRY_ID, _varint_encode(entry_id))
    out += _tlv(TAG_KIND, _varint_encode(kind))
    out += _tlv(TAG_NAME, name.encode("utf-8"))
    if size is not None:
        out += _tlv(TAG_SIZE, _varint_encode(size))
    if record_count is not None:
        out += _tlv(TAG_RECORD_COUNT, _varint_encode(record_count))
    return bytes(out)


def loads_entry(data: bytes) -> Dict:
    ent: Dict = {}
    for tag, payload in _iter_tlvs(data):
        if tag == TAG_ENTRY_ID:
            ent["entry_id"] = _varint_only(payload)
        elif tag == TAG_KIND:
            ent["kind"] = _varint_only(payload)
        elif tag == TAG_NAME:
            try:
                ent["name"] = payload.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise ValueError("entry name is not valid UTF-8") from exc
        elif tag == TAG_SIZE:
            ent["size"] = _varint_only(payload)
        elif tag == TAG_RECORD_COUNT:
            ent["record_count"] = _varint_only(payload)
    for required in ("entry_id", "kind", "name"):
        if required not in ent:
            raise ValueError(f"entry header missing {required}")
    return ent
