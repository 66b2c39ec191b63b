from __future__ import annotations

from typing import BinaryIO, Iterator, Optional, Set

from .constants import (
    IO_BUFFER_SIZE,
    KIND_BLOB,
    KIND_RECORD_COLLECTION,
    MAX_CHUNK_PAYLOAD,
    MAX_COLLECTION_BYTES,
    RTYPE_ARCHIVE_END,
    RTYPE_CHUNK,
    RTYPE_ENTRY_BEGIN,
    RTYPE_ENTRY_END,
)
from .errors import MalformedArchiveError
from .hashutil import new_content_hasher
from .pathutil import norm_entry_name
from .records import (
    Record,
    StreamHeader,
    parse_archive_end_ext,
    parse_chunk_header_ext,
    parse_entry_end_ext,
    read_record,
    read_stream_header,
)
from . import tlv


_KIND_LABELS = {KIND_RECORD_COLLECTION: "collection", KIND_BLOB: "blob"}


class ArchiveEntry:
    """One entry of the container; its content is read through the owning reader.

    Content is forward-only. Once the EntryEnd record has been checked
    (length, chunk count, digest) ``read`` returns ``b""``.
    """

    def __init__(self, reader: "ArchiveReader", entry_id: int, kind: int, name: str, size: Optional[int], record_count: Optional[int]):
        self._reader = reader
        self.entry_id = entry_id
        self.kind = kind
        self.name = name
        self.size = size
        self.record_count = record_count
        self._buf = bytearray()
        self._finished = False
        self._chunk_index = 0
        self._length = 0
        self._hasher = new_content_hasher()

    def __repr__(self) -> str:
        return f"<ArchiveEntry #{self.entry_id} {self.kind_label} {self.name!r}>"

    @property
    def kind_label(self) -> str:
        return _KIND_LABELS.get(self.kind, str(self.kind))

    @property
    def is_collection(self) -> bool:
        return self.kind == KIND_RECORD_COLLECTION

    @property
    def is_blob(self) -> bool:
        return self.kind == KIND_BLOB

    @property
    def consumed(self) -> bool:
        return self._finished and not self._buf

    @property
    def length(self) -> int:
        """Content bytes pulled from the archive so far (the full size once consumed)."""
        return self._length

    def read(self, n: int = -1) -> bytes:
        if n is None or n < 0:
            while not self._finished:
                self._reader._advance_content(self)
            n = len(self._buf)
        else:
            while len(self._buf) < n and not self._finished:
                self._reader._advance_content(self)
        out = bytes(self._buf[:n])
        del self._buf[:n]
        return out

    def read_text(self, limit: int = MAX_COLLECTION_BYTES) -> str:
        """Read the whole entry as UTF-8 text, refusing more than ``limit`` bytes."""
        while not self._finished:
            self._reader._advance_content(self)
            if len(self._buf) > limit:
                raise MalformedArchiveError(f"Entry {self.name!r} exceeds {limit} bytes")
        data = bytes(self._buf)
        self._buf.clear()
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedArchiveError(f"Entry {self.name!r} is not valid UTF-8") from exc

    def copy_to(self, sink: BinaryIO, buffer_size: int = IO_BUFFER_SIZE) -> int:
        """Stream the remaining content into ``sink``; return bytes copied."""
        total = 0
        while True:
            piece = self.read(buffer_size)
            if not piece:
                break
            sink.write(piece)
            total += len(piece)
        return total

    def skip(self) -> int:
        """Discard the remaining content (still verifying it); return bytes skipped."""
        skipped = len(self._buf)
        self._buf.clear()
        while not self._finished:
            self._reader._advance_content(self)
            skipped += len(self._buf)
            self._buf.clear()
        return skipped


class ArchiveReader:
    """Forward-only iterator over the entries of a container stream.

    Single pass, not restartable. Advancing to the next entry skips whatever
    is left of the current one. After the ArchiveEnd terminator the source
    must be exhausted; reading it to EOF is what lets a decrypting source
    verify its authentication tag.
    """

    def __init__(self, source: BinaryIO):
        self.f = source
        self.header: Optional[StreamHeader] = None
        self.entries_read = 0
        self._current: Optional[ArchiveEntry] = None
        self._blob_seen = False
        self._names: Set[str] = set()
        self._done = False

    def __iter__(self) -> Iterator[ArchiveEntry]:
        return self

    def __next__(self) -> ArchiveEntry:
        if self._done:
            raise StopIteration
        if self.header is None:
            self.read_header()
        if self._current is not None and not self._current._finished:
            self._current.skip()
        self._current = None
        rec = self._read_record()
        if rec.rtype == RTYPE_ENTRY_BEGIN:
            entry = self._open_entry(rec)
            self._current = entry
            return entry
        if rec.rtype == RTYPE_ARCHIVE_END:
            self._finish(rec)
            raise StopIteration
        raise MalformedArchiveError(f"Unexpected record type {rec.rtype} between entries")

    @property
    def finished(self) -> bool:
        return self._done

    def read_header(self) -> StreamHeader:
        try:
            self.header = read_stream_header(self.f)
        except EOFError as exc:
            raise MalformedArchiveError("Unexpected end of archive in stream header") from exc
        except ValueError as exc:
            raise MalformedArchiveError(str(exc)) from exc
        return self.header

    # internals
    def _read_record(self) -> Record:
        try:
            return read_record(self.f, max_payload=MAX_CHUNK_PAYLOAD)
        except EOFError as exc:
            raise MalformedArchiveError("Unexpected end of archive") from exc
        except ValueError as exc:
            raise MalformedArchiveError(str(exc)) from exc

    def _open_entry(self, rec: Record) -> ArchiveEntry:
        try:
            ent = tlv.loads_entry(rec.payload)
        except ValueError as exc:
            raise MalformedArchiveError(f"Unreadable entry header: {exc}") from exc
        expected_id = self.entries_read + 1
        if ent["entry_id"] != expected_id:
            raise MalformedArchiveError(f"Entry id {ent['entry_id']} out of sequence (expected {expected_id})")
        kind = ent["kind"]
        if kind not in _KIND_LABELS:
            raise MalformedArchiveError(f"Unknown entry kind {kind}")
        name = ent["name"]
        try:
            normalized = norm_entry_name(name)
        except ValueError as exc:
            raise MalformedArchiveError(f"Invalid entry name: {exc}") from exc
        if normalized != name:
            raise MalformedArchiveError(f"Entry name is not canonical: {name!r}")
        if name in self._names:
            raise MalformedArchiveError(f"Duplicate entry name {name!r}")
        self._names.add(name)
        if kind == KIND_RECORD_COLLECTION and self._blob_seen:
            raise MalformedArchiveError(f"Record collection {name!r} follows blob entries")
        if kind == KIND_BLOB:
            self._blob_seen = True
        self.entries_read += 1
        return ArchiveEntry(self, ent["entry_id"], kind, name, ent.get("size"), ent.get("record_count"))

    def _advance_content(self, entry: ArchiveEntry) -> None:
        """Pull the next content record of ``entry`` into its buffer."""
        if entry is not self._current or entry._finished:
            raise RuntimeError("Entry content is no longer available")
        rec = self._read_record()
        if rec.rtype == RTYPE_CHUNK:
            try:
                entry_id, chunk_index = parse_chunk_header_ext(rec.header_ext)
            except ValueError as exc:
                raise MalformedArchiveError(str(exc)) from exc
            if entry_id != entry.entry_id or chunk_index != entry._chunk_index:
                raise MalformedArchiveError(f"Chunk out of sequence in entry {entry.name!r}")
            entry._chunk_index += 1
            entry._length += len(rec.payload)
            entry._hasher.update(rec.payload)
            entry._buf += rec.payload
            return
        if rec.rtype == RTYPE_ENTRY_END:
            try:
                entry_id, chunk_count, length, digest32 = parse_entry_end_ext(rec.header_ext)
            except ValueError as exc:
                raise MalformedArchiveError(str(exc)) from exc
            if entry_id != entry.entry_id:
                raise MalformedArchiveError(f"EntryEnd does not match entry {entry.name!r}")
            if chunk_count != entry._chunk_index or length != entry._length:
                raise MalformedArchiveError(f"Length mismatch in entry {entry.name!r}")
            if entry.size is not None and entry.size != length:
                raise MalformedArchiveError(f"Declared size mismatch in entry {entry.name!r}")
            if entry._hasher.digest() != digest32:
                raise MalformedArchiveError(f"Content digest mismatch in entry {entry.name!r}")
            entry._finished = True
            return
        raise MalformedArchiveError(f"Unexpected record type {rec.rtype} inside entry {entry.name!r}")

    def _finish(self, rec: Record) -> None:
        try:
            entry_count = parse_archive_end_ext(rec.header_ext)
        except ValueError as exc:
            raise MalformedArchiveError(str(exc)) from exc
        if entry_count != self.entries_read:
            raise MalformedArchiveError(f"Archive declares {entry_count} entries, found {self.entries_read}")
        if self.f.read(1):
            raise MalformedArchiveError("Trailing data after archive terminator")
        self._done = True
