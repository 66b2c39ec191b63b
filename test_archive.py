from __future__ import annotations

import io
import unittest

from capsule.crc32c import crc32c
from capsule.errors import ArchiveOrderError, MalformedArchiveError
from capsule.pathutil import norm_blob_name, norm_entry_name
from capsule.reader import ArchiveReader
from capsule.tlv import _tlv, dumps_entry, loads_entry
from capsule.writer import ArchiveWriter, begin_archive


def _build(chunk_size: int = 4) -> bytes:
    buf = io.BytesIO()
    with ArchiveWriter(buf, chunk_size=chunk_size) as w:
        w.write_record_collection("notes.json", '[{"id":1}]', record_count=1)
        w.write_record_collection("file_items.json", "[]", record_count=0)
        w.write_blob("files/a.bin", io.BytesIO(b"ABCDEFGHIJ"))
        w.write_blob("files/empty.bin", io.BytesIO(b""))
    return buf.getvalue()


def _read_all(data: bytes):
    out = []
    for entry in ArchiveReader(io.BytesIO(data)):
        out.append((entry.name, entry.kind_label, entry.read()))
    return out


class ArchiveCodecTests(unittest.TestCase):
    def test_roundtrip_order_and_content(self):
        entries = _read_all(_build())
        self.assertEqual(
            entries,
            [
                ("notes.json", "collection", b'[{"id":1}]'),
                ("file_items.json", "collection", b"[]"),
                ("files/a.bin", "blob", b"ABCDEFGHIJ"),
                ("files/empty.bin", "blob", b""),
            ],
        )

    def test_entry_metadata(self):
        reader = ArchiveReader(io.BytesIO(_build()))
        first = next(reader)
        self.assertTrue(first.is_collection)
        self.assertEqual(first.entry_id, 1)
        self.assertEqual(first.record_count, 1)
        self.assertEqual(first.size, len(b'[{"id":1}]'))
        self.assertEqual(first.read_text(), '[{"id":1}]')
        self.assertTrue(first.consumed)
        blob = next(e for e in reader if e.is_blob)
        self.assertEqual(blob.name, "files/a.bin")
        sink = io.BytesIO()
        self.assertEqual(blob.copy_to(sink, buffer_size=3), 10)
        self.assertEqual(sink.getvalue(), b"ABCDEFGHIJ")

    def test_unread_entries_are_skipped(self):
        reader = ArchiveReader(io.BytesIO(_build()))
        names = [e.name for e in reader]
        self.assertEqual(len(names), 4)
        self.assertTrue(reader.finished)
        self.assertEqual(reader.entries_read, 4)

    def test_partial_read_then_advance(self):
        reader = ArchiveReader(io.BytesIO(_build(chunk_size=3)))
        for entry in reader:
            if entry.name == "files/a.bin":
                self.assertEqual(entry.read(2), b"AB")
        self.assertTrue(reader.finished)

    def test_empty_archive(self):
        buf = io.BytesIO()
        w = begin_archive(buf)
        w.close()
        w.close()
        self.assertEqual(_read_all(buf.getvalue()), [])

    def test_collection_after_blob_rejected_by_writer(self):
        w = begin_archive(io.BytesIO())
        w.write_blob("files/x", io.BytesIO(b"x"))
        with self.assertRaises(ArchiveOrderError):
            w.write_record_collection("notes.json", "[]")

    def test_collection_after_blob_rejected_by_reader(self):
        buf = io.BytesIO()
        w = begin_archive(buf)
        w.write_blob("files/x", io.BytesIO(b"x"))
        w._blob_started = False
        w.write_record_collection("notes.json", "[]")
        w.close()
        with self.assertRaises(MalformedArchiveError):
            _read_all(buf.getvalue())

    def test_duplicate_names_rejected(self):
        w = begin_archive(io.BytesIO())
        w.write_record_collection("notes.json", "[]")
        with self.assertRaises(ValueError):
            w.write_record_collection("notes.json", "[]")

    def test_write_after_close_rejected(self):
        w = begin_archive(io.BytesIO())
        w.close()
        with self.assertRaises(RuntimeError):
            w.write_blob("files/x", io.BytesIO(b"x"))

    def test_truncation_detected(self):
        data = _build()
        for cut in (5, 30, len(data) - 1):
            with self.subTest(cut=cut):
                with self.assertRaises(MalformedArchiveError):
                    _read_all(data[:cut])

    def test_trailing_data_detected(self):
        with self.assertRaises(MalformedArchiveError):
            _read_all(_build() + b"\x00")

    def test_bad_magic_detected(self):
        data = bytearray(_build())
        data[0] ^= 0xFF
        with self.assertRaises(MalformedArchiveError):
            _read_all(bytes(data))

    def test_payload_corruption_detected_by_digest(self):
        data = bytearray(_build(chunk_size=64))
        pos = data.find(b"ABCDEFGHIJ")
        self.assertGreater(pos, 0)
        data[pos + 3] ^= 0x20
        with self.assertRaises(MalformedArchiveError):
            _read_all(bytes(data))

    def test_record_header_corruption_detected_by_crc(self):
        data = bytearray(_build())
        # first record header follows the 20-byte stream header; flip its rtype
        data[20 + 4] ^= 0x01
        with self.assertRaises(MalformedArchiveError):
            _read_all(bytes(data))

    def test_read_text_limit(self):
        buf = io.BytesIO()
        with ArchiveWriter(buf) as w:
            w.write_record_collection("big.json", "x" * 100)
        entry = next(ArchiveReader(io.BytesIO(buf.getvalue())))
        with self.assertRaises(MalformedArchiveError):
            entry.read_text(limit=10)


class PrimitiveTests(unittest.TestCase):
    def test_crc32c_check_value(self):
        self.assertEqual(crc32c(b"123456789"), 0xE3069283)
        self.assertEqual(crc32c(b"6789", crc32c(b"12345")), 0xE3069283)

    def test_entry_header_tlv(self):
        raw = dumps_entry(entry_id=3, kind=1, name="files/a", size=300)
        ent = loads_entry(raw + _tlv(42, b"future"))
        self.assertEqual(ent, {"entry_id": 3, "kind": 1, "name": "files/a", "size": 300})
        with self.assertRaises(ValueError):
            loads_entry(_tlv(1, b"\x01"))

    def test_name_normalization(self):
        self.assertEqual(norm_entry_name("files\\a//./b/"), "files/a/b")
        for bad in ("", "/", "a/../b", "a\x00b", "x" * 2000):
            with self.subTest(bad=bad):
                with self.assertRaises(ValueError):
                    norm_entry_name(bad)
        self.assertEqual(norm_blob_name("photo.jpg"), "photo.jpg")
        with self.assertRaises(ValueError):
            norm_blob_name("dir/photo.jpg")


if __name__ == "__main__":
    unittest.main()
