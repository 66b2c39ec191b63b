from __future__ import annotations

import io
import json
import tempfile
import unittest
from pathlib import Path

from capsule import export_backup, import_backup
from capsule.kdf import _HAS_CRYPTODOME
from capsule.models import DEFAULT_LAYOUT, CollectionSpec, collect_blob_references
from capsule.errors import BlobMissingWarning, BlobRestoreWarning, SerializationError
from capsule.serialization import deserialize_collection, serialize_collection
from capsule.stores import DirectoryBlobStore, JsonRecordStore, MemoryBlobStore, MemoryRecordStore


class RecordStoreTests(unittest.TestCase):
    def test_memory_store_upserts_and_copies(self):
        store = MemoryRecordStore({"notes": [{"id": 1, "title": "a"}]})
        store.replace_all("notes", [{"id": 1, "title": "b"}, {"id": 2, "title": "c"}])
        snap = store.snapshot("notes")
        self.assertEqual(sorted(r["id"] for r in snap), [1, 2])
        snap[0]["title"] = "mutated"
        self.assertNotEqual(store.snapshot("notes")[0]["title"], "mutated")
        self.assertEqual(store.snapshot("unknown"), [])

    def test_json_store_roundtrip(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = JsonRecordStore(tmp)
            self.assertEqual(store.snapshot("notes"), [])
            store.replace_all("notes", [{"id": 7, "title": "ü"}])
            store.replace_all("notes", [{"id": 8, "title": "x"}])
            path = Path(tmp) / "notes.json"
            self.assertTrue(path.exists())
            data = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual([r["id"] for r in data], [7, 8])
            self.assertEqual([p.name for p in Path(tmp).iterdir()], ["notes.json"])

    def test_json_store_rejects_non_array(self):
        with tempfile.TemporaryDirectory() as tmp:
            (Path(tmp) / "notes.json").write_text('{"id": 1}', encoding="utf-8")
            with self.assertRaises(ValueError):
                JsonRecordStore(tmp).snapshot("notes")


class BlobStoreTests(unittest.TestCase):
    def test_directory_store_staging(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = DirectoryBlobStore(tmp)
            self.assertIsNone(store.open_blob("a.bin"))
            with store.open_sink("a.bin") as fh:
                fh.write(b"payload")
            self.assertIsNone(store.open_blob("a.bin"))
            self.assertEqual(store.names(), [])
            store.commit("a.bin")
            with store.open_blob("a.bin") as fh:
                self.assertEqual(fh.read(), b"payload")
            with store.open_sink("b.bin") as fh:
                fh.write(b"discard me")
            store.discard("b.bin")
            store.discard("never-staged.bin")
            self.assertEqual(store.names(), ["a.bin"])

    def test_directory_store_rejects_paths(self):
        store = DirectoryBlobStore("/tmp")
        for bad in ("../etc/passwd", "sub/dir.bin", "", ".a.bin.partial", "x.partial"):
            with self.subTest(bad=bad):
                with self.assertRaises(ValueError):
                    store.path_for(bad)

    def test_staging_names_cannot_collide_with_blobs(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = DirectoryBlobStore(tmp)
            with self.assertRaises(ValueError):
                store.open_sink(".a.bin.partial")
            with store.open_sink("a.bin") as fh:
                fh.write(b"staged")
            self.assertEqual([p.name for p in Path(tmp).iterdir()], [".a.bin.partial"])
            self.assertEqual(store.names(), [])
            store.discard("a.bin")
            self.assertEqual(list(Path(tmp).iterdir()), [])

    def test_memory_store_staging(self):
        store = MemoryBlobStore()
        with store.open_sink("x") as fh:
            fh.write(b"1")
        self.assertEqual(store.blobs, {})
        store.commit("x")
        self.assertEqual(store.blobs, {"x": b"1"})
        self.assertEqual(store.open_blob("x").read(), b"1")


class ModelTests(unittest.TestCase):
    def test_collect_blob_references(self):
        snapshots = {
            "file_items": [
                {"id": 1, "original_file_name": "a.jpg"},
                {"id": 2, "original_file_name": "a.jpg"},
                {"id": 3, "original_file_name": None},
                {"id": 4, "original_file_name": "../evil"},
                {"id": 5, "original_file_name": "b.pdf"},
            ]
        }
        refs, warnings = collect_blob_references(DEFAULT_LAYOUT, snapshots)
        self.assertEqual([(r.name, r.record_id) for r in refs], [("a.jpg", 1), ("b.pdf", 5)])
        self.assertEqual(refs[0].entry_name, "files/a.jpg")
        self.assertEqual(len(warnings), 1)
        self.assertIsInstance(warnings[0], BlobMissingWarning)

    def test_collection_serialization(self):
        text = serialize_collection("notes", [{"id": 1, "title": "日本"}])
        self.assertIn("日本", text)
        self.assertEqual(deserialize_collection("notes", text), [{"id": 1, "title": "日本"}])
        for bad in ('{"id": 1}', "[1]", '[{"id": true}]', '[{"id": 1}, {"id": 1}]', "not json", "[NaN"):
            with self.subTest(bad=bad):
                with self.assertRaises(SerializationError):
                    deserialize_collection("notes", bad)
        with self.assertRaises(SerializationError):
            serialize_collection("notes", [{"id": 1, "v": float("nan")}])


@unittest.skipUnless(_HAS_CRYPTODOME, "PyCryptodomex required")
class DirectoryBackupTests(unittest.TestCase):
    def test_directory_stores_roundtrip(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            src_records = JsonRecordStore(str(root / "src" / "records"))
            src_blobs = DirectoryBlobStore(str(root / "src" / "blobs"))
            (root / "src" / "blobs").mkdir(parents=True)
            (root / "src" / "blobs" / "report.txt").write_bytes(b"quarterly numbers\n" * 1000)
            src_records.replace_all("notes", [{"id": 1, "title": "t", "content": "c", "timestamp": 1}])
            src_records.replace_all(
                "file_items",
                [{"id": 1, "original_file_name": "report.txt", "mime_type": "text/plain", "file_size": 18000}],
            )
            buf = io.BytesIO()
            self.assertTrue(export_backup(buf, "pw", src_records, src_blobs))

            dst_records = JsonRecordStore(str(root / "dst" / "records"))
            dst_blobs = DirectoryBlobStore(str(root / "dst" / "blobs"))
            res = import_backup(io.BytesIO(buf.getvalue()), "pw", dst_records, dst_blobs)
            self.assertTrue(res, res.message)
            self.assertEqual(dst_blobs.names(), ["report.txt"])
            self.assertEqual(
                (root / "dst" / "blobs" / "report.txt").read_bytes(),
                (root / "src" / "blobs" / "report.txt").read_bytes(),
            )
            for spec in DEFAULT_LAYOUT:
                self.assertEqual(dst_records.snapshot(spec.name), src_records.snapshot(spec.name))

    def test_reserved_blob_name_is_skipped_on_restore(self):
        layout = (CollectionSpec("file_items", "original_file_name"),)
        records = MemoryRecordStore(
            {"file_items": [{"id": 1, "original_file_name": "a.bin.partial"}, {"id": 2, "original_file_name": "b.bin"}]}
        )
        blobs = MemoryBlobStore({"a.bin.partial": b"reserved", "b.bin": b"fine"})
        buf = io.BytesIO()
        self.assertTrue(export_backup(buf, "pw", records, blobs, layout=layout))
        with tempfile.TemporaryDirectory() as tmp:
            dst_blobs = DirectoryBlobStore(tmp)
            res = import_backup(io.BytesIO(buf.getvalue()), "pw", MemoryRecordStore(), dst_blobs, layout=layout)
            self.assertTrue(res, res.message)
            self.assertEqual(dst_blobs.names(), ["b.bin"])
            self.assertEqual([p.name for p in Path(tmp).iterdir()], ["b.bin"])
            self.assertIn("a.bin.partial", [w.name for w in res.warnings if isinstance(w, BlobRestoreWarning)])

    def test_failed_import_leaves_no_partial_files(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            blobs = MemoryBlobStore({"a.bin": b"a" * 5000})
            records = MemoryRecordStore({"file_items": [{"id": 1, "original_file_name": "a.bin"}]})
            buf = io.BytesIO()
            self.assertTrue(export_backup(buf, "pw", records, blobs, layout=(CollectionSpec("file_items", "original_file_name"),)))
            data = bytearray(buf.getvalue())
            data[-1] ^= 0x01
            dst_blobs = DirectoryBlobStore(str(root / "blobs"))
            res = import_backup(
                io.BytesIO(bytes(data)), "pw", MemoryRecordStore(), dst_blobs,
                layout=(CollectionSpec("file_items", "original_file_name"),),
            )
            self.assertFalse(res)
            self.assertEqual(list((root / "blobs").iterdir()) if (root / "blobs").exists() else [], [])


if __name__ == "__main__":
    unittest.main()
