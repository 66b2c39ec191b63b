from __future__ import annotations

import os
import json
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path
from typing import Dict

from capsule.constants import GENERIC_AUTH_MESSAGE
from capsule.kdf import _HAS_CRYPTODOME


def _random_bytes(size: int) -> bytes:
    return os.urandom(size)


def _build_fixture_stores(root: Path) -> Dict[str, bytes]:
    records = root / "records"
    blobs = root / "blobs"
    records.mkdir()
    blobs.mkdir()
    notes = [
        {"id": 1, "title": "Shopping", "content": "milk", "timestamp": 1700000000000},
        {"id": 2, "title": "Ideas", "content": "ünïcode ✓", "timestamp": 1700000000500},
    ]
    files = {"photo.jpg": _random_bytes(4096), "notes.txt": b"hello world\n" * 20, "empty.bin": b""}
    items = [
        {
            "id": i + 1,
            "original_file_name": name,
            "mime_type": "application/octet-stream",
            "encrypted_file_path": f"/data/files/{name}",
            "file_size": len(data),
            "timestamp": 1700000001000 + i,
        }
        for i, (name, data) in enumerate(files.items())
    ]
    (records / "notes.json").write_text(json.dumps(notes), encoding="utf-8")
    (records / "file_items.json").write_text(json.dumps(items), encoding="utf-8")
    for name, data in files.items():
        (blobs / name).write_bytes(data)
    return files


def _load(path: Path):
    return sorted(json.loads(path.read_text(encoding="utf-8")), key=lambda r: r["id"])


@unittest.skipUnless(_HAS_CRYPTODOME, "PyCryptodomex required")
class CLIIntegrationTests(unittest.TestCase):
    def run_cli(self, args, *, expect: int | None = 0, password: str | None = "correct horse"):
        cmd = [sys.executable, "-m", "capsule.cli"] + list(args)
        env = os.environ.copy()
        repo_root = Path(__file__).resolve().parent
        existing = env.get("PYTHONPATH", "")
        env["PYTHONPATH"] = str(repo_root) if not existing else f"{repo_root}{os.pathsep}{existing}"
        env.pop("CAPSULE_PASSWORD", None)
        if password is not None:
            env["CAPSULE_PASSWORD"] = password
        proc = subprocess.run(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            env=env,
        )
        if expect is not None and proc.returncode != expect:
            raise AssertionError(
                f"CLI exited {proc.returncode}, expected {expect}\nCommand: {' '.join(cmd)}\nSTDOUT:\n{proc.stdout}\nSTDERR:\n{proc.stderr}"
            )
        return proc

    def make_workspace(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        return Path(tmp.name)

    def test_export_verify_list_import_roundtrip(self):
        src = self.make_workspace()
        files = _build_fixture_stores(src)
        dst = self.make_workspace()
        archive = dst / "backup.capsule"

        export_proc = self.run_cli(["export", str(archive), "--records", str(src / "records"), "--blobs", str(src / "blobs")])
        self.assertTrue(archive.exists())
        self.assertIn("[100%]", export_proc.stdout)
        self.assertIn("Done:", export_proc.stdout)

        verify_proc = self.run_cli(["verify", str(archive)])
        self.assertIn("OK", verify_proc.stdout)

        list_proc = self.run_cli(["list", str(archive)])
        lines = list_proc.stdout.splitlines()
        self.assertEqual([line.split()[-1] for line in lines[:2]], ["notes.json", "file_items.json"])
        self.assertIn("files/photo.jpg", list_proc.stdout)
        self.assertIn("4096", list_proc.stdout)

        self.run_cli(["import", str(archive), "--records", str(dst / "records"), "--blobs", str(dst / "blobs"), "--quiet"])
        for name in ("notes.json", "file_items.json"):
            self.assertEqual(_load(dst / "records" / name), _load(src / "records" / name))
        for name, data in files.items():
            self.assertEqual((dst / "blobs" / name).read_bytes(), data)

    def test_wrong_password(self):
        src = self.make_workspace()
        _build_fixture_stores(src)
        dst = self.make_workspace()
        archive = dst / "backup.capsule"
        self.run_cli(["export", str(archive), "--records", str(src / "records"), "--blobs", str(src / "blobs"), "--quiet"])

        proc = self.run_cli(
            ["import", str(archive), "--records", str(dst / "records"), "--blobs", str(dst / "blobs")],
            expect=1,
            password="wrong",
        )
        self.assertIn(GENERIC_AUTH_MESSAGE, proc.stderr)
        self.assertFalse((dst / "records").exists())
        self.assertEqual(list((dst / "blobs").iterdir()) if (dst / "blobs").exists() else [], [])

        verify_proc = self.run_cli(["verify", str(archive)], expect=1, password="wrong")
        self.assertIn("FAIL", verify_proc.stdout)

    def test_corrupted_archive_fails_verify(self):
        src = self.make_workspace()
        _build_fixture_stores(src)
        archive = src / "backup.capsule"
        self.run_cli(["export", str(archive), "--records", str(src / "records"), "--blobs", str(src / "blobs"), "--quiet"])
        data = bytearray(archive.read_bytes())
        data[len(data) // 2] ^= 0xFF
        archive.write_bytes(bytes(data))
        proc = self.run_cli(["verify", str(archive)], expect=1)
        self.assertIn("FAIL", proc.stdout)

    def test_custom_collections(self):
        src = self.make_workspace()
        _build_fixture_stores(src)
        archive = src / "notes-only.capsule"
        self.run_cli(
            ["export", str(archive), "--records", str(src / "records"), "--blobs", str(src / "blobs"), "--collection", "notes", "--quiet"]
        )
        proc = self.run_cli(["list", str(archive), "--collection", "notes"])
        self.assertEqual([line.split()[-1] for line in proc.stdout.splitlines()], ["notes.json"])

    def test_usage_errors(self):
        ws = self.make_workspace()
        proc = self.run_cli(["verify", str(ws / "missing.capsule")], expect=2)
        self.assertIn("Error:", proc.stderr)
        self.run_cli(["export", str(ws / "x.capsule")], expect=2)
        self.run_cli(["list", str(ws / "missing.capsule"), "--collection", "bad/name"], expect=2)


if __name__ == "__main__":
    unittest.main()
