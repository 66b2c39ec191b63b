"""
Capsule: password-protected backup and restore for an application's records and files.

Features:

- One self-contained file: a random 12-byte nonce, then an AES-256-GCM stream
  whose tag covers the whole archive.
- PBKDF2-HMAC-SHA256 key derivation from the user's password.
- Framed entry container (EntryBegin/Chunk/EntryEnd) with per-record CRC32C
  and per-entry BLAKE2s digests; record collections first, then blobs.
- Import stages everything until the tag verifies, so a wrong password or a
  corrupted file never leaves partial data behind.

Streams are processed in fixed-size pieces; memory use does not grow with
blob size.
"""

__version__ = "0.1"

__all__ = [
    "export_backup",
    "import_backup",
    "verify_backup",
    "BackupResult",
    "CollectionSpec",
    "DEFAULT_LAYOUT",
]

from .exporter import export_backup
from .importer import import_backup, verify_backup
from .models import DEFAULT_LAYOUT, BackupResult, CollectionSpec
