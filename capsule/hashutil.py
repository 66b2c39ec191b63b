from __future__ import annotations

import hashlib


DIGEST_SIZE = 32


def new_content_hasher():
    """Hasher used for the per-entry content digest stored in ENTRY_END."""
    return hashlib.blake2s(digest_size=DIGEST_SIZE, person=b"CPSLENT\x00")
