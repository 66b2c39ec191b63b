from __future__ import annotations

"""Password-based key derivation for backup archives.

The key is derived with PBKDF2-HMAC-SHA256 over a salt that is fixed for
the whole application, so the same password reproduces the same key at
import time without any salt being stored in the archive.
"""

try:  # pragma: no cover - availability depends on environment
    from Cryptodome.Hash import SHA256  # type: ignore
    from Cryptodome.Protocol.KDF import PBKDF2  # type: ignore
    _HAS_CRYPTODOME = True
except ImportError:  # pragma: no cover - reported as KeyDerivationError on use
    SHA256 = None  # type: ignore
    PBKDF2 = None  # type: ignore
    _HAS_CRYPTODOME = False

from .constants import KDF_ITERATIONS, KDF_SALT, KEY_SIZE
from .errors import KeyDerivationError


class BackupKey:
    """Symmetric key scoped to a single export or import.

    The bytes live in a ``bytearray`` so they can be zeroed by ``wipe()``.
    Copies made by the interpreter or the crypto backend are out of reach;
    wiping is best-effort.
    """

    __slots__ = ("_buf", "_wiped")

    def __init__(self, material: bytes):
        if len(material) != KEY_SIZE:
            raise ValueError(f"Key must be {KEY_SIZE} bytes")
        self._buf = bytearray(material)
        self._wiped = False

    @property
    def material(self) -> bytearray:
        if self._wiped:
            raise ValueError("Key has been wiped")
        return self._buf

    @property
    def wiped(self) -> bool:
        return self._wiped

    def wipe(self) -> None:
        for i in range(len(self._buf)):
            self._buf[i] = 0
        self._wiped = True

    def __len__(self) -> int:
        return len(self._buf)

    def __enter__(self) -> "BackupKey":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.wipe()

    def __repr__(self) -> str:
        state = "wiped" if self._wiped else "live"
        return f"<BackupKey {len(self._buf) * 8}-bit {state}>"


def derive_key(password: str) -> BackupKey:
    """Derive the archive key for ``password``.

    Raises:
        ValueError: If ``password`` is empty.
        KeyDerivationError: If the KDF primitive is unavailable or fails.
    """
    if not password:
        raise ValueError("Password must not be empty")
    if not (_HAS_CRYPTODOME and PBKDF2 is not None and SHA256 is not None):
        raise KeyDerivationError("PyCryptodomex is required for key derivation")
    try:
        raw = PBKDF2(
            password.encode("utf-8"),
            KDF_SALT,
            dkLen=KEY_SIZE,
            count=KDF_ITERATIONS,
            hmac_hash_module=SHA256,
        )
    except (TypeError, ValueError) as exc:
        raise KeyDerivationError(f"PBKDF2 failed: {exc}") from exc
    return BackupKey(raw)
