from __future__ import annotations

"""Streaming AES-256-GCM wrapper around raw byte streams.

Wire layout: ``nonce[12] || ciphertext || tag[16]``. The nonce is written in
clear before any ciphertext; the tag is appended when the encrypting sink is
closed. The decrypting side holds back the last 16 bytes it has seen as the
candidate tag and only verifies it once the raw input is exhausted, so
plaintext handed out before that point is unauthenticated until ``read``
returns ``b""`` (or ``finish`` returns).
"""

import os
from typing import BinaryIO, Optional, Tuple

try:  # pragma: no cover - optional dependency at runtime
    from Cryptodome.Cipher import AES  # type: ignore
    _HAS_CRYPTODOME = True
except ImportError:  # pragma: no cover - reported on use
    AES = None  # type: ignore
    _HAS_CRYPTODOME = False

from .constants import IO_BUFFER_SIZE, NONCE_SIZE, TAG_SIZE
from .errors import AuthenticationFailure, KeyDerivationError, TruncatedHeaderError
from .kdf import BackupKey


def _ensure_backend() -> None:
    if not _HAS_CRYPTODOME:
        raise KeyDerivationError("PyCryptodomex is required for AES-GCM support")


def _new_gcm(key: BackupKey, nonce: bytes):
    _ensure_backend()
    if len(nonce) != NONCE_SIZE:
        raise ValueError(f"Nonce must be {NONCE_SIZE} bytes for AES-GCM")
    return AES.new(key.material, AES.MODE_GCM, nonce=nonce, mac_len=TAG_SIZE)


class EncryptingSink:
    """Write-only stream that encrypts into ``raw`` and appends the tag on close.

    Closing the sink does not close ``raw``; its owner does that.
    """

    def __init__(self, raw: BinaryIO, key: BackupKey, nonce: bytes):
        self._raw = raw
        self._cipher = _new_gcm(key, nonce)
        self._closed = False
        self.bytes_written = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        if self._closed:
            raise ValueError("write to closed EncryptingSink")
        n = len(data)
        if n:
            self._raw.write(self._cipher.encrypt(data))
            self.bytes_written += n
        return n

    def flush(self) -> None:
        if not self._closed:
            self._raw.flush()

    def close(self) -> None:
        """Finalize the GCM computation and write the 16-byte tag."""
        if self._closed:
            return
        self._closed = True
        self._raw.write(self._cipher.digest())
        self._raw.flush()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        # Leave the stream without a tag when the body failed; the output is
        # unusable either way and a missing tag makes that explicit.
        if exc_type is None:
            self.close()
        else:
            self._closed = True


class DecryptingSource:
    """Forward-only readable stream over the decrypted plaintext."""

    def __init__(self, raw: BinaryIO, key: BackupKey, nonce: bytes):
        self._raw = raw
        self._cipher = _new_gcm(key, nonce)
        self._pending = bytearray()  # ciphertext not yet decrypted (holds the tag candidate)
        self._plain = bytearray()
        self._eof = False
        self._verified = False
        self._failure: Optional[AuthenticationFailure] = None
        self.bytes_read = 0

    @property
    def verified(self) -> bool:
        return self._verified

    def readable(self) -> bool:
        return True

    def _fill(self) -> None:
        chunk = self._raw.read(IO_BUFFER_SIZE)
        if not chunk:
            self._finalize()
            return
        self._pending += chunk
        if len(self._pending) > TAG_SIZE:
            n = len(self._pending) - TAG_SIZE
            self._plain += self._cipher.decrypt(bytes(self._pending[:n]))
            del self._pending[:n]

    def _finalize(self) -> None:
        self._eof = True
        if len(self._pending) != TAG_SIZE:
            self._failure = AuthenticationFailure("Ciphertext ends before the authentication tag")
            raise self._failure
        try:
            self._cipher.verify(bytes(self._pending))
        except ValueError:
            self._failure = AuthenticationFailure("GCM tag verification failed")
            raise self._failure from None
        self._verified = True

    def read(self, n: int = -1) -> bytes:
        """Return up to ``n`` plaintext bytes; ``b""`` only after the tag verified."""
        if self._failure is not None:
            raise self._failure
        if n is None or n < 0:
            while not self._eof:
                self._fill()
            n = len(self._plain)
        else:
            while len(self._plain) < n and not self._eof:
                self._fill()
        out = bytes(self._plain[:n])
        del self._plain[:n]
        self.bytes_read += len(out)
        return out

    def finish(self) -> int:
        """Discard any remaining plaintext and verify the tag.

        Returns the number of plaintext bytes discarded.

        Raises:
            AuthenticationFailure: If the tag does not verify.
        """
        if self._failure is not None:
            raise self._failure
        discarded = len(self._plain)
        self._plain.clear()
        while not self._eof:
            self._fill()
            discarded += len(self._plain)
            self._plain.clear()
        return discarded

    def close(self) -> None:
        """Drop buffered plaintext; the raw stream belongs to the caller."""
        self._plain.clear()
        self._pending.clear()


def open_encrypting_sink(raw_output: BinaryIO, key: BackupKey) -> Tuple[bytes, EncryptingSink]:
    """Write a fresh random nonce to ``raw_output`` and return (nonce, sink)."""
    _ensure_backend()
    nonce = os.urandom(NONCE_SIZE)
    raw_output.write(nonce)
    return nonce, EncryptingSink(raw_output, key, nonce)


def read_nonce(raw_input: BinaryIO) -> bytes:
    buf = bytearray()
    while len(buf) < NONCE_SIZE:
        b = raw_input.read(NONCE_SIZE - len(buf))
        if not b:
            raise TruncatedHeaderError(f"Expected a {NONCE_SIZE}-byte nonce, got {len(buf)} bytes")
        buf += b
    return bytes(buf)


def open_decrypting_source(raw_input: BinaryIO, key: BackupKey) -> DecryptingSource:
    """Consume the nonce from ``raw_input`` and return the decrypting source."""
    _ensure_backend()
    nonce = read_nonce(raw_input)
    return DecryptingSource(raw_input, key, nonce)
