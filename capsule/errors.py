from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .constants import GENERIC_AUTH_MESSAGE


class CapsuleError(Exception):
    """Base class for Capsule-specific errors."""

    user_message = "Backup operation failed."


# Fatal before any I/O
class KeyDerivationError(CapsuleError):
    user_message = "Unable to derive the backup key."


# I/O on the destination/source or on a single blob
class BackupIOError(CapsuleError):
    pass


class ExportIOError(BackupIOError):
    user_message = "I/O error while writing the backup."


class ImportIOError(BackupIOError):
    user_message = "I/O error while reading the backup."


# Cryptographic failures. Both share one message so callers cannot tell a
# wrong password from damaged data.
class AuthenticationFailure(CapsuleError):
    user_message = GENERIC_AUTH_MESSAGE


class TruncatedHeaderError(CapsuleError):
    user_message = GENERIC_AUTH_MESSAGE


# Structure
class MalformedArchiveError(CapsuleError):
    user_message = "The backup archive is malformed."


class ArchiveOrderError(MalformedArchiveError):
    pass


class SerializationError(CapsuleError):
    user_message = "Unable to serialize or parse backup records."


class BackupCancelled(CapsuleError):
    user_message = "Backup operation cancelled."


@dataclass(frozen=True)
class CapsuleWarning:
    """Non-fatal, per-entry condition collected in a result; never raised."""

    name: str
    detail: Optional[str] = None

    def __str__(self) -> str:
        label = type(self).__name__
        if self.detail:
            return f"{label}: {self.name} ({self.detail})"
        return f"{label}: {self.name}"


class BlobMissingWarning(CapsuleWarning):
    pass


class BlobRestoreWarning(CapsuleWarning):
    pass


class OrphanBlobWarning(CapsuleWarning):
    pass


class UnknownEntryWarning(CapsuleWarning):
    pass
