from __future__ import annotations

import logging
import os
from typing import BinaryIO, Optional, Tuple, Union

from .errors import BackupCancelled, CapsuleError
from .models import BackupResult, ProgressCallback


PathOrStream = Union[str, bytes, "os.PathLike[str]", BinaryIO]


def is_path(target: PathOrStream) -> bool:
    return isinstance(target, (str, bytes, os.PathLike))


def open_target(target: PathOrStream, mode: str) -> Tuple[BinaryIO, bool]:
    """Return (stream, owned). Paths are opened here and owned by the caller."""
    if is_path(target):
        return open(target, mode), True
    return target, False  # type: ignore[return-value]


def report(on_progress: Optional[ProgressCallback], percent: int, message: str) -> None:
    if on_progress is not None:
        on_progress(percent, message)


def check_cancel(cancel, what: str) -> None:
    if cancel is not None and cancel.is_set():
        raise BackupCancelled(f"{what} cancelled")


def fail(
    result: BackupResult,
    exc: CapsuleError,
    on_progress: Optional[ProgressCallback],
    logger: logging.Logger,
    what: str,
) -> BackupResult:
    """Record ``exc`` on ``result`` and emit the final -1 progress call.

    The log line carries the detailed reason; the callback and the result
    message only carry the user-facing text.
    """
    result.success = False
    result.error = exc
    result.message = exc.user_message
    logger.error("%s failed: %s: %s", what, type(exc).__name__, exc)
    report(on_progress, -1, exc.user_message)
    return result
