from __future__ import annotations

"""Backup export: snapshot records, archive them with blobs, encrypt, write."""

import logging
import os
from typing import Optional, Sequence

from .constants import NONCE_SIZE, TAG_SIZE
from .errors import (
    BlobMissingWarning,
    CapsuleError,
    ExportIOError,
    KeyDerivationError,
    SerializationError,
)
from .kdf import BackupKey, derive_key
from .models import (
    DEFAULT_LAYOUT,
    BackupResult,
    CollectionSpec,
    ProgressCallback,
    collect_blob_references,
    validate_layout,
)
from .oputil import PathOrStream, check_cancel, fail, is_path, open_target, report
from .serialization import serialize_collection
from .stores import BlobSource, RecordSource
from .stream import open_encrypting_sink
from .writer import begin_archive


logger = logging.getLogger(__name__)


def export_backup(
    destination: PathOrStream,
    password: str,
    records: RecordSource,
    blobs: BlobSource,
    on_progress: Optional[ProgressCallback] = None,
    *,
    layout: Sequence[CollectionSpec] = DEFAULT_LAYOUT,
    cancel=None,
) -> BackupResult:
    """Write an encrypted backup of ``records`` and ``blobs`` to ``destination``.

    Args:
        destination: Output path, or a writable binary stream. Paths are
            created, closed, and removed again if the export fails; streams
            are flushed and left open for their owner.
        password: Backup password; the key is derived with PBKDF2.
        records: Source of record collection snapshots.
        blobs: Source of blob content, looked up by the name stored in each
            record's ``blob_field``.
        on_progress: Called as ``on_progress(percent, message)`` from the
            calling thread; ``-1`` signals failure.
        layout: Collections to export, in archive order.
        cancel: Optional object with ``is_set()``, checked between entries.

    Returns:
        A BackupResult. Errors are reported through it, never raised. A
        failed result means the output must be discarded.

    Raises:
        ValueError: If ``layout`` is invalid.
    """
    layout = validate_layout(layout)
    result = BackupResult(success=False)
    key: Optional[BackupKey] = None
    out = None
    owned = False
    try:
        try:
            key = derive_key(password)
        except ValueError as exc:
            raise KeyDerivationError(str(exc)) from exc

        check_cancel(cancel, "Export")
        try:
            out, owned = open_target(destination, "wb")
        except OSError as exc:
            raise ExportIOError(f"Cannot open destination: {exc}") from exc

        logger.info("Starting backup export (%d collection(s))", len(layout))
        _, sink = open_encrypting_sink(out, key)
        writer = begin_archive(sink)

        snapshots = {}
        for i, spec in enumerate(layout):
            check_cancel(cancel, "Export")
            try:
                snapshot = list(records.snapshot(spec.name))
            except ValueError as exc:
                raise SerializationError(f"Cannot snapshot {spec.name}: {exc}") from exc
            text = serialize_collection(spec.name, snapshot)
            writer.write_record_collection(spec.entry_name, text, record_count=len(snapshot))
            snapshots[spec.name] = snapshot
            result.collections[spec.name] = len(snapshot)
            logger.debug("Exported %s: %d record(s)", spec.name, len(snapshot))
            report(on_progress, (i + 1) * 50 // len(layout), f"Saving {spec.name}...")

        refs, ref_warnings = collect_blob_references(layout, snapshots)
        for w in ref_warnings:
            logger.warning("Skipping blob: %s", w)
        result.warnings.extend(ref_warnings)

        for j, ref in enumerate(refs):
            check_cancel(cancel, "Export")
            try:
                src = blobs.open_blob(ref.name)
            except (OSError, ValueError) as exc:
                logger.warning("Cannot open blob %s for %s#%s: %s", ref.name, ref.collection, ref.record_id, exc)
                result.warnings.append(BlobMissingWarning(ref.name, str(exc)))
                src = None
            else:
                if src is None:
                    logger.warning("Blob not found for %s#%s: %s", ref.collection, ref.record_id, ref.name)
                    result.warnings.append(BlobMissingWarning(ref.name, "not found"))
            if src is not None:
                with src:
                    copied = writer.write_blob(ref.entry_name, src)
                result.blobs.append(ref.name)
                logger.debug("Exported blob %s (%d bytes)", ref.name, copied)
            report(on_progress, 50 + (j + 1) * 49 // len(refs), f"Saving file: {ref.name}")

        writer.close()
        sink.close()
        if owned:
            out.close()
        else:
            out.flush()
        result.bytes_written = NONCE_SIZE + sink.bytes_written + TAG_SIZE
        result.success = True
        result.message = "Backup complete."
        logger.info(
            "Backup export complete: %d blob(s), %d warning(s), %d bytes",
            len(result.blobs),
            len(result.warnings),
            result.bytes_written,
        )
        report(on_progress, 100, result.message)
        return result
    except CapsuleError as exc:
        return fail(result, exc, on_progress, logger, "Export")
    except OSError as exc:
        return fail(result, ExportIOError(str(exc)), on_progress, logger, "Export")
    finally:
        if key is not None:
            key.wipe()
        if owned and out is not None:
            if not out.closed:
                out.close()
            if not result.success and is_path(destination):
                try:
                    os.unlink(destination)
                except OSError as exc:
                    logger.warning("Could not remove partial backup %r: %s", destination, exc)
