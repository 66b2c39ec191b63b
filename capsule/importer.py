from __future__ import annotations

"""Backup import: decrypt, walk the archive, then restore records and blobs.

Nothing becomes visible in the stores until the whole archive has been
authenticated. Blobs are streamed into staging sinks during the pass and
committed afterwards; record collections are buffered and written last.
"""

import logging
from typing import Dict, List, Optional, Sequence

from .constants import IO_BUFFER_SIZE
from .errors import (
    AuthenticationFailure,
    BlobMissingWarning,
    BlobRestoreWarning,
    CapsuleError,
    ImportIOError,
    KeyDerivationError,
    MalformedArchiveError,
    OrphanBlobWarning,
    SerializationError,
    UnknownEntryWarning,
)
from .kdf import BackupKey, derive_key
from .models import (
    DEFAULT_LAYOUT,
    BackupResult,
    CollectionSpec,
    ProgressCallback,
    blob_name_from_entry,
    collect_blob_references,
    collection_for_entry,
    validate_layout,
)
from .oputil import PathOrStream, check_cancel, fail, open_target, report
from .reader import ArchiveEntry, ArchiveReader
from .serialization import deserialize_collection
from .stores import BlobSink, RecordSink
from .stream import DecryptingSource, open_decrypting_source


logger = logging.getLogger(__name__)


class _ImportPass:
    """State of one forward pass over a decrypted archive."""

    def __init__(self, layout, blobs: Optional[BlobSink], result: BackupResult, on_progress, cancel):
        self.layout = layout
        self.blobs = blobs
        self.result = result
        self.on_progress = on_progress
        self.cancel = cancel
        self.pending: Dict[str, List[dict]] = {}
        self.staged: List[str] = []
        self.expected_blobs = 0

    def run(self, source: DecryptingSource) -> None:
        reader = ArchiveReader(source)
        for entry in reader:
            check_cancel(self.cancel, "Import")
            if entry.is_collection:
                self._load_collection(entry)
            else:
                self._restore_blob(entry)
            self.result.entries.append((entry.name, entry.kind_label, entry.length))
        if not source.verified:
            source.finish()

    def _load_collection(self, entry: ArchiveEntry) -> None:
        spec = collection_for_entry(self.layout, entry.name)
        if spec is None:
            logger.warning("Skipping unknown collection entry %s", entry.name)
            self.result.warnings.append(UnknownEntryWarning(entry.name, "collection not in layout"))
            entry.skip()
            return
        records = deserialize_collection(spec.name, entry.read_text())
        if entry.record_count is not None and entry.record_count != len(records):
            raise MalformedArchiveError(
                f"{entry.name} declares {entry.record_count} record(s) but holds {len(records)}"
            )
        self.pending[spec.name] = records
        logger.debug("Loaded %s: %d record(s)", spec.name, len(records))
        loaded = len(self.pending)
        report(self.on_progress, loaded * 25 // len(self.layout), f"Loading {spec.name}...")
        refs, _ = collect_blob_references(self.layout, self.pending)
        self.expected_blobs = len(refs)

    def _restore_blob(self, entry: ArchiveEntry) -> None:
        name = blob_name_from_entry(entry.name)
        if name is None or self.blobs is None:
            if name is None:
                logger.warning("Skipping unknown blob entry %s", entry.name)
                self.result.warnings.append(UnknownEntryWarning(entry.name, "not a blob entry name"))
            entry.skip()
            return
        try:
            fh = self.blobs.open_sink(name)
        except (OSError, ValueError) as exc:
            self._blob_failed(name, exc)
            entry.skip()
            return
        self.staged.append(name)
        if not self._copy_blob(entry, name, fh):
            self.staged.remove(name)
            self.blobs.discard(name)
            return
        self.result.blobs.append(name)
        logger.debug("Staged blob %s", name)
        done = len(self.result.blobs)
        expected = max(self.expected_blobs, done)
        report(self.on_progress, 25 + done * 25 // expected, f"Restoring file: {name}")

    def _copy_blob(self, entry: ArchiveEntry, name: str, fh) -> bool:
        """Drain ``entry`` into ``fh``; a write or close failure only costs this blob."""
        ok = True
        try:
            while True:
                piece = entry.read(IO_BUFFER_SIZE)
                if not piece:
                    break
                if not ok:
                    continue
                try:
                    fh.write(piece)
                except OSError as exc:
                    ok = False
                    self._blob_failed(name, exc)
        finally:
            try:
                fh.close()
            except OSError as exc:
                if ok:
                    self._blob_failed(name, exc)
                ok = False
        return ok

    def _blob_failed(self, name: str, exc: Exception) -> None:
        logger.warning("Could not restore blob %s: %s", name, exc)
        self.result.warnings.append(BlobRestoreWarning(name, str(exc)))


def _run_pass(source: DecryptingSource, state: _ImportPass) -> None:
    try:
        state.run(source)
    except (MalformedArchiveError, SerializationError):
        # A wrong password decrypts to garbage that fails structurally long
        # before the tag is reached; the tag decides which error to report.
        try:
            source.finish()
        except AuthenticationFailure:
            raise AuthenticationFailure("Archive failed authentication") from None
        raise


def _open_source(source: PathOrStream):
    try:
        raw, owned = open_target(source, "rb")
    except OSError as exc:
        raise ImportIOError(f"Cannot open source: {exc}") from exc
    return raw, owned


def import_backup(
    source: PathOrStream,
    password: str,
    records: RecordSink,
    blobs: BlobSink,
    on_progress: Optional[ProgressCallback] = None,
    *,
    layout: Sequence[CollectionSpec] = DEFAULT_LAYOUT,
    cancel=None,
) -> BackupResult:
    """Restore a backup produced by ``export_backup``.

    Records are upserted by id (existing ids are overwritten, nothing is
    deleted). A blob that cannot be written is skipped with a warning. On
    any fatal error the record store is left untouched and staged blobs are
    discarded.

    Raises:
        ValueError: If ``layout`` is invalid.
    """
    layout = validate_layout(layout)
    result = BackupResult(success=False)
    key: Optional[BackupKey] = None
    raw = None
    owned = False
    state = _ImportPass(layout, blobs, result, on_progress, cancel)
    committed = set()
    try:
        try:
            key = derive_key(password)
        except ValueError as exc:
            raise KeyDerivationError(str(exc)) from exc

        check_cancel(cancel, "Import")
        raw, owned = _open_source(source)
        logger.info("Starting backup import")
        dec = open_decrypting_source(raw, key)
        _run_pass(dec, state)
        report(on_progress, 50, "Files restored.")

        for name in state.staged:
            try:
                blobs.commit(name)
                committed.add(name)
            except OSError as exc:
                state._blob_failed(name, exc)
                result.blobs.remove(name)

        for i, spec in enumerate(layout):
            recs = state.pending.get(spec.name)
            if recs:
                try:
                    records.replace_all(spec.name, recs)
                except ValueError as exc:
                    raise SerializationError(f"Cannot restore {spec.name}: {exc}") from exc
                logger.debug("Restored %s: %d record(s)", spec.name, len(recs))
            result.collections[spec.name] = len(recs or ())
            report(on_progress, 50 + (i + 1) * 40 // len(layout), f"Restoring {spec.name} into the database...")

        _check_references(layout, state.pending, result)
        result.success = True
        result.message = "Restore complete."
        logger.info(
            "Backup import complete: %d collection(s), %d blob(s), %d warning(s)",
            len(state.pending),
            len(result.blobs),
            len(result.warnings),
        )
        report(on_progress, 100, result.message)
        return result
    except CapsuleError as exc:
        return fail(result, exc, on_progress, logger, "Import")
    except OSError as exc:
        return fail(result, ImportIOError(str(exc)), on_progress, logger, "Import")
    finally:
        for name in state.staged:
            if name not in committed:
                try:
                    blobs.discard(name)
                except OSError as exc:
                    logger.warning("Could not discard staged blob %s: %s", name, exc)
        if key is not None:
            key.wipe()
        if owned and raw is not None:
            raw.close()


def _check_references(layout, pending: Dict[str, List[dict]], result: BackupResult) -> None:
    """Advisory cross-check between restored records and restored blobs."""
    refs, _ = collect_blob_references(layout, pending)
    referenced = {r.name for r in refs}
    restored = set(result.blobs)
    for name in sorted(restored - referenced):
        logger.warning("Restored blob %s is not referenced by any record", name)
        result.warnings.append(OrphanBlobWarning(name))
    for ref in refs:
        if ref.name not in restored and not any(w.name == ref.name for w in result.warnings):
            logger.warning("No blob in backup for %s#%s: %s", ref.collection, ref.record_id, ref.name)
            result.warnings.append(BlobMissingWarning(ref.name, "not in backup"))


def verify_backup(
    source: PathOrStream,
    password: str,
    on_progress: Optional[ProgressCallback] = None,
    *,
    layout: Sequence[CollectionSpec] = DEFAULT_LAYOUT,
) -> BackupResult:
    """Decrypt and parse a whole backup without touching any store.

    ``result.entries`` lists ``(name, kind, size)`` for every entry and
    ``result.collections`` the record count of each known collection.
    """
    layout = validate_layout(layout)
    result = BackupResult(success=False)
    key: Optional[BackupKey] = None
    raw = None
    owned = False
    state = _ImportPass(layout, None, result, on_progress, None)
    try:
        try:
            key = derive_key(password)
        except ValueError as exc:
            raise KeyDerivationError(str(exc)) from exc
        raw, owned = _open_source(source)
        dec = open_decrypting_source(raw, key)
        _run_pass(dec, state)
        for name, recs in state.pending.items():
            result.collections[name] = len(recs)
        result.blobs = [blob_name_from_entry(n) or n for n, kind, _ in result.entries if kind == "blob"]
        result.success = True
        result.message = "Backup is intact."
        report(on_progress, 100, result.message)
        return result
    except CapsuleError as exc:
        return fail(result, exc, on_progress, logger, "Verify")
    except OSError as exc:
        return fail(result, ImportIOError(str(exc)), on_progress, logger, "Verify")
    finally:
        if key is not None:
            key.wipe()
        if owned and raw is not None:
            raw.close()
