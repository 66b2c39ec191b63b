from __future__ import annotations

"""Background execution of backup jobs.

Exports and imports against the same stores must not overlap, so the worker
runs them one at a time on a single thread. Progress callbacks run on that
thread; callers marshal them to their own thread if they need to.
"""

import concurrent.futures as _fut
import logging
import threading

from .exporter import export_backup
from .importer import import_backup
from .oputil import PathOrStream


logger = logging.getLogger(__name__)


class BackupWorker:
    """Serializes export/import jobs on one background thread.

    Example::

        with BackupWorker() as worker:
            fut = worker.submit_export("notes.capsule", pw, records, blobs)
            result = fut.result()
    """

    def __init__(self):
        self._executor = _fut.ThreadPoolExecutor(max_workers=1, thread_name_prefix="capsule-backup")
        self._lock = threading.Lock()
        self._closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown(wait=True)

    def _submit(self, fn, *args, **kwargs) -> "_fut.Future":
        with self._lock:
            if self._closed:
                raise RuntimeError("BackupWorker is shut down")
            return self._executor.submit(fn, *args, **kwargs)

    def submit_export(
        self,
        destination: PathOrStream,
        password: str,
        records,
        blobs,
        on_progress=None,
        **kwargs,
    ) -> "_fut.Future":
        """Queue ``export_backup``; the Future resolves to its BackupResult."""
        logger.debug("Queueing export")
        return self._submit(export_backup, destination, password, records, blobs, on_progress, **kwargs)

    def submit_import(
        self,
        source: PathOrStream,
        password: str,
        records,
        blobs,
        on_progress=None,
        **kwargs,
    ) -> "_fut.Future":
        """Queue ``import_backup``; the Future resolves to its BackupResult."""
        logger.debug("Queueing import")
        return self._submit(import_backup, source, password, records, blobs, on_progress, **kwargs)

    def shutdown(self, wait: bool = True, cancel_pending: bool = False) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=cancel_pending)
