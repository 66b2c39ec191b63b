from __future__ import annotations

import os
import sys
import time
import argparse
import logging
import threading
import getpass as _getpass

from typing import List, Optional, Sequence

from capsule.errors import CapsuleError
from capsule.importer import verify_backup
from capsule.models import DEFAULT_LAYOUT, BackupResult, CollectionSpec, validate_layout
from capsule.stores import DirectoryBlobStore, JsonRecordStore
from capsule.worker import BackupWorker


PASSWORD_ENV = "CAPSULE_PASSWORD"


def _resolve_password(password: Optional[str], *, confirm: bool = False) -> str:
    """Return the password from the flag, the environment, or an interactive prompt."""
    if password:
        return password
    env = os.environ.get(PASSWORD_ENV)
    if env:
        return env
    pw = _getpass.getpass("Backup password: ")
    if confirm and _getpass.getpass("Repeat password: ") != pw:
        raise ValueError("Passwords do not match")
    return pw


def _parse_layout(items: Optional[Sequence[str]]):
    """Turn repeated ``NAME[:BLOB_FIELD]`` flags into a validated layout."""
    if not items:
        return DEFAULT_LAYOUT
    specs = []
    for item in items:
        name, _, field_name = item.partition(":")
        specs.append(CollectionSpec(name, field_name or None))
    return validate_layout(specs)


def _progress_printer(quiet: bool):
    if quiet:
        return None

    def _print(percent: int, message: str) -> None:
        if percent < 0:
            return
        print(f"[{percent:3d}%] {message}", flush=True)

    return _print


def _report(result: BackupResult) -> bool:
    for w in result.warnings:
        print(f"Warning: {w}", file=sys.stderr)
    if not result.success:
        print(f"Error: {result.message}", file=sys.stderr)
        return False
    return True


def _run_job(submit, *, what: str) -> BackupResult:
    """Run a queued job on the worker; Ctrl-C requests cooperative cancellation."""
    cancel = threading.Event()
    with BackupWorker() as worker:
        fut = submit(worker, cancel)
        try:
            return fut.result()
        except KeyboardInterrupt:
            print(f"\nCancelling {what}...", file=sys.stderr)
            cancel.set()
            return fut.result()


def cmd_export(
    output: str,
    *,
    records_dir: str,
    blobs_dir: str,
    password: Optional[str] = None,
    layout=DEFAULT_LAYOUT,
    quiet: bool = False,
) -> bool:
    """Export a record directory and a blob directory into an encrypted backup.

    Args:
        output: Path of the backup file to create.
        records_dir: Directory holding one ``<collection>.json`` per collection.
        blobs_dir: Directory holding the referenced blob files.
        password: Backup password; see ``_resolve_password``.
        layout: Collections to export.
        quiet: Suppress progress lines.
    """
    pw = _resolve_password(password, confirm=True)
    records = JsonRecordStore(records_dir)
    blobs = DirectoryBlobStore(blobs_dir)
    t0 = time.time()
    result = _run_job(
        lambda w, cancel: w.submit_export(
            output, pw, records, blobs, _progress_printer(quiet), layout=layout, cancel=cancel
        ),
        what="export",
    )
    if not _report(result):
        return False
    dt = max(1e-6, time.time() - t0)
    counts = ", ".join(f"{k}={v}" for k, v in result.collections.items())
    print(f"Done: {counts}; files={len(result.blobs)}; {result.bytes_written} bytes in {dt:.1f}s")
    return True


def cmd_import(
    archive: str,
    *,
    records_dir: str,
    blobs_dir: str,
    password: Optional[str] = None,
    layout=DEFAULT_LAYOUT,
    quiet: bool = False,
) -> bool:
    """Restore a backup into a record directory and a blob directory."""
    if not os.path.exists(archive):
        raise FileNotFoundError(f"No such backup: {archive}")
    pw = _resolve_password(password)
    records = JsonRecordStore(records_dir)
    blobs = DirectoryBlobStore(blobs_dir)
    result = _run_job(
        lambda w, cancel: w.submit_import(
            archive, pw, records, blobs, _progress_printer(quiet), layout=layout, cancel=cancel
        ),
        what="import",
    )
    if not _report(result):
        return False
    counts = ", ".join(f"{k}={v}" for k, v in result.collections.items())
    print(f"Done: {counts}; files={len(result.blobs)}; warnings={len(result.warnings)}")
    return True


def cmd_verify(archive: str, *, password: Optional[str] = None, layout=DEFAULT_LAYOUT) -> bool:
    """Decrypt and check a whole backup.

    Prints:
        "OK" on success, "FAIL" otherwise.
    """
    if not os.path.exists(archive):
        raise FileNotFoundError(f"No such backup: {archive}")
    result = verify_backup(archive, _resolve_password(password), layout=layout)
    _report(result)
    print("OK" if result.success else "FAIL")
    return result.success


def cmd_list(archive: str, *, password: Optional[str] = None, layout=DEFAULT_LAYOUT) -> bool:
    """Print every entry of a backup as ``kind size name``."""
    if not os.path.exists(archive):
        raise FileNotFoundError(f"No such backup: {archive}")
    result = verify_backup(archive, _resolve_password(password), layout=layout)
    if not _report(result):
        return False
    for name, kind, size in result.entries:
        print(f"{kind:10s} {size:>12d}  {name}")
    return True


def main(argv: List[str] | None = None):
    ap = argparse.ArgumentParser(
        prog="capsule",
        description="Capsule encrypted backup tool",
        epilog=(
            f"The password is taken from --password, then ${PASSWORD_ENV}, then an interactive prompt."
        ),
    )
    ap.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = ap.add_subparsers(dest="cmd", required=True)

    def _common(p, *, stores: bool):
        p.add_argument("--password", help="Backup password")
        p.add_argument(
            "--collection",
            action="append",
            metavar="NAME[:BLOB_FIELD]",
            help="Collection to include, in order (repeatable; default: notes, file_items:original_file_name)",
        )
        if stores:
            p.add_argument("--records", required=True, help="Directory of <collection>.json record files")
            p.add_argument("--blobs", required=True, help="Directory of blob files")
            p.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    ap_export = sub.add_parser("export", help="Create an encrypted backup")
    ap_export.add_argument("output", help="Output backup path")
    _common(ap_export, stores=True)

    ap_import = sub.add_parser("import", help="Restore an encrypted backup")
    ap_import.add_argument("archive", help="Backup path")
    _common(ap_import, stores=True)

    ap_verify = sub.add_parser("verify", help="Verify backup integrity")
    ap_verify.add_argument("archive", help="Backup path")
    _common(ap_verify, stores=False)

    ap_list = sub.add_parser("list", help="List backup contents")
    ap_list.add_argument("archive", help="Backup path")
    _common(ap_list, stores=False)

    args = ap.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        layout = _parse_layout(args.collection)
        if args.cmd == "export":
            success = cmd_export(
                args.output,
                records_dir=args.records,
                blobs_dir=args.blobs,
                password=args.password,
                layout=layout,
                quiet=args.quiet,
            )
        elif args.cmd == "import":
            success = cmd_import(
                args.archive,
                records_dir=args.records,
                blobs_dir=args.blobs,
                password=args.password,
                layout=layout,
                quiet=args.quiet,
            )
        elif args.cmd == "verify":
            success = cmd_verify(args.archive, password=args.password, layout=layout)
        elif args.cmd == "list":
            success = cmd_list(args.archive, password=args.password, layout=layout)
        else:
            raise RuntimeError("Unknown command")
        sys.exit(0 if success else 1)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except (CapsuleError, OSError, RuntimeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
