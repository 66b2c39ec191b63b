from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .constants import BLOB_PREFIX, COLLECTION_SUFFIX
from .errors import BlobMissingWarning, CapsuleError, CapsuleWarning
from .pathutil import norm_blob_name, norm_entry_name


# Invoked as on_progress(percent, message); percent == -1 reports a failure.
ProgressCallback = Callable[[int, str], None]

Record = Dict[str, Any]


@dataclass(frozen=True)
class CollectionSpec:
    """A record collection and, optionally, the field naming each record's blob."""

    name: str
    blob_field: Optional[str] = None

    @property
    def entry_name(self) -> str:
        return self.name + COLLECTION_SUFFIX


# Fixed export order: notes first, then file metadata whose records own the blobs.
DEFAULT_LAYOUT: Tuple[CollectionSpec, ...] = (
    CollectionSpec("notes"),
    CollectionSpec("file_items", blob_field="original_file_name"),
)


@dataclass(frozen=True)
class BlobReference:
    name: str
    collection: str
    record_id: int

    @property
    def entry_name(self) -> str:
        return blob_entry_name(self.name)


@dataclass
class BackupResult:
    """Outcome of an export/import; truthy on success."""

    success: bool
    error: Optional[CapsuleError] = None
    message: str = ""
    warnings: List[CapsuleWarning] = field(default_factory=list)
    collections: Dict[str, int] = field(default_factory=dict)
    blobs: List[str] = field(default_factory=list)
    entries: List[Tuple[str, str, int]] = field(default_factory=list)
    bytes_written: int = 0

    def __bool__(self) -> bool:
        return self.success


def blob_entry_name(blob_name: str) -> str:
    """Archive entry name for a blob; the prefixed name must also fit the name limit."""
    return norm_entry_name(BLOB_PREFIX + norm_blob_name(blob_name))


def blob_name_from_entry(entry_name: str) -> Optional[str]:
    if not entry_name.startswith(BLOB_PREFIX):
        return None
    try:
        return norm_blob_name(entry_name[len(BLOB_PREFIX):])
    except ValueError:
        return None


def collection_for_entry(layout: Sequence[CollectionSpec], entry_name: str) -> Optional[CollectionSpec]:
    for spec in layout:
        if spec.entry_name == entry_name:
            return spec
    return None


def validate_layout(layout: Sequence[CollectionSpec]) -> Tuple[CollectionSpec, ...]:
    """Check collection names are unique single path segments."""
    seen = set()
    for spec in layout:
        if norm_blob_name(spec.name) != spec.name:
            raise ValueError(f"Invalid collection name: {spec.name!r}")
        if spec.name in seen:
            raise ValueError(f"Duplicate collection name: {spec.name!r}")
        seen.add(spec.name)
    return tuple(layout)


def collect_blob_references(
    layout: Sequence[CollectionSpec],
    snapshots: Mapping[str, Iterable[Mapping[str, Any]]],
) -> Tuple[List[BlobReference], List[CapsuleWarning]]:
    """Resolve the blob each record references, in collection then record order.

    A blob name referenced twice is archived once (first reference wins).
    Records with an unusable blob name are reported as warnings.
    """
    refs: List[BlobReference] = []
    warnings: List[CapsuleWarning] = []
    seen = set()
    for spec in layout:
        if not spec.blob_field:
            continue
        for rec in snapshots.get(spec.name, ()):
            raw = rec.get(spec.blob_field)
            if raw in (None, ""):
                continue
            try:
                name = blob_entry_name(str(raw))[len(BLOB_PREFIX):]
            except ValueError as exc:
                warnings.append(BlobMissingWarning(str(raw), f"invalid blob name: {exc}"))
                continue
            if name in seen:
                continue
            seen.add(name)
            refs.append(BlobReference(name=name, collection=spec.name, record_id=rec["id"]))
    return refs, warnings
