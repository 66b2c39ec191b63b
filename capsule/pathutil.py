from __future__ import annotations

from .constants import MAX_NAME_BYTES


def norm_entry_name(name: str) -> str:
    """Normalize archive entry names to a canonical forward-slash form.

    Rules:
    - Convert backslashes to slashes
    - Strip leading/trailing slashes
    - Remove empty and '.' segments
    - Reject '..' segments, NUL and names longer than MAX_NAME_BYTES
    """
    if not isinstance(name, str):
        raise ValueError("Entry name must be a string")
    if "\x00" in name:
        raise ValueError("Entry name may not contain NUL")
    p = name.replace("\\", "/").strip("/")
    parts = [q for q in p.split("/") if q not in ("", ".")]
    for q in parts:
        if q == "..":
            raise ValueError("Entry name may not contain '..'")
    out = "/".join(parts)
    if not out:
        raise ValueError("Entry name is empty")
    if len(out.encode("utf-8")) > MAX_NAME_BYTES:
        raise ValueError(f"Entry name exceeds {MAX_NAME_BYTES} bytes")
    return out


def norm_blob_name(name: str) -> str:
    """Normalize a blob name and require it to be a single path segment."""
    out = norm_entry_name(name)
    if "/" in out:
        raise ValueError(f"Blob name may not contain path separators: {name!r}")
    return out
