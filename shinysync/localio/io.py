"""Local JSON file helpers.

Provides:
- atomic JSON writes for dry-run and recovery output
- tolerant JSON reads for config files
"""

import json
import os
import tempfile
from typing import Any, Dict, Optional


def ensure_dir(path: str) -> None:
    """Create a directory (and parents) if missing."""
    if path:
        os.makedirs(path, exist_ok=True)


def read_json(path: str) -> Optional[Dict[str, Any]]:
    """Read JSON from disk; return None if missing or invalid."""
    if not os.path.exists(path):
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError):
        return None


def atomic_write_json(path: str, obj: Any) -> str:
    """Atomically write a JSON file by writing a temp file then renaming.

    Returns the absolute path written.
    """
    path = os.path.abspath(path)
    directory = os.path.dirname(path)
    ensure_dir(directory)
    fd, tmp_path = tempfile.mkstemp(
        prefix=os.path.basename(path) + ".",
        suffix=".tmp",
        dir=directory,
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(obj, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, path)
    finally:
        try:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
        except OSError:
            pass
    return path


def sibling_path(path: str, suffix: str) -> str:
    """Return ``path`` with ``suffix`` inserted before the extension.

    ``merged.json`` + ``.unpushed`` -> ``merged.unpushed.json``
    """
    stem, ext = os.path.splitext(path)
    return f"{stem}{suffix}{ext or '.json'}"
