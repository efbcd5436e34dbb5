"""Canonical JSON helpers for deterministic engine state."""

from __future__ import annotations

import json
import os
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pathlib import Path


def canonical_dumps(obj: Any, *, indent: int | None = None) -> str:
    """Serialize a JSON-compatible object with stable canonical formatting."""
    if indent is None:
        return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return json.dumps(obj, sort_keys=True, indent=indent, ensure_ascii=False) + "\n"


def atomic_write_text(path: Path, content: str) -> None:
    """Replace `path` with `content` without exposing a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.specx.tmp")
    tmp.write_text(content, encoding="utf-8")
    os.replace(tmp, path)


def write_json(path: Path, obj: Any, *, indent: int | None = None) -> None:
    """Atomically write canonical JSON as UTF-8."""
    atomic_write_text(path, canonical_dumps(obj, indent=indent))

