"""Shared helpers for serialising engine state to JSON files."""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import asdict, is_dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any


def prepare_for_json(value: Any) -> Any:
    """Recursively normalise objects into JSON-serialisable primitives."""

    if isinstance(value, dict):
        return {str(key): prepare_for_json(val) for key, val in value.items()}

    if isinstance(value, (list, tuple, set)):
        return [prepare_for_json(item) for item in value]

    if isinstance(value, Path):
        return str(value)

    if isinstance(value, (datetime, date)):
        return value.isoformat()

    if is_dataclass(value) and not isinstance(value, type):
        return prepare_for_json(asdict(value))

    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")

    return value


def json_dumps(
    value: Any,
    *,
    ensure_ascii: bool = False,
    sort_keys: bool = False,
    indent: int | None = None,
) -> str:
    """Serialise ``value`` to JSON after normalisation."""

    normalised = prepare_for_json(value)
    return json.dumps(normalised, ensure_ascii=ensure_ascii, sort_keys=sort_keys, indent=indent)


def write_json_atomic(file_path: Path, value: Any, *, indent: int = 2) -> None:
    """Write ``value`` to a temp file beside ``file_path`` and swap it in.

    Raises OSError/TypeError/ValueError; callers decide whether that is fatal.
    """

    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    content = json_dumps(value, indent=indent)

    temp_fd, temp_path_str = tempfile.mkstemp(
        dir=str(file_path.parent), prefix=f".{file_path.name}.", suffix=".tmp"
    )
    temp_path = Path(temp_path_str)
    try:
        with os.fdopen(temp_fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        temp_path.replace(file_path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


__all__ = ["prepare_for_json", "json_dumps", "write_json_atomic"]
