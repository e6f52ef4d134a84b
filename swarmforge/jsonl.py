"""
JSON Document Helpers
=====================

Read/write helpers for the two on-disk shapes used by the swarm:

- JSON-lines logs (one record per line, append-heavy collections)
- Single JSON documents (mutable aggregates, overwritten wholesale)

Missing files read as empty. Malformed content raises RecordParseError:
silently skipping a record would corrupt the learning statistics built on
top of these logs.
"""

import json
from pathlib import Path
from typing import Any, Iterable, Optional


class RecordParseError(ValueError):
    """A persisted record could not be parsed."""

    def __init__(self, path: Path, message: str, line: Optional[int] = None):
        self.path = Path(path)
        self.line = line
        location = f"{self.path}:{line}" if line is not None else str(self.path)
        super().__init__(f"Malformed record in {location}: {message}")


def read_jsonl(path: Path) -> list[dict]:
    """
    Read every record of a JSON-lines file.

    Args:
        path: File to read

    Returns:
        List of decoded records, empty if the file does not exist

    Raises:
        RecordParseError: If any non-blank line is not a JSON object
    """
    path = Path(path)
    if not path.exists():
        return []

    records = []
    with open(path, "r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, 1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                raise RecordParseError(path, e.msg, line_no) from e
            if not isinstance(record, dict):
                raise RecordParseError(path, "expected a JSON object", line_no)
            records.append(record)
    return records


def append_jsonl(path: Path, record: dict) -> None:
    """Append a single record as one line."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(record, default=str) + "\n")


def write_jsonl(path: Path, records: Iterable[dict]) -> None:
    """Rewrite a JSON-lines file with the given records."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        for record in records:
            f.write(json.dumps(record, default=str) + "\n")


def read_json(path: Path) -> Optional[Any]:
    """
    Read a JSON document.

    Returns:
        Decoded document, or None if the file does not exist

    Raises:
        RecordParseError: If the file exists but is not valid JSON
    """
    path = Path(path)
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise RecordParseError(path, e.msg, e.lineno) from e


def write_json(path: Path, data: Any) -> None:
    """Overwrite a JSON document."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, default=str)
