"""
Image Batch — Work Item Inputs

Enumerates work items from:
  - a directory of images (.jpg .jpeg .png .webp .gif), optionally recursive
  - a CSV file (columns: path | image | imagePath | url, optional id, title, description)
  - a JSON array or JSONL file of objects with the same keys

Any extra columns/keys become item hints. Items are deduplicated by id
(derived from the source reference unless an explicit id is given).
Local paths must exist and carry an image extension; URLs pass through.
"""

from __future__ import annotations

import csv
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from batch_engine.errors import BatchSetupError
from batch_engine.types import WorkItem

logger = logging.getLogger("image_batch.inputs")

IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".webp", ".gif"})
SOURCE_KEYS = ("path", "image", "imagePath", "url")


@dataclass
class InputResult:
    items: list[WorkItem] = field(default_factory=list)
    total_found: int = 0
    invalid_items: int = 0
    duplicates_removed: int = 0

    @property
    def valid_items(self) -> int:
        return len(self.items)


def _is_url(source: str) -> bool:
    return source.startswith(("http://", "https://"))


def _valid_source(source: str, base_dir: Path | None) -> str | None:
    if _is_url(source):
        return source
    path = Path(source)
    if not path.is_absolute() and base_dir is not None:
        path = base_dir / path
    if path.suffix.lower() not in IMAGE_EXTENSIONS or not path.is_file():
        return None
    return str(path)


def _collect(
    records: Iterable[dict[str, Any]],
    base_dir: Path | None,
    validate_paths: bool,
) -> InputResult:
    result = InputResult()
    seen: set[str] = set()
    for record in records:
        result.total_found += 1
        if not isinstance(record, dict):
            result.invalid_items += 1
            continue
        source = next((record[k] for k in SOURCE_KEYS if record.get(k)), None)
        if not isinstance(source, str) or not source.strip():
            result.invalid_items += 1
            logger.warning("Record without an image reference: %s", record)
            continue
        source = source.strip()
        if validate_paths:
            resolved = _valid_source(source, base_dir)
            if resolved is None:
                result.invalid_items += 1
                logger.warning("Invalid image path: %s", source)
                continue
            source = resolved

        hints = {
            k: v for k, v in record.items()
            if k not in SOURCE_KEYS and k != "id" and v not in (None, "")
        }
        explicit_id = record.get("id")
        item = WorkItem.create(source, hints, item_id=str(explicit_id) if explicit_id else None)
        if item.id in seen:
            result.duplicates_removed += 1
            continue
        seen.add(item.id)
        result.items.append(item)
    return result


def scan_directory(directory: str | Path, recursive: bool = False) -> InputResult:
    root = Path(directory)
    pattern = "**/*" if recursive else "*"
    paths = sorted(
        p for p in root.glob(pattern)
        if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS
    )
    logger.info("Scanning %s for images (recursive=%s): %d found", root, recursive, len(paths))
    return _collect(({"path": str(p)} for p in paths), None, validate_paths=False)


def load_csv(path: str | Path, validate_paths: bool = True) -> InputResult:
    path = Path(path)
    with open(path, newline="", encoding="utf-8") as f:
        records = list(csv.DictReader(f))
    return _collect(records, path.parent, validate_paths)


def load_json(path: str | Path, validate_paths: bool = True) -> InputResult:
    """JSON array of objects, or JSONL (one object per line)."""
    path = Path(path)
    content = path.read_text(encoding="utf-8").strip()
    if not content:
        return InputResult()

    lines = [line for line in content.splitlines() if line.strip()]
    try:
        if len(lines) > 1 and all(line.lstrip().startswith("{") for line in lines):
            records = [json.loads(line) for line in lines]
        else:
            records = json.loads(content)
    except json.JSONDecodeError as e:
        raise BatchSetupError(f"Cannot parse {path}: {e}") from e

    if isinstance(records, dict):
        records = records.get("items", [records])
    if not isinstance(records, list):
        raise BatchSetupError(f"{path} must contain an array of objects")
    return _collect(records, path.parent, validate_paths)


def load_work_items(
    source: str | Path,
    recursive: bool = False,
    validate_paths: bool = True,
) -> InputResult:
    """Dispatch on the source type: directory, .csv, .json or .jsonl."""
    path = Path(source)
    if path.is_dir():
        result = scan_directory(path, recursive=recursive)
    elif not path.exists():
        raise BatchSetupError(f"Input not found: {source}")
    elif path.suffix.lower() == ".csv":
        result = load_csv(path, validate_paths)
    elif path.suffix.lower() in (".json", ".jsonl"):
        result = load_json(path, validate_paths)
    else:
        raise BatchSetupError(f"Unsupported input type: {source} (expected directory, .csv, .json, .jsonl)")

    logger.info(
        "Loaded work items from %s: found=%d valid=%d invalid=%d duplicates=%d",
        source, result.total_found, result.valid_items,
        result.invalid_items, result.duplicates_removed,
    )
    return result
