"""
Decode model output into LexicalEntries.

Never raises on bad model output: the caller gets an InvalidResponse and must skip the batch
without marking its lines. The raw text is archived so nothing returned by the model is lost.
"""

from __future__ import annotations

import json
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from lexicon_contracts.entries import LexicalEntries, LexicalEntry
from lexicon_contracts.validate import ValidationError, load_schema, validate_json


@dataclass(frozen=True)
class ParsedEntries:
    entries: list[LexicalEntry]


@dataclass(frozen=True)
class InvalidResponse:
    reason: str
    raw_text: str
    artifact_path: Path | None = None


@dataclass
class InvalidResponseSink:
    """Directory receiving raw unparseable responses, one file per failed batch."""

    directory: Path

    def save(self, raw_text: str, *, book_id: int, batch_index: int) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        stamp = time.strftime("%Y%m%d-%H%M%S")
        path = self.directory / f"book-{book_id}-batch-{batch_index}-{stamp}.txt"
        path.write_text(raw_text, encoding="utf-8")
        return path


_schema: dict[str, Any] | None = None


def _entries_schema() -> dict[str, Any]:
    global _schema
    if _schema is None:
        _schema = load_schema()
    return _schema


def parse_entries(
    json_text: str,
    *,
    sink: InvalidResponseSink | None = None,
    book_id: int = 0,
    batch_index: int = 0,
) -> ParsedEntries | InvalidResponse:
    reason = _check(json_text)
    if reason is None:
        try:
            parsed = LexicalEntries.model_validate_json(json_text)
        except PydanticValidationError as exc:
            reason = f"model validation failed: {exc.errors()[0].get('msg', exc)}"
        else:
            return ParsedEntries(entries=list(parsed.entries))

    artifact: Path | None = None
    if sink is not None and json_text:
        try:
            artifact = sink.save(json_text, book_id=book_id, batch_index=batch_index)
        except OSError as exc:
            print(f"[ingest] could not archive invalid response: {exc}", file=sys.stderr)
    return InvalidResponse(reason=reason, raw_text=json_text, artifact_path=artifact)


def _check(json_text: str) -> str | None:
    if not json_text.strip():
        return "empty response"
    try:
        obj = json.loads(json_text)
    except json.JSONDecodeError as exc:
        return f"invalid JSON: {exc.msg} at position {exc.pos}"
    if not isinstance(obj, dict):
        return f"expected a JSON object, got {type(obj).__name__}"
    try:
        validate_json(obj, _entries_schema())
    except ValidationError as exc:
        return f"schema violation: {exc.message}"
    return None
