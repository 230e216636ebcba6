from __future__ import annotations

import re
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from lexicon_contracts.entries import LexicalEntries, LexicalEntry
from lexicon_pipeline.errors import BackupFormatError

_TITLE_DROP_RE = re.compile(r"[^a-zA-Z0-9א-ת\s-]")
_WHITESPACE_RE = re.compile(r"\s+")


def sanitize_title(title: str, max_len: int = 50) -> str:
    title = _TITLE_DROP_RE.sub("", title)
    return _WHITESPACE_RE.sub("-", title.strip())[:max_len]


def backup_path_for(directory: Path, book_id: int, title: str) -> Path:
    return directory / f"book-{book_id}-{sanitize_title(title)}.json"


def read_backup(path: Path) -> LexicalEntries:
    if not path.is_file():
        raise FileNotFoundError(f"JSON file not found: {path}")
    try:
        return LexicalEntries.from_json(path.read_text(encoding="utf-8"))
    except PydanticValidationError as exc:
        raise BackupFormatError(path, f"not a lexical entries document ({exc.error_count()} errors)") from exc
    except UnicodeDecodeError as exc:
        raise BackupFormatError(path, f"not UTF-8 ({exc.reason})") from exc


@dataclass
class BookBackup:
    """
    JSON backup of the entries committed for one book.

    Loaded on open so that a resumed run extends the file instead of replacing it.
    """

    path: Path
    entries: list[LexicalEntry] = field(default_factory=list)

    @classmethod
    def open(cls, path: Path) -> BookBackup:
        if path.is_file():
            return cls(path=path, entries=list(read_backup(path).entries))
        return cls(path=path)

    @classmethod
    def open_or_reset(cls, path: Path) -> BookBackup:
        """
        Like `open`, but an unreadable file is renamed to `<name>.<timestamp>.bad` and an
        empty backup is started in its place. The index itself is unaffected.
        """
        try:
            return cls.open(path)
        except (BackupFormatError, OSError) as exc:
            aside = path.with_name(f"{path.name}.{time.strftime('%Y%m%d-%H%M%S')}.bad")
            print(f"[backup] WARNING unreadable backup {path}: {exc}", file=sys.stderr)
            try:
                path.replace(aside)
                print(f"[backup] moved aside to {aside}; starting a new backup", file=sys.stderr)
            except OSError as move_exc:
                print(f"[backup] could not move {path} aside: {move_exc}", file=sys.stderr)
            return cls(path=path)

    def extend(self, entries: list[LexicalEntry]) -> None:
        self.entries.extend(entries)

    def write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(LexicalEntries(entries=self.entries).to_json(), encoding="utf-8")
        tmp.replace(self.path)
