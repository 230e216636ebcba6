"""
Replay JSON backups into a lexical index.

Uses the same idempotent `insert_entry` path as ingestion, so restoring a file twice, or
restoring into a database that already holds some of the entries, is harmless. Typical uses:
recover from a backup, import entries produced elsewhere, merge per-book backups into one index.
"""

from __future__ import annotations

import re
import sys
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError

from lexicon_core.db.session import session_scope
from lexicon_core.store import LexicalStore
from lexicon_pipeline.backup import read_backup
from lexicon_pipeline.errors import BackupFormatError


@dataclass(frozen=True)
class RestoreResult:
    imported: int
    skipped: int
    total: int


def restore(json_path: Path, db_path: Path, *, progress_every: int = 100) -> RestoreResult:
    print("[restore] === Restoring from JSON backup ===")
    print(f"[restore] json={json_path} target_db={db_path}")

    document = read_backup(json_path)
    entries = document.entries
    print(f"[restore] found {len(entries)} entries")
    print(f"[restore] {'opening existing' if db_path.exists() else 'creating new'} database: {db_path}")

    imported = 0
    skipped = 0
    with session_scope(db_path) as session:
        store = LexicalStore(session)
        for idx, entry in enumerate(entries, start=1):
            try:
                store.insert_entry(entry)
                imported += 1
            except SQLAlchemyError as exc:
                skipped += 1
                print(
                    f"[restore] WARNING could not import {entry.surface} -> {entry.base}: {exc}",
                    file=sys.stderr,
                )
            if progress_every > 0 and idx % progress_every == 0:
                print(f"[restore] progress: {idx}/{len(entries)} entries")
        store.commit()

    print(f"[restore] imported={imported} skipped={skipped} total={len(entries)}")
    return RestoreResult(imported=imported, skipped=skipped, total=len(entries))


def restore_multiple(json_paths: list[Path], db_path: Path) -> int:
    """Restore each file in turn; a file that cannot be read is reported and skipped."""
    print(f"[restore] === Restoring {len(json_paths)} JSON backups into {db_path} ===")
    total_imported = 0
    for idx, json_path in enumerate(json_paths, start=1):
        print(f"\n[restore] [{idx}/{len(json_paths)}] {json_path}")
        try:
            total_imported += restore(json_path, db_path).imported
        except (OSError, BackupFormatError) as exc:
            print(f"[restore] ERROR {json_path}: {exc}", file=sys.stderr)
    print(f"\n[restore] all imports complete: {total_imported} entries into {db_path}")
    return total_imported


def restore_directory(directory: Path, db_path: Path, *, pattern: str = r".*\.json$") -> int:
    """Restore every file in `directory` whose name matches `pattern`, in filename order."""
    if not directory.is_dir():
        raise NotADirectoryError(f"Directory not found or not a directory: {directory}")
    regex = re.compile(pattern)
    json_paths = sorted(
        (p for p in directory.iterdir() if p.is_file() and regex.fullmatch(p.name)),
        key=lambda p: p.name,
    )
    print(f"[restore] directory={directory} pattern={pattern!r} files={len(json_paths)}")
    if not json_paths:
        return 0
    return restore_multiple(json_paths, db_path)
