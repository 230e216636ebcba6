"""Read-only access to the SeforimLibrary corpus."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from sqlalchemy import create_engine, text


@dataclass(frozen=True)
class Book:
    id: int
    title: str
    total_lines: int


@dataclass(frozen=True)
class Line:
    id: int
    content: str


class CorpusRepository(Protocol):
    def get_book(self, book_id: int) -> Book | None: ...

    def get_lines(self, book_id: int, offset: int, limit: int) -> list[Line]: ...


class SqliteCorpusRepository:
    """
    SeforimLibrary schema subset used here:
    - book(id, title, totalLines)
    - line(id, bookId, lineIndex, content)
    """

    def __init__(self, db_path: Path | str):
        db_path = Path(db_path)
        if not db_path.exists():
            raise FileNotFoundError(f"Source database not found: {db_path}")
        self.db_path = db_path
        self.engine = create_engine(f"sqlite:///{db_path}", future=True)

    def get_book(self, book_id: int) -> Book | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                text("SELECT id, title, totalLines FROM book WHERE id = :id"), {"id": book_id}
            ).first()
        if row is None:
            return None
        return Book(id=row.id, title=row.title, total_lines=row.totalLines or 0)

    def get_lines(self, book_id: int, offset: int, limit: int) -> list[Line]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(
                    "SELECT id, content FROM line WHERE bookId = :book_id "
                    "ORDER BY lineIndex LIMIT :limit OFFSET :offset"
                ),
                {"book_id": book_id, "limit": limit, "offset": offset},
            ).all()
        return [Line(id=r.id, content=r.content or "") for r in rows]

    def close(self) -> None:
        self.engine.dispose()

    def __enter__(self) -> SqliteCorpusRepository:
        return self

    def __exit__(self, *args) -> None:
        self.close()
