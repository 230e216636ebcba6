from __future__ import annotations

import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
for src in (
    PROJECT_ROOT / "packages" / "core" / "src",
    PROJECT_ROOT / "packages" / "llm_contracts" / "src",
    PROJECT_ROOT / "pipelines" / "lexicon_pipeline" / "src",
):
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))

from lexicon_core.db.session import session_scope  # noqa: E402
from lexicon_core.store import LexicalStore  # noqa: E402
from lexicon_pipeline.corpus.repository import Book, Line  # noqa: E402


@dataclass
class InMemoryCorpus:
    """Corpus repository backed by plain dicts."""

    books: dict[int, Book] = field(default_factory=dict)
    lines: dict[int, list[Line]] = field(default_factory=dict)

    def add_book(self, book_id: int, title: str, contents: list[str], first_line_id: int = 1) -> Book:
        book = Book(id=book_id, title=title, total_lines=len(contents))
        self.books[book_id] = book
        self.lines[book_id] = [Line(id=first_line_id + i, content=c) for i, c in enumerate(contents)]
        return book

    def get_book(self, book_id: int) -> Book | None:
        return self.books.get(book_id)

    def get_lines(self, book_id: int, offset: int, limit: int) -> list[Line]:
        return self.lines.get(book_id, [])[offset : offset + limit]


@dataclass
class StubLLM:
    """
    LLM client returning canned responses.

    `responder` maps the batch text to the raw response; every prompt received is recorded.
    """

    responder: Callable[[str], str]
    prompts: list[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def generate_response(self, text: str, timeout_s: float | None = None) -> str:
        with self._lock:
            self.prompts.append(text)
        return self.responder(text)


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "db" / "lexical.db"


@pytest.fixture
def store(db_path: Path):
    with session_scope(db_path) as session:
        yield LexicalStore(session)


@pytest.fixture
def corpus() -> InMemoryCorpus:
    return InMemoryCorpus()
