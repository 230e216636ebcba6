"""
Idempotent write path and lookups for the lexical index.

The store wraps a single Session and assumes a single writer at any instant. Callers that
write from several asyncio tasks must serialize through their own lock (see
`lexicon_pipeline.ingest.run`); the store does not lock.

Transaction boundaries belong to the caller: upserts only flush, `commit()` ends the unit.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lexicon_core.db.models import BaseForm, ProcessedLine, Surface, SurfaceVariant, Variant


class EntryLike(Protocol):
    surface: str
    base: str
    variants: Sequence[str]
    notes: str | None


@dataclass(frozen=True)
class StoreCounts:
    bases: int
    surfaces: int
    variants: int
    links: int
    processed_lines: int


class LexicalStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    # -- upserts ---------------------------------------------------------------------------

    def upsert_base(self, value: str) -> int:
        existing = self.session.scalar(select(BaseForm.id).where(BaseForm.value == value))
        if existing is not None:
            return existing
        row = BaseForm(value=value)
        self.session.add(row)
        self.session.flush()
        return row.id

    def upsert_surface(self, value: str, base_id: int, notes: str | None = None) -> int:
        """
        Insert the surface if absent and return its id.

        First write wins: when the surface already exists its base and notes are left as they
        are, even if `base_id`/`notes` differ.
        """
        existing = self.session.scalar(select(Surface.id).where(Surface.value == value))
        if existing is not None:
            return existing
        row = Surface(value=value, base_id=base_id, notes=notes)
        self.session.add(row)
        self.session.flush()
        return row.id

    def upsert_variant(self, value: str) -> int:
        existing = self.session.scalar(select(Variant.id).where(Variant.value == value))
        if existing is not None:
            return existing
        row = Variant(value=value)
        self.session.add(row)
        self.session.flush()
        return row.id

    def link_surface_variant(self, surface_id: int, variant_id: int) -> None:
        if self.session.get(SurfaceVariant, (surface_id, variant_id)) is not None:
            return
        self.session.add(SurfaceVariant(surface_id=surface_id, variant_id=variant_id))
        self.session.flush()

    def insert_entry(self, entry: EntryLike) -> int:
        """
        base -> surface -> variants -> links, inside a SAVEPOINT.

        On failure only this entry is rolled back; the exception propagates so the caller can
        count it and carry on with the rest of its batch.
        """
        with self.session.begin_nested():
            base_id = self.upsert_base(entry.base)
            surface_id = self.upsert_surface(entry.surface, base_id, entry.notes)
            for variant in entry.variants:
                variant_id = self.upsert_variant(variant)
                self.link_surface_variant(surface_id, variant_id)
        return surface_id

    # -- processed markers -----------------------------------------------------------------

    def is_line_processed(self, book_id: int, line_id: int) -> bool:
        return self.session.get(ProcessedLine, (book_id, line_id)) is not None

    def mark_line_processed(self, book_id: int, line_id: int, timestamp: int) -> None:
        if self.is_line_processed(book_id, line_id):
            return
        self.session.add(ProcessedLine(book_id=book_id, line_id=line_id, processed_at=timestamp))
        self.session.flush()

    def count_processed_lines(self, book_id: int) -> int:
        return self.session.scalar(
            select(func.count()).select_from(ProcessedLine).where(ProcessedLine.book_id == book_id)
        ) or 0

    def processed_line_ids(self, book_id: int) -> set[int]:
        return set(self.session.scalars(select(ProcessedLine.line_id).where(ProcessedLine.book_id == book_id)))

    # -- lookups ---------------------------------------------------------------------------

    def find_surface(self, value: str) -> Surface | None:
        return self.session.scalar(select(Surface).where(Surface.value == value))

    def base_for_surface(self, surface: Surface) -> str | None:
        return self.session.scalar(select(BaseForm.value).where(BaseForm.id == surface.base_id))

    def variants_for_surface(self, surface: Surface) -> list[str]:
        return list(
            self.session.scalars(
                select(Variant.value)
                .join(SurfaceVariant, SurfaceVariant.variant_id == Variant.id)
                .where(SurfaceVariant.surface_id == surface.id)
                .order_by(Variant.id)
            )
        )

    def related_surfaces(self, surface: Surface) -> list[Surface]:
        """Other surfaces sharing this surface's base."""
        return list(
            self.session.scalars(
                select(Surface)
                .where(Surface.base_id == surface.base_id)
                .where(Surface.id != surface.id)
                .order_by(Surface.id)
            )
        )

    def counts(self) -> StoreCounts:
        def _count(model) -> int:
            return self.session.scalar(select(func.count()).select_from(model)) or 0

        return StoreCounts(
            bases=_count(BaseForm),
            surfaces=_count(Surface),
            variants=_count(Variant),
            links=_count(SurfaceVariant),
            processed_lines=_count(ProcessedLine),
        )

    # -- transaction -----------------------------------------------------------------------

    def commit(self) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

    def rollback(self) -> None:
        self.session.rollback()
