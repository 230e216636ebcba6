"""
Remove Hebrew diacritics (nikud and taamim) from an existing index.

Stripping can make several rows collide on the same value (e.g. "שָׁלוֹם" and "שלום"). Rows are
grouped by their stripped value and each group is merged into its keeper, the row with the
lowest id:

- Surface: the duplicates' variant links move to the keeper.
- Variant: the duplicates' surface links move to the keeper.
- Base: the duplicates' surfaces are re-parented to the keeper.

The duplicates are then deleted and the keeper's value rewritten. Each group runs in its own
SAVEPOINT; a failing group is reported and left as it was, and the pass continues.
"""

from __future__ import annotations

import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lexicon_core.db.models import BaseForm, Surface, SurfaceVariant, Variant
from lexicon_core.db.session import session_scope
from lexicon_core.hebrew import has_diacritics, strip_diacritics

MAX_EXAMPLES = 5


@dataclass
class KindStats:
    processed: int = 0
    modified: int = 0
    merged: int = 0


@dataclass
class PostProcessStats:
    surfaces: KindStats = field(default_factory=KindStats)
    variants: KindStats = field(default_factory=KindStats)
    bases: KindStats = field(default_factory=KindStats)

    @property
    def total_modified(self) -> int:
        return self.surfaces.modified + self.variants.modified + self.bases.modified

    @property
    def total_merged(self) -> int:
        return self.surfaces.merged + self.variants.merged + self.bases.merged


def group_by_stripped(rows: list[tuple[int, str]]) -> dict[str, list[tuple[int, str]]]:
    """Group (id, value) rows by stripped value. Rows are sorted by id, so each group's first row is its keeper."""
    groups: dict[str, list[tuple[int, str]]] = {}
    for row in sorted(rows, key=lambda r: r[0]):
        groups.setdefault(strip_diacritics(row[1]), []).append(row)
    return groups


def _merge_surface(session: Session, keeper_id: int, duplicate_id: int) -> None:
    keeper_variants = set(
        session.scalars(select(SurfaceVariant.variant_id).where(SurfaceVariant.surface_id == keeper_id))
    )
    for variant_id in session.scalars(
        select(SurfaceVariant.variant_id).where(SurfaceVariant.surface_id == duplicate_id)
    ).all():
        if variant_id not in keeper_variants:
            session.add(SurfaceVariant(surface_id=keeper_id, variant_id=variant_id))
            keeper_variants.add(variant_id)
    session.flush()
    session.execute(delete(SurfaceVariant).where(SurfaceVariant.surface_id == duplicate_id))
    session.execute(delete(Surface).where(Surface.id == duplicate_id))


def _merge_variant(session: Session, keeper_id: int, duplicate_id: int) -> None:
    keeper_surfaces = set(
        session.scalars(select(SurfaceVariant.surface_id).where(SurfaceVariant.variant_id == keeper_id))
    )
    for surface_id in session.scalars(
        select(SurfaceVariant.surface_id).where(SurfaceVariant.variant_id == duplicate_id)
    ).all():
        if surface_id not in keeper_surfaces:
            session.add(SurfaceVariant(surface_id=surface_id, variant_id=keeper_id))
            keeper_surfaces.add(surface_id)
    session.flush()
    session.execute(delete(SurfaceVariant).where(SurfaceVariant.variant_id == duplicate_id))
    session.execute(delete(Variant).where(Variant.id == duplicate_id))


def _merge_base(session: Session, keeper_id: int, duplicate_id: int) -> None:
    session.execute(update(Surface).where(Surface.base_id == duplicate_id).values(base_id=keeper_id))
    session.execute(delete(BaseForm).where(BaseForm.id == duplicate_id))


def _clean_kind(
    session: Session,
    *,
    label: str,
    model,
    merge: Callable[[Session, int, int], None],
) -> KindStats:
    stats = KindStats()
    rows = [(row.id, row.value) for row in session.execute(select(model.id, model.value).order_by(model.id))]
    stats.processed = len(rows)

    for cleaned, group in group_by_stripped(rows).items():
        keeper_id, keeper_value = group[0]
        duplicates = group[1:]
        if not duplicates and not has_diacritics(keeper_value):
            continue
        try:
            with session.begin_nested():
                for duplicate_id, _ in duplicates:
                    merge(session, keeper_id, duplicate_id)
                if keeper_value != cleaned:
                    session.execute(update(model).where(model.id == keeper_id).values(value=cleaned))
        except SQLAlchemyError as exc:
            print(f"[postprocess] ERROR {label} id={keeper_id} {keeper_value!r}: {exc}", file=sys.stderr)
            continue

        stats.merged += len(duplicates)
        if keeper_value != cleaned:
            stats.modified += 1
            if stats.modified <= MAX_EXAMPLES:
                suffix = f" (merged {len(group)} entries)" if duplicates else ""
                print(f"[postprocess]   example: {keeper_value!r} -> {cleaned!r}{suffix}")

    session.commit()
    print(f"[postprocess] {label}: {stats.modified} modified, {stats.merged} duplicates merged")
    return stats


def clean_surfaces(session: Session) -> KindStats:
    return _clean_kind(session, label="surfaces", model=Surface, merge=_merge_surface)


def clean_variants(session: Session) -> KindStats:
    return _clean_kind(session, label="variants", model=Variant, merge=_merge_variant)


def clean_bases(session: Session) -> KindStats:
    return _clean_kind(session, label="bases", model=BaseForm, merge=_merge_base)


def postprocess_session(
    session: Session,
    *,
    surfaces: bool = True,
    variants: bool = True,
    bases: bool = True,
) -> PostProcessStats:
    stats = PostProcessStats()
    if surfaces:
        print("\n[postprocess] cleaning surface values...")
        stats.surfaces = clean_surfaces(session)
    if variants:
        print("\n[postprocess] cleaning variant values...")
        stats.variants = clean_variants(session)
    if bases:
        print("\n[postprocess] cleaning base values...")
        stats.bases = clean_bases(session)
    return stats


def postprocess_database(
    db_path: Path,
    *,
    surfaces: bool = True,
    variants: bool = True,
    bases: bool = True,
) -> PostProcessStats:
    if not db_path.exists():
        raise FileNotFoundError(f"Database file not found: {db_path}")
    print(f"[postprocess] opening database: {db_path}")
    with session_scope(db_path) as session:
        return postprocess_session(session, surfaces=surfaces, variants=variants, bases=bases)
