from __future__ import annotations

from sqlalchemy import ForeignKey, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lexicon_core.db.base import Base


class BaseForm(Base):
    """Normalized root form (lemma). Table name is `base`."""

    __tablename__ = "base"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    value: Mapped[str] = mapped_column(Text, nullable=False, unique=True)

    surfaces: Mapped[list[Surface]] = relationship(back_populates="base")


class Surface(Base):
    __tablename__ = "surface"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    value: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    base_id: Mapped[int] = mapped_column(Integer, ForeignKey("base.id"), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    base: Mapped[BaseForm] = relationship(back_populates="surfaces")

    __table_args__ = (Index("ix_surface_base_id", "base_id"),)


class Variant(Base):
    """Alternate form, unique across the whole store and shared between surfaces."""

    __tablename__ = "variant"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    value: Mapped[str] = mapped_column(Text, nullable=False, unique=True)


class SurfaceVariant(Base):
    __tablename__ = "surface_variant"

    surface_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("surface.id", ondelete="CASCADE"), primary_key=True
    )
    variant_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("variant.id", ondelete="CASCADE"), primary_key=True
    )

    __table_args__ = (Index("ix_surface_variant_variant_id", "variant_id"),)


class ProcessedLine(Base):
    """
    Resumability checkpoint for one source line.

    No foreign keys: it refers to rows of the source corpus, not of this index.
    Written in the same transaction as the entries extracted from the line.
    """

    __tablename__ = "processed_line"

    book_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    line_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # Unix seconds.
    processed_at: Mapped[int] = mapped_column(Integer, nullable=False)
