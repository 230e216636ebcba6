from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class LexicalEntry(BaseModel):
    """
    One normalization entry as produced by the model (and stored in JSON backups).

    - surface: the form as it appears in the text
    - base: the normalized base form
    - variants: every alternate form of the surface
    - notes: optional free text (explanations, etymologies)
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    surface: str
    base: str
    variants: list[str] = Field(default_factory=list)
    notes: str | None = None


class LexicalEntries(BaseModel):
    model_config = ConfigDict(extra="ignore")

    entries: list[LexicalEntry] = Field(default_factory=list)

    def to_json(self) -> str:
        return self.model_dump_json(indent=4)

    @classmethod
    def from_json(cls, text: str) -> LexicalEntries:
        return cls.model_validate_json(text)
