from __future__ import annotations

import json
from importlib.resources import files
from typing import Any

import jsonschema

from lexicon_contracts import schemas as contracts_schemas

LEXICAL_ENTRIES_SCHEMA = "lexical_entries.json"


class ValidationError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


def load_schema(name: str = LEXICAL_ENTRIES_SCHEMA) -> dict[str, Any]:
    return json.loads((files(contracts_schemas) / name).read_text(encoding="utf-8"))


def validate_json(instance: dict[str, Any], schema: dict[str, Any]) -> None:
    try:
        jsonschema.validate(instance=instance, schema=schema)
    except jsonschema.ValidationError as exc:
        raise ValidationError(exc.message) from exc
