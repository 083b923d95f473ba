"""
JSON schemas for model-produced structured output.

``council_plan`` constrains the composition planner's LLM replies. Schemas
are read once per process; callers get their own copy.
"""

from __future__ import annotations

import copy
import json
import re
from functools import lru_cache
from pathlib import Path
from typing import Any

from jsonschema import Draft7Validator

SCHEMAS_DIR = Path(__file__).parent

# file stems only, so a name can never point outside SCHEMAS_DIR
_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_-]*$")


@lru_cache(maxsize=None)
def _read(name: str) -> dict[str, Any]:
    if not _NAME_RE.match(name or ""):
        raise ValueError(f"Invalid schema name {name!r}")
    path = SCHEMAS_DIR / f"{name}.json"
    if not path.is_file():
        raise FileNotFoundError(f"Schema not found: {name}")
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Schema '{name}' must be a JSON object")
    Draft7Validator.check_schema(data)
    return data


def load_schema(name: str) -> dict[str, Any]:
    """Return a fresh copy of the named schema.

    Raises:
        ValueError: Invalid name, or the file is not a JSON object.
        FileNotFoundError: No schema has that name.
        jsonschema.SchemaError: The file is not a valid Draft 7 schema.
    """
    return copy.deepcopy(_read(name))


def validator_for(name: str) -> Draft7Validator:
    """Draft 7 validator for the named schema."""
    return Draft7Validator(_read(name))


__all__ = ["SCHEMAS_DIR", "load_schema", "validator_for"]
