"""JSON schemas shipped as package data."""

from __future__ import annotations

import json
from functools import lru_cache
from importlib.resources import files
from typing import Any

from jsonschema.validators import Draft202012Validator

SCHEMA_SUFFIX = ".schema.json"


def available_schemas() -> tuple[str, ...]:
    """Canonical schema names (without suffix) found in package data."""
    names = [
        item.name[: -len(SCHEMA_SUFFIX)]
        for item in files(__name__).iterdir()
        if item.name.endswith(SCHEMA_SUFFIX)
    ]
    return tuple(sorted(names))


@lru_cache(maxsize=None)
def load_schema(name: str) -> dict[str, Any]:
    """Load a schema by canonical name (with or without suffix)."""
    canonical = name[: -len(SCHEMA_SUFFIX)] if name.endswith(SCHEMA_SUFFIX) else name
    if canonical not in available_schemas():
        raise KeyError(f"Schema '{canonical}' not found. Available schemas: {', '.join(available_schemas())}")
    text = files(__name__).joinpath(f"{canonical}{SCHEMA_SUFFIX}").read_text(encoding="utf-8")
    return json.loads(text)


def schema_errors(data: Any, name: str) -> list[str]:
    """Validate `data` and return readable error messages, empty when valid."""
    validator = Draft202012Validator(load_schema(name))
    errors = sorted(validator.iter_errors(data), key=lambda item: list(item.path))
    return [
        f"{'.'.join(str(part) for part in error.path)}: {error.message}" if error.path else error.message
        for error in errors
    ]
