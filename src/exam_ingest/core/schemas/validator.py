"""
Schema Validation Utilities

Validates extraction capability responses against the bundled JSON Schema
before any of their content reaches the normalizer.

A capability response is untrusted input: identifiers collide across
batches, answers come in several shapes, and a malformed reply must abort
the batch rather than silently produce half a question list.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import jsonschema

from exam_ingest.core.errors import ResponseFormatError


# Load schemas lazily
_SCHEMAS: dict[str, dict] = {}


def _load_schema(name: str) -> dict:
    """Load a schema from the schemas directory."""
    if name not in _SCHEMAS:
        schema_path = Path(__file__).parent / f"{name}.schema.json"
        if not schema_path.exists():
            raise FileNotFoundError(f"Schema not found: {schema_path}")
        with open(schema_path, "r", encoding="utf-8") as f:
            _SCHEMAS[name] = json.load(f)
    return _SCHEMAS[name]


def validate_extraction_response(data: Any) -> None:
    """
    Validate a raw extraction response.

    Args:
        data: Decoded JSON response from the extraction capability

    Raises:
        ResponseFormatError: If data does not match the schema
    """
    if not isinstance(data, dict):
        raise ResponseFormatError(
            f"Extraction response must be an object, got {type(data).__name__}"
        )

    schema = _load_schema("extraction_response")
    try:
        jsonschema.validate(data, schema)
    except jsonschema.ValidationError as e:
        raise ResponseFormatError(
            f"Schema validation failed: {e.message}",
            path=".".join(str(p) for p in e.absolute_path),
            errors=[e.message],
        ) from e
