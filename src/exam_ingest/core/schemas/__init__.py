"""JSON Schema validation for capability responses."""

from .validator import validate_extraction_response

__all__ = ["validate_extraction_response"]
