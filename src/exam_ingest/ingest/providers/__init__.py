"""
Model-backed extraction capabilities.

Each provider implements ExtractionCapability from ingest.capabilities;
the pipeline never imports a provider directly.
"""

from .openai_vision import (
    OpenAIVisionExtractor,
    ProviderExhaustedError,
    parse_model_json,
    resolve_provider,
)

__all__ = [
    "OpenAIVisionExtractor",
    "ProviderExhaustedError",
    "parse_model_json",
    "resolve_provider",
]
