"""
Module: ingest.config

Purpose:
    Configuration dataclass for the ingestion pipeline. Immutable settings
    for page rendering, batching, rate limiting and duplicate detection,
    validated on construction.

Key Classes:
    - IngestConfig: Main configuration for an import session

Dependencies:
    - dataclasses (std)
    - os (std): environment overrides

Used By:
    - ingest.session: builds the orchestrator and detectors from it
    - ingest.rasterizer: dpi/image settings
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Mapping, Optional


DEFAULT_BATCH_SIZE = 3
DEFAULT_INTER_BATCH_DELAY = 3.0
DEFAULT_MODEL = "gemini-flash-latest"


@dataclass(frozen=True)
class IngestConfig:
    """
    Configuration for an import session (immutable).

    Attributes:
        dpi: Resolution for page rasterization (default 150)
        image_format: "jpeg" or "png" (default "jpeg")
        jpeg_quality: JPEG quality 1-95 (default 80)
        batch_size: Pages per extraction call (default 3)
        inter_batch_delay: Seconds to wait between batches (default 3.0)
        batch_timeout: Optional per-batch timeout in seconds
        default_model: Model choice used when the reviewer picks none
        duplicate_threshold: Similarity ratio for near-duplicate matches
        include_instructions_by_default: Import extracted instructions
        default_duration_minutes: Duration for new exams

    Example:
        >>> config = IngestConfig(batch_size=2, inter_batch_delay=0.5)
        >>> config.batch_size
        2
    """
    dpi: int = 150
    image_format: str = "jpeg"
    jpeg_quality: int = 80

    batch_size: int = DEFAULT_BATCH_SIZE
    inter_batch_delay: float = DEFAULT_INTER_BATCH_DELAY
    batch_timeout: Optional[float] = None
    default_model: str = DEFAULT_MODEL

    duplicate_threshold: float = 0.95

    include_instructions_by_default: bool = True
    default_duration_minutes: int = 180

    def __post_init__(self) -> None:
        """Validate configuration on construction."""
        if not (36 <= self.dpi <= 600):
            raise ValueError(f"dpi must be 36-600: {self.dpi}")
        if self.image_format not in ("jpeg", "png"):
            raise ValueError(f"image_format must be 'jpeg' or 'png': {self.image_format!r}")
        if not (1 <= self.jpeg_quality <= 95):
            raise ValueError(f"jpeg_quality must be 1-95: {self.jpeg_quality}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be positive: {self.batch_size}")
        if self.inter_batch_delay < 0:
            raise ValueError(f"inter_batch_delay must be non-negative: {self.inter_batch_delay}")
        if self.batch_timeout is not None and self.batch_timeout <= 0:
            raise ValueError(f"batch_timeout must be positive: {self.batch_timeout}")
        if not self.default_model:
            raise ValueError("default_model must be non-empty")
        if not (0.0 < self.duplicate_threshold <= 1.0):
            raise ValueError(f"duplicate_threshold must be in (0, 1]: {self.duplicate_threshold}")
        if self.default_duration_minutes <= 0:
            raise ValueError(
                f"default_duration_minutes must be positive: {self.default_duration_minutes}"
            )

    @classmethod
    def from_env(
        cls,
        prefix: str = "EXAM_INGEST_",
        environ: Optional[Mapping[str, str]] = None,
    ) -> IngestConfig:
        """
        Build a config from environment variables.

        Each field can be overridden by ``<prefix><FIELD_NAME>`` in upper
        case, e.g. ``EXAM_INGEST_BATCH_SIZE=2``.

        Raises:
            ValueError: If a variable cannot be parsed or fails validation
        """
        env = os.environ if environ is None else environ
        overrides: Dict[str, Any] = {}
        for f in fields(cls):
            raw = env.get(f"{prefix}{f.name.upper()}")
            if raw is None or raw.strip() == "":
                continue
            overrides[f.name] = _parse_env_value(f.name, str(f.type), raw.strip())
        return cls(**overrides)


def _parse_env_value(name: str, type_name: str, raw: str) -> Any:
    """Parse one environment override according to the field's annotation."""
    try:
        if "bool" in type_name:
            lowered = raw.lower()
            if lowered in ("1", "true", "yes", "on"):
                return True
            if lowered in ("0", "false", "no", "off"):
                return False
            raise ValueError(raw)
        if "int" in type_name:
            return int(raw)
        if "float" in type_name:
            return float(raw)
    except ValueError as e:
        raise ValueError(f"Invalid value for {name}: {raw!r}") from e
    return raw
