"""
Unit tests for IngestConfig.
"""

import pytest

from exam_ingest.ingest.config import IngestConfig


class TestIngestConfig:
    """Tests for IngestConfig dataclass."""

    def test_init_when_defaults_then_matches_documented_values(self):
        config = IngestConfig()

        assert config.batch_size == 3
        assert config.inter_batch_delay == 3.0
        assert config.batch_timeout is None
        assert config.default_duration_minutes == 180
        assert config.include_instructions_by_default is True

    def test_init_when_zero_batch_size_then_raises_error(self):
        with pytest.raises(ValueError, match="batch_size must be positive"):
            IngestConfig(batch_size=0)

    def test_init_when_negative_delay_then_raises_error(self):
        with pytest.raises(ValueError, match="inter_batch_delay must be non-negative"):
            IngestConfig(inter_batch_delay=-1)

    def test_init_when_unknown_image_format_then_raises_error(self):
        with pytest.raises(ValueError, match="image_format"):
            IngestConfig(image_format="gif")

    def test_init_when_threshold_above_one_then_raises_error(self):
        with pytest.raises(ValueError, match="duplicate_threshold"):
            IngestConfig(duplicate_threshold=1.5)

    def test_from_env_when_overrides_present_then_parses_types(self):
        env = {
            "EXAM_INGEST_BATCH_SIZE": "2",
            "EXAM_INGEST_INTER_BATCH_DELAY": "0.5",
            "EXAM_INGEST_BATCH_TIMEOUT": "30",
            "EXAM_INGEST_INCLUDE_INSTRUCTIONS_BY_DEFAULT": "no",
            "EXAM_INGEST_DEFAULT_MODEL": "gpt-4o",
        }

        config = IngestConfig.from_env(environ=env)

        assert config.batch_size == 2
        assert config.inter_batch_delay == 0.5
        assert config.batch_timeout == 30.0
        assert config.include_instructions_by_default is False
        assert config.default_model == "gpt-4o"

    def test_from_env_when_blank_value_then_keeps_default(self):
        config = IngestConfig.from_env(environ={"EXAM_INGEST_DPI": "  "})
        assert config.dpi == 150

    def test_from_env_when_invalid_int_then_raises_error(self):
        with pytest.raises(ValueError, match="Invalid value for batch_size"):
            IngestConfig.from_env(environ={"EXAM_INGEST_BATCH_SIZE": "three"})
