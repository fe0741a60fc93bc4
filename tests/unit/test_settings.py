"""
Unit tests for configuration loading and startup validation.
"""

import pytest

from config.settings import (
    ConsolidationSettings,
    DecaySettings,
    EpisodeSourceSettings,
    LLMSettings,
    Settings,
    validate_settings,
)
from utils.exceptions import ConfigurationError


@pytest.fixture
def valid_settings(tmp_path):
    source_db = tmp_path / "opencode.db"
    source_db.touch()
    return Settings(
        llm=LLMSettings(api_key="secret", base_endpoint="https://gateway.example.com"),
        episodes=EpisodeSourceSettings(db_path=source_db),
    )


class TestLLMSettings:

    def test_model_slots_default_to_general_model(self):
        cfg = LLMSettings(model="openai/gpt-4o")

        assert cfg.extraction_model == "openai/gpt-4o"
        assert cfg.merge_model == "openai/gpt-4o"
        assert cfg.contradiction_model == "openai/gpt-4o"

    def test_explicit_slot_wins(self):
        cfg = LLMSettings(model="openai/gpt-4o", merge_model="google/gemini-2.0-flash")

        assert cfg.merge_model == "google/gemini-2.0-flash"
        assert cfg.extraction_model == "openai/gpt-4o"

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("LLM_MODEL", "anthropic/claude-haiku")
        monkeypatch.setenv("LLM_MAX_RETRIES", "5")

        cfg = LLMSettings()

        assert cfg.contradiction_model == "anthropic/claude-haiku"
        assert cfg.max_retries == 5


class TestValidateSettings:

    def test_valid_configuration(self, valid_settings):
        assert validate_settings(valid_settings) == []

    def test_reports_every_problem(self, tmp_path):
        """All problems come back together so they can be fixed in one go."""
        cfg = Settings(
            llm=LLMSettings(api_key="", base_endpoint=""),
            episodes=EpisodeSourceSettings(db_path=tmp_path / "missing.db"),
            decay=DecaySettings(archive_threshold=1.5, half_life_days={"fact": 0}),
            consolidation=ConsolidationSettings(chunk_size=0),
        )

        problems = validate_settings(cfg)

        assert len(problems) == 6
        assert any("LLM_API_KEY" in p for p in problems)
        assert any("LLM_BASE_ENDPOINT" in p for p in problems)
        assert any("missing.db" in p for p in problems)
        assert any("DECAY_ARCHIVE_THRESHOLD" in p for p in problems)
        assert any("CONSOLIDATION_CHUNK_SIZE" in p for p in problems)
        assert any("'fact'" in p for p in problems)

    def test_contradiction_band_must_be_below_merge_threshold(self, valid_settings):
        valid_settings.consolidation = ConsolidationSettings(
            reconsolidation_threshold=0.5, contradiction_min_similarity=0.6
        )

        problems = validate_settings(valid_settings)

        assert problems == [
            "CONSOLIDATION_CONTRADICTION_MIN_SIMILARITY must be below CONSOLIDATION_RECONSOLIDATION_THRESHOLD"
        ]

    def test_configuration_error_lists_problems(self):
        error = ConfigurationError(["first", "second"])

        assert error.problems == ["first", "second"]
        assert "1. first" in str(error)
        assert "2. second" in str(error)
