"""
Unit tests for the decay model and the decay pass.
"""

import math

import pytest

from config.settings import DecaySettings
from core.types.knowledge_types import MS_PER_DAY, KnowledgeStatus
from modules.consolidation.decay import DecayEngine, base_half_life, compute_strength

NOW = 1_000 * MS_PER_DAY
HALF_LIVES = DecaySettings().half_life_days


def _days_ago(days):
    return NOW - int(days * MS_PER_DAY)


class TestComputeStrength:

    def test_fresh_entry_is_at_confidence(self, make_entry):
        entry = make_entry(confidence=0.8, last_accessed_at=NOW)
        assert compute_strength(entry, HALF_LIVES, NOW) == pytest.approx(0.8)

    def test_one_effective_half_life_halves_strength(self, make_entry):
        """A fact observed once has a 30 * (1 + log2 2) = 60 day effective half-life."""
        entry = make_entry(confidence=0.9, observation_count=1, access_count=0,
                           last_accessed_at=_days_ago(60))

        assert compute_strength(entry, HALF_LIVES, NOW) == pytest.approx(0.45)

    def test_access_stretches_half_life(self, make_entry):
        """One retrieval doubles the fact's effective half-life to 120 days."""
        entry = make_entry(confidence=0.9, observation_count=1, access_count=1,
                           last_accessed_at=_days_ago(60))

        assert compute_strength(entry, HALF_LIVES, NOW) == pytest.approx(0.9 * 2 ** -0.5)

    def test_slower_types_decay_slower(self, make_entry):
        fact = make_entry(type="fact", last_accessed_at=_days_ago(90))
        procedure = make_entry(type="procedure", last_accessed_at=_days_ago(90))

        assert compute_strength(procedure, HALF_LIVES, NOW) > compute_strength(fact, HALF_LIVES, NOW)

    def test_reinforcement_never_exceeds_confidence(self, make_entry):
        entry = make_entry(confidence=0.6, observation_count=50, access_count=500, last_accessed_at=NOW)
        assert compute_strength(entry, HALF_LIVES, NOW) <= 0.6

    def test_access_in_the_future_counts_as_now(self, make_entry):
        """Clock skew never pushes strength above confidence."""
        entry = make_entry(confidence=0.7, last_accessed_at=NOW + MS_PER_DAY)
        assert compute_strength(entry, HALF_LIVES, NOW) == pytest.approx(0.7)

    def test_unknown_type_falls_back_to_fact_half_life(self):
        assert base_half_life("mystery", HALF_LIVES) == HALF_LIVES["fact"]
        assert base_half_life("procedure", {}) == 30.0


class TestDecayEngine:

    @pytest.fixture
    def engine(self, store):
        return DecayEngine(store, DecaySettings())

    def test_faded_entry_is_archived(self, store, engine, make_entry):
        """0.9 * 2^-5 is far below the 0.15 archive threshold."""
        entry = make_entry(confidence=0.9, last_accessed_at=_days_ago(300))

        report = engine.apply(now=NOW)

        loaded = store.get_entry(entry.id)
        assert report.archived == 1
        assert loaded.status == KnowledgeStatus.ARCHIVED
        assert loaded.strength == pytest.approx(0.9 * 2 ** -5)
        assert loaded.updated_at == NOW

    def test_strength_written_back_when_changed(self, store, engine, make_entry):
        entry = make_entry(confidence=0.9, strength=0.9, last_accessed_at=_days_ago(60))

        report = engine.apply(now=NOW)

        assert report.updated == 1
        assert store.get_entry(entry.id).strength == pytest.approx(0.45)
        assert store.get_entry(entry.id).status == KnowledgeStatus.ACTIVE

    def test_tiny_changes_are_not_written(self, store, engine, make_entry):
        """Movement of 0.01 or less is not worth a write."""
        entry = make_entry(confidence=0.9, strength=0.9, last_accessed_at=_days_ago(0.1))

        report = engine.apply(now=NOW)

        assert report.updated == 0
        assert store.get_entry(entry.id).strength == pytest.approx(0.9)

    def test_long_archived_entries_are_tombstoned(self, store, engine, make_entry):
        old = make_entry(status="archived", updated_at=_days_ago(181))
        recent = make_entry(status="archived", updated_at=_days_ago(10))

        report = engine.apply(now=NOW)

        assert report.tombstoned == 1
        assert store.get_entry(old.id).status == KnowledgeStatus.TOMBSTONED
        assert store.get_entry(recent.id).status == KnowledgeStatus.ARCHIVED

    def test_non_live_entries_are_not_decayed(self, store, engine, make_entry):
        superseded = make_entry(status="superseded", strength=0.9, last_accessed_at=_days_ago(300))

        engine.apply(now=NOW)

        assert store.get_entry(superseded.id).strength == pytest.approx(0.9)
        assert store.get_entry(superseded.id).status == KnowledgeStatus.SUPERSEDED

    def test_custom_threshold(self, store, make_entry):
        """A stricter threshold archives what the default keeps."""
        entry = make_entry(confidence=0.9, last_accessed_at=_days_ago(60))
        engine = DecayEngine(store, DecaySettings(archive_threshold=0.5))

        engine.apply(now=NOW)

        assert store.get_entry(entry.id).status == KnowledgeStatus.ARCHIVED
        assert math.isclose(store.get_entry(entry.id).strength, 0.45, rel_tol=1e-6)


class TestMonotonicity:

    def test_strictly_decreasing_with_time(self, make_entry):
        entry = make_entry(confidence=0.9, last_accessed_at=NOW)
        strengths = [
            compute_strength(entry, HALF_LIVES, NOW + days * MS_PER_DAY) for days in (0, 1, 10, 100, 1000)
        ]
        assert all(a > b for a, b in zip(strengths, strengths[1:]))

    def test_non_decreasing_with_evidence_and_use(self, make_entry):
        def strength(observations, accesses):
            entry = make_entry(confidence=0.9, observation_count=observations, access_count=accesses,
                               last_accessed_at=_days_ago(45))
            return compute_strength(entry, HALF_LIVES, NOW)

        assert strength(1, 0) <= strength(2, 0) <= strength(8, 0)
        assert strength(1, 0) <= strength(1, 1) <= strength(1, 20)
