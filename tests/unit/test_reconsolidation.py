"""
Unit tests for Reconsolidator: the insert / keep / update decision for extracted candidates.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from config.settings import ConsolidationSettings
from core.types.knowledge_types import KnowledgeStatus, KnowledgeType
from modules.consolidation.reconsolidation import Reconsolidator, find_nearest
from modules.llm.llm_responses import (
    ExtractedKnowledge,
    InsertDecision,
    KeepDecision,
    UpdateDecision,
)

NOW = 1_760_000_000_000  # 2025-10-09


def _candidate(content="The API listens on port 9090.", **overrides):
    data = dict(type="fact", content=content, topics=["api"], confidence=0.8)
    data.update(overrides)
    return ExtractedKnowledge(**data)


@pytest.fixture
def llm():
    mock = MagicMock()
    mock.decide_merge = AsyncMock(return_value=InsertDecision())
    return mock


def _reconsolidator(store, embeddings, llm):
    return Reconsolidator(store, embeddings, llm, ConsolidationSettings(reconsolidation_threshold=0.82))


class TestFindNearest:

    def test_picks_most_similar_live_entry(self, make_entry, similar_vector):
        far = make_entry("far", embedding=similar_vector(0.2))
        near = make_entry("near", embedding=similar_vector(0.9))
        cache = {e.id: e for e in (far, near)}

        entry, similarity = find_nearest([1.0, 0.0, 0.0], cache)

        assert entry.id == near.id
        assert similarity == pytest.approx(0.9, abs=1e-5)

    def test_skips_non_live_and_mismatched(self, make_entry):
        archived = make_entry("archived", status="archived")
        wrong_dim = make_entry("wrong", embedding=[1.0, 0.0])
        cache = {e.id: e for e in (archived, wrong_dim)}

        assert find_nearest([1.0, 0.0, 0.0], cache) == (None, 0.0)


class TestReconcile:

    @pytest.mark.asyncio
    async def test_empty_knowledge_inserts_without_asking(self, store, fake_embeddings, llm):
        """With nothing to compare against, the candidate is inserted directly."""
        embeddings = fake_embeddings(default=[0.0, 1.0, 0.0])
        cache = {}

        outcome = await _reconsolidator(store, embeddings, llm).reconcile(
            _candidate(), ["s1", "s2", "s1"], cache, now=NOW
        )

        assert outcome.action == "inserted"
        entry = store.get_entry(outcome.entry_id)
        assert entry.strength == pytest.approx(0.8)
        assert entry.source == "consolidation 2025-10-09"
        assert entry.derived_from == ["s1", "s2"]
        assert entry.embedding == pytest.approx([0.0, 1.0, 0.0])
        assert outcome.entry_id in cache
        assert embeddings.calls == ["[fact] The API listens on port 9090. (topics: api)"]
        llm.decide_merge.assert_not_called()

    @pytest.mark.asyncio
    async def test_below_threshold_inserts(self, store, make_entry, fake_embeddings, similar_vector, llm):
        existing = make_entry("Unrelated fact.")
        embeddings = fake_embeddings(default=similar_vector(0.5))

        outcome = await _reconsolidator(store, embeddings, llm).reconcile(
            _candidate(source="design review"), ["s1"], {existing.id: existing}, now=NOW
        )

        assert outcome.action == "inserted"
        assert store.get_entry(outcome.entry_id).source == "design review"
        llm.decide_merge.assert_not_called()

    @pytest.mark.asyncio
    async def test_keep_reinforces_existing(self, store, make_entry, fake_embeddings, similar_vector, llm):
        existing = make_entry("The API listens on port 8080.", now=NOW - 1000)
        embeddings = fake_embeddings(default=similar_vector(0.95))
        llm.decide_merge.return_value = KeepDecision()
        cache = {existing.id: existing}

        outcome = await _reconsolidator(store, embeddings, llm).reconcile(_candidate(), ["s1"], cache, now=NOW)

        assert outcome.action == "kept"
        assert outcome.entry_id == existing.id
        loaded = store.get_entry(existing.id)
        assert loaded.observation_count == 2
        assert loaded.last_accessed_at == NOW
        assert cache[existing.id].observation_count == 2
        assert len(store.get_entries()) == 1

    @pytest.mark.asyncio
    async def test_update_rewrites_entry_and_reembeds(self, store, make_entry, fake_embeddings, similar_vector, llm):
        """The merged content gets a fresh vector and keeps both provenances."""
        existing = make_entry("The API listens on port 8080.", derived_from=["s0"])
        embeddings = fake_embeddings(
            vectors={"8080 in dev": [0.0, 0.0, 1.0]},
            default=similar_vector(0.95),
        )
        llm.decide_merge.return_value = UpdateDecision(
            action="update", type="fact", content="The API listens on 8080 in dev and 9090 in prod.",
            topics=["api", "ports"], confidence=0.9,
        )
        cache = {existing.id: existing}
        store.set_embedding = MagicMock(wraps=store.set_embedding)

        outcome = await _reconsolidator(store, embeddings, llm).reconcile(_candidate(), ["s1"], cache, now=NOW)

        assert outcome.action == "updated"
        loaded = store.get_entry(existing.id)
        assert loaded.content == "The API listens on 8080 in dev and 9090 in prod."
        assert loaded.topics == ["api", "ports"]
        assert loaded.derived_from == ["s0", "s1"]
        assert loaded.embedding == pytest.approx([0.0, 0.0, 1.0])
        assert cache[existing.id].embedding == pytest.approx([0.0, 0.0, 1.0])
        assert len(embeddings.calls) == 2
        # Content and vector land in one write
        store.set_embedding.assert_not_called()

    @pytest.mark.asyncio
    async def test_insert_decision_adds_new_entry(self, store, make_entry, fake_embeddings, similar_vector, llm):
        existing = make_entry("The API listens on port 8080.")
        embeddings = fake_embeddings(default=similar_vector(0.9))

        outcome = await _reconsolidator(store, embeddings, llm).reconcile(
            _candidate(type="decision"), ["s1"], {existing.id: existing}, now=NOW
        )

        assert outcome.action == "inserted"
        assert outcome.entry_id != existing.id
        assert store.get_entry(outcome.entry_id).type == KnowledgeType.DECISION
        assert store.get_entry(existing.id).status == KnowledgeStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_later_candidates_see_earlier_inserts(self, store, fake_embeddings, llm):
        """Two near-identical candidates in one batch: the second is reconciled against the first."""
        embeddings = fake_embeddings(default=[0.0, 1.0, 0.0])
        llm.decide_merge.return_value = KeepDecision()
        cache = {}
        reconsolidator = _reconsolidator(store, embeddings, llm)

        first = await reconsolidator.reconcile(_candidate(), ["s1"], cache, now=NOW)
        second = await reconsolidator.reconcile(_candidate("The API port is 9090."), ["s1"], cache, now=NOW)

        assert first.action == "inserted"
        assert second.action == "kept"
        assert second.entry_id == first.entry_id
        existing_arg = llm.decide_merge.call_args.args[0]
        assert existing_arg.id == first.entry_id
        assert len(store.get_entries()) == 1


class TestThresholdBoundary:
    """Integer vectors keep the cosine exact through float32 storage."""

    AXIS = [1.0, 0.0, 0.0, 0.0]
    AT_THRESHOLD = [41.0, 27.0, 9.0, 3.0]  # 41 / 50 == 0.82

    @pytest.mark.asyncio
    async def test_similarity_at_threshold_is_reconciled(self, store, make_entry, fake_embeddings, llm):
        existing = make_entry("The API listens on port 8080.", embedding=self.AXIS)
        loaded = store.get_entry(existing.id)
        embeddings = fake_embeddings(default=self.AT_THRESHOLD)
        llm.decide_merge.return_value = KeepDecision()

        outcome = await _reconsolidator(store, embeddings, llm).reconcile(
            _candidate(), ["s1"], {loaded.id: loaded}, now=NOW
        )

        assert outcome.action == "kept"
        assert outcome.similarity == pytest.approx(0.82)
        llm.decide_merge.assert_awaited_once()
        assert len(store.get_entries()) == 1

    @pytest.mark.asyncio
    async def test_similarity_just_below_threshold_inserts(
        self, store, make_entry, fake_embeddings, similar_vector, llm
    ):
        existing = make_entry("The API listens on port 8080.")
        loaded = store.get_entry(existing.id)
        embeddings = fake_embeddings(default=similar_vector(0.8199))

        outcome = await _reconsolidator(store, embeddings, llm).reconcile(
            _candidate(), ["s1"], {loaded.id: loaded}, now=NOW
        )

        assert outcome.action == "inserted"
        llm.decide_merge.assert_not_called()
        assert len(store.get_entries()) == 2
