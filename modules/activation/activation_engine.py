"""
Activation Engine
Decay-weighted semantic retrieval over live knowledge entries.
"""

import logging
from typing import Dict, List, Optional

from config.settings import ActivationSettings, DecaySettings, settings
from core.interfaces.embedding_service_interface import EmbeddingServiceInterface
from core.types.knowledge_types import (
    MS_PER_DAY,
    ActivatedEntry,
    ActivationResult,
    ContradictionAnnotation,
    KnowledgeEntry,
    KnowledgeStatus,
    Staleness,
    now_ms,
)
from modules.consolidation.decay import base_half_life
from modules.embedding.similarity import cosine_similarity, entry_embedding_text
from modules.knowledge.knowledge_store import KnowledgeStore

logger = logging.getLogger(__name__)

CONFLICT_CAVEAT = (
    "This entry conflicts with another activated entry and is awaiting review. "
    "Verify before relying on either."
)


class ActivationEngine:

    def __init__(
        self,
        store: KnowledgeStore,
        embeddings: EmbeddingServiceInterface,
        config: Optional[ActivationSettings] = None,
        decay_config: Optional[DecaySettings] = None,
    ):
        self.store = store
        self.embeddings = embeddings
        self.config = config or settings.activation
        self.decay_config = decay_config or settings.decay

    async def activate(
        self,
        query: str,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
        now: Optional[int] = None,
    ) -> ActivationResult:
        """
        Rank live entries against the query.

        Entries pass on raw cosine similarity; rank is raw similarity times strength,
        so an old entry can sink but is never filtered out for age alone.
        Returned entries get retrieval reinforcement.
        """
        limit = limit or self.config.max_results
        threshold = self.config.similarity_threshold if threshold is None else threshold
        now = now if now is not None else now_ms()

        entries = self.store.get_live_entries_with_embeddings()
        if not entries:
            return ActivationResult(entries=[], query=query, total_live_count=0)

        query_embedding = await self.embeddings.embed_text(query)

        scored: List[ActivatedEntry] = []
        for entry in entries:
            try:
                raw = cosine_similarity(query_embedding, entry.embedding)
            except ValueError:
                logger.warning(f"Skipping {entry.id}: stored embedding dimension does not match the query")
                continue
            if raw < threshold:
                continue
            scored.append(ActivatedEntry(
                entry=entry,
                raw_similarity=raw,
                similarity=raw * entry.strength,
                staleness=self._staleness(entry, now),
            ))

        scored.sort(key=lambda a: a.similarity, reverse=True)
        scored = scored[:limit]

        self._annotate_contradictions(scored)
        self.store.record_access([a.entry.id for a in scored], now)

        return ActivationResult(entries=scored, query=query, total_live_count=len(entries))

    def _staleness(self, entry: KnowledgeEntry, now: int) -> Staleness:
        age_days = (now - entry.created_at) / MS_PER_DAY
        last_accessed_days = (now - entry.last_accessed_at) / MS_PER_DAY
        half_life = base_half_life(entry.type, self.decay_config.half_life_days)
        return Staleness(
            age_days=round(age_days),
            strength=entry.strength,
            last_accessed_days_ago=round(last_accessed_days),
            may_be_stale=age_days > half_life and entry.access_count < self.config.stale_access_count,
        )

    def _annotate_contradictions(self, activated: List[ActivatedEntry]) -> None:
        # Only conflicts whose both sides activated are worth surfacing
        by_id: Dict[str, ActivatedEntry] = {a.entry.id: a for a in activated}
        for item in activated:
            if item.entry.status != KnowledgeStatus.CONFLICTED:
                continue
            for counterpart_id in self.store.get_contradiction_counterparts(item.entry.id):
                counterpart = by_id.get(counterpart_id)
                if counterpart is None:
                    continue
                item.contradiction = ContradictionAnnotation(
                    conflicting_entry_id=counterpart_id,
                    conflicting_content=counterpart.entry.content,
                    caveat=CONFLICT_CAVEAT,
                )
                break

    async def ensure_embeddings(self) -> int:
        """Embed every live entry still missing a vector; returns how many were filled."""
        missing = self.store.get_live_entries_missing_embeddings()
        if not missing:
            return 0

        texts = [entry_embedding_text(e.type, e.content, e.topics) for e in missing]
        vectors = await self.embeddings.embed_batch(texts)
        for entry, vector in zip(missing, vectors):
            self.store.set_embedding(entry.id, vector)

        logger.info(f"Backfilled embeddings for {len(missing)} entries")
        return len(missing)
