"""
Reconsolidation Engine
Decides whether an extracted candidate is new knowledge or a revision of an existing entry.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional, Tuple

from config.settings import ConsolidationSettings, settings
from core.interfaces.embedding_service_interface import EmbeddingServiceInterface
from core.types.knowledge_types import KnowledgeEntry, KnowledgeStatus, now_ms
from modules.embedding.similarity import cosine_similarity, entry_embedding_text
from modules.knowledge.knowledge_store import KnowledgeStore, new_id
from modules.llm.consolidation_llm import ConsolidationLLM
from modules.llm.llm_responses import ExtractedKnowledge, KeepDecision, UpdateDecision

logger = logging.getLogger(__name__)


@dataclass
class ReconcileOutcome:
    action: Literal["inserted", "updated", "kept"]
    entry_id: str
    similarity: float = 0.0


def find_nearest(
    embedding: List[float], live_cache: Dict[str, KnowledgeEntry]
) -> Tuple[Optional[KnowledgeEntry], float]:
    best: Optional[KnowledgeEntry] = None
    best_similarity = -1.0
    for entry in live_cache.values():
        if entry.embedding is None or not entry.is_live:
            continue
        try:
            similarity = cosine_similarity(embedding, entry.embedding)
        except ValueError:
            logger.debug(f"Skipping {entry.id}: embedding dimension differs from the candidate's")
            continue
        if similarity > best_similarity:
            best, best_similarity = entry, similarity
    return best, max(best_similarity, 0.0)


class Reconsolidator:
    """
    For each candidate: embed, find the nearest live entry in the batch cache, then
    insert directly below the threshold or ask the merge model at or above it.

    The cache is the caller's dict of live entries with embeddings; it is updated
    in place after every insert and update so later candidates in the same batch
    see earlier ones.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        embeddings: EmbeddingServiceInterface,
        llm: ConsolidationLLM,
        config: Optional[ConsolidationSettings] = None,
    ):
        self.store = store
        self.embeddings = embeddings
        self.llm = llm
        self.config = config or settings.consolidation

    async def reconcile(
        self,
        candidate: ExtractedKnowledge,
        source_ids: List[str],
        live_cache: Dict[str, KnowledgeEntry],
        now: Optional[int] = None,
    ) -> ReconcileOutcome:
        now = now if now is not None else now_ms()
        embedding = await self.embeddings.embed_text(
            entry_embedding_text(candidate.type, candidate.content, candidate.topics)
        )

        nearest, similarity = find_nearest(embedding, live_cache)
        if nearest is None or similarity < self.config.reconsolidation_threshold:
            entry = self._insert(candidate, source_ids, embedding, now)
            live_cache[entry.id] = entry
            return ReconcileOutcome("inserted", entry.id, similarity)

        decision = await self.llm.decide_merge(nearest, candidate)

        if isinstance(decision, KeepDecision):
            self.store.reinforce_observation(nearest.id, now)
            live_cache[nearest.id] = nearest.model_copy(update={
                "observation_count": nearest.observation_count + 1,
                "last_accessed_at": now,
            })
            logger.debug(f"[consolidation] keep {nearest.id} (sim {similarity:.3f})")
            return ReconcileOutcome("kept", nearest.id, similarity)

        if isinstance(decision, UpdateDecision):
            # Embed first so the entry never sits without a vector once its content changes
            new_embedding = await self.embeddings.embed_text(
                entry_embedding_text(decision.type, decision.content, decision.topics)
            )
            merged = self.store.merge_entry(
                nearest.id,
                content=decision.content,
                type=decision.type,
                topics=decision.topics,
                confidence=decision.confidence,
                additional_sources=source_ids,
                embedding=new_embedding,
            )
            if merged is None:
                # Entry vanished underneath us; fall through to insert
                entry = self._insert(candidate, source_ids, embedding, now)
                live_cache[entry.id] = entry
                return ReconcileOutcome("inserted", entry.id, similarity)
            live_cache[merged.id] = merged
            logger.info(f"[consolidation] {decision.action} {merged.id} (sim {similarity:.3f}): {decision.content[:80]}")
            return ReconcileOutcome("updated", merged.id, similarity)

        entry = self._insert(candidate, source_ids, embedding, now)
        live_cache[entry.id] = entry
        return ReconcileOutcome("inserted", entry.id, similarity)

    def _insert(
        self, candidate: ExtractedKnowledge, source_ids: List[str], embedding: List[float], now: int
    ) -> KnowledgeEntry:
        default_source = f"consolidation {datetime.fromtimestamp(now / 1000, tz=timezone.utc):%Y-%m-%d}"
        entry = KnowledgeEntry(
            id=new_id(),
            type=candidate.type,
            content=candidate.content,
            topics=candidate.topics,
            confidence=candidate.confidence,
            source=candidate.source or default_source,
            scope=candidate.scope,
            status=KnowledgeStatus.ACTIVE,
            strength=candidate.confidence,
            created_at=now,
            updated_at=now,
            last_accessed_at=now,
            access_count=0,
            observation_count=1,
            derived_from=list(dict.fromkeys(source_ids)),
            embedding=embedding,
        )
        self.store.insert_entry(entry)
        logger.info(f"[consolidation] insert {entry.id} [{entry.type.value}]: {entry.content[:80]}")
        return entry
