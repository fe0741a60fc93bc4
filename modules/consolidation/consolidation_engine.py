"""
Consolidation Engine
Runs one consolidation pass: new episodes -> extraction -> reconciliation ->
contradiction scan -> decay -> embedding backfill -> cursor advance.

Chunks are processed strictly in sequence. Each episode range is recorded as soon
as its chunk finishes, so a failure later in the run only repeats unfinished chunks.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from config.settings import ConsolidationSettings, settings
from core.interfaces.embedding_service_interface import EmbeddingServiceInterface
from core.types.knowledge_types import ConsolidationResult, KnowledgeEntry, now_ms
from modules.activation.activation_engine import ActivationEngine
from modules.consolidation.contradiction_scanner import ContradictionScanner
from modules.consolidation.decay import DecayEngine
from modules.consolidation.reconsolidation import Reconsolidator
from modules.embedding.similarity import cosine_similarity
from modules.episodes.episode_reader import (
    CONTENT_TYPE_SUMMARY,
    CandidateSession,
    Episode,
    EpisodeReader,
)
from modules.knowledge.knowledge_store import KnowledgeStore
from modules.llm.consolidation_llm import ConsolidationLLM

logger = logging.getLogger(__name__)

RELEVANCE_QUERY_CHARS = 8000


def format_episodes(episodes: Sequence[Episode]) -> str:
    blocks = []
    for ep in episodes:
        date = datetime.fromtimestamp(ep.time_created / 1000, tz=timezone.utc).strftime("%Y-%m-%d")
        kind = " (compaction summary)" if ep.content_type == CONTENT_TYPE_SUMMARY else ""
        blocks.append(f'### Session: "{ep.session_title}"{kind} ({date}, project: {ep.project_name})\n{ep.content}')
    return "\n\n---\n\n".join(blocks)


def format_knowledge(entries: Sequence[KnowledgeEntry]) -> str:
    return "\n".join(
        f"- [{e.type.value}] {e.content} "
        f"(topics: {', '.join(e.topics)}; confidence: {e.confidence}; scope: {e.scope.value})"
        for e in entries
    )


def compute_next_cursor(
    current: int,
    candidates: Sequence[CandidateSession],
    episodes: Sequence[Episode],
    batch_limit: int,
) -> int:
    """
    Newest record time considered this run, held one unit below the last
    candidate when the batch was full so sessions sharing that timestamp are
    fetched again. Never moves backward.
    """
    times = [c.max_message_time for c in candidates] + [e.max_message_time for e in episodes]
    newest = max(times, default=current)
    if candidates and len(candidates) >= batch_limit:
        newest = min(newest, candidates[-1].max_message_time - 1)
    return max(current, newest)


@dataclass
class _ChunkStats:
    created: int = 0
    updated: int = 0
    conflicts_detected: int = 0
    conflicts_resolved: int = 0
    changed_ids: List[str] = field(default_factory=list)


class ConsolidationEngine:

    def __init__(
        self,
        store: KnowledgeStore,
        episode_reader: EpisodeReader,
        llm: ConsolidationLLM,
        embeddings: EmbeddingServiceInterface,
        activation: ActivationEngine,
        config: Optional[ConsolidationSettings] = None,
        decay: Optional[DecayEngine] = None,
        reconsolidator: Optional[Reconsolidator] = None,
        scanner: Optional[ContradictionScanner] = None,
    ):
        self.store = store
        self.episode_reader = episode_reader
        self.llm = llm
        self.embeddings = embeddings
        self.activation = activation
        self.config = config or settings.consolidation
        self.decay = decay or DecayEngine(store)
        self.reconsolidator = reconsolidator or Reconsolidator(store, embeddings, llm, self.config)
        self.scanner = scanner or ContradictionScanner(store, llm, self.config)

    def check_pending(self) -> Dict[str, Any]:
        state = self.store.get_consolidation_state()
        return {
            "pendingSessions": self.episode_reader.count_new_sessions(state.last_message_time_created),
            "lastConsolidatedAt": state.last_consolidated_at or None,
        }

    async def consolidate(self) -> ConsolidationResult:
        """One full pass. Callers hold the run lock; this method does not take it."""
        started = time.monotonic()
        state = self.store.get_consolidation_state()
        cursor = state.last_message_time_created
        result = ConsolidationResult()

        candidates = self.episode_reader.get_candidate_sessions(cursor, self.config.max_sessions)
        if not candidates:
            logger.info("[consolidation] No new sessions since last run")
            result.entries_archived = await self._maintenance()
            result.duration_ms = int((time.monotonic() - started) * 1000)
            return result

        candidate_ids = [c.id for c in candidates]
        processed = self.store.get_processed_episode_ranges(candidate_ids)
        episodes = self.episode_reader.get_new_episodes(candidate_ids, processed)
        logger.info(
            f"[consolidation] {len(candidates)} candidate sessions, {len(episodes)} new episodes "
            f"(cursor {cursor})"
        )

        sessions_with_work = set()
        chunk_size = max(1, self.config.chunk_size)
        for start in range(0, len(episodes), chunk_size):
            chunk = episodes[start:start + chunk_size]
            stats = await self._process_chunk(chunk)

            result.entries_created += stats.created
            result.entries_updated += stats.updated
            result.conflicts_detected += stats.conflicts_detected
            result.conflicts_resolved += stats.conflicts_resolved
            result.segments_processed += len(chunk)

            # Entries are not traced back to single episodes, so the chunk's yield is split evenly
            per_episode = round((stats.created + stats.updated) / len(chunk))
            for ep in chunk:
                self.store.record_episode(
                    ep.session_id, ep.start_message_id, ep.end_message_id,
                    ep.content_type, entries_created=per_episode,
                )
                sessions_with_work.add(ep.session_id)

            logger.info(
                f"[consolidation] Chunk {start // chunk_size + 1}: {len(chunk)} episodes, "
                f"+{stats.created} created, {stats.updated} updated"
            )

        result.sessions_processed = len(sessions_with_work)
        result.entries_archived = await self._maintenance()

        new_cursor = compute_next_cursor(cursor, candidates, episodes, self.config.max_sessions)
        self.store.advance_consolidation_state(
            new_cursor,
            sessions_processed=result.sessions_processed,
            entries_created=result.entries_created,
            entries_updated=result.entries_updated,
        )

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"[consolidation] Done: {result.model_dump()}")
        return result

    async def _maintenance(self) -> int:
        # Decay runs even when nothing new arrived, otherwise idle periods never age entries
        report = self.decay.apply()
        await self.activation.ensure_embeddings()
        return report.archived

    async def _process_chunk(self, chunk: List[Episode]) -> _ChunkStats:
        stats = _ChunkStats()
        episodes_text = format_episodes(chunk)

        live_entries = self.store.get_live_entries_with_embeddings()
        relevant = await self._relevant_knowledge(episodes_text)
        candidates = await self.llm.extract_knowledge(episodes_text, format_knowledge(relevant))
        if not candidates:
            return stats

        source_ids = list(dict.fromkeys(ep.session_id for ep in chunk))
        live_cache: Dict[str, KnowledgeEntry] = {e.id: e for e in live_entries}
        now = now_ms()

        for candidate in candidates:
            try:
                outcome = await self.reconsolidator.reconcile(candidate, source_ids, live_cache, now)
            except Exception as e:
                logger.error(
                    f"[consolidation] Skipping candidate after reconciliation failure: "
                    f"{candidate.content[:80]!r}: {e}",
                    exc_info=True,
                )
                continue
            if outcome.action == "inserted":
                stats.created += 1
                stats.changed_ids.append(outcome.entry_id)
            elif outcome.action == "updated":
                stats.updated += 1
                stats.changed_ids.append(outcome.entry_id)

        scan = await self.scanner.scan(stats.changed_ids)
        stats.conflicts_detected = scan.detected
        stats.conflicts_resolved = scan.resolved
        return stats

    async def _relevant_knowledge(self, episodes_text: str) -> List[KnowledgeEntry]:
        """Every live entry when few exist, otherwise the ones nearest the chunk text."""
        cap = self.config.max_relevant_knowledge
        if self.store.count_live_entries() <= cap:
            return self.store.get_live_entries()

        query_embedding = await self.embeddings.embed_text(episodes_text[:RELEVANCE_QUERY_CHARS])
        scored = []
        for entry in self.store.get_live_entries_with_embeddings():
            try:
                scored.append((cosine_similarity(query_embedding, entry.embedding), entry))
            except ValueError:
                continue
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [entry for _, entry in scored[:cap]]
