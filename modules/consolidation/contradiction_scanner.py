"""
Contradiction Scanner

Checks entries changed in this batch against topic-overlapping live entries
whose similarity sits in [contradiction_min_similarity, reconsolidation_threshold):
related, but not close enough to have gone through reconciliation.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set

from config.settings import ConsolidationSettings, settings
from core.types.knowledge_types import KnowledgeEntry
from modules.embedding.similarity import cosine_similarity
from modules.knowledge.knowledge_store import KnowledgeStore
from modules.llm.consolidation_llm import ConsolidationLLM

logger = logging.getLogger(__name__)


@dataclass
class ScanReport:
    detected: int = 0
    resolved: int = 0


class ContradictionScanner:

    def __init__(
        self,
        store: KnowledgeStore,
        llm: ConsolidationLLM,
        config: Optional[ConsolidationSettings] = None,
    ):
        self.store = store
        self.llm = llm
        self.config = config or settings.consolidation

    def _band_candidates(self, entry: KnowledgeEntry, exclude_ids: Set[str]) -> List[KnowledgeEntry]:
        candidates = []
        for other in self.store.get_entries_with_overlapping_topics(entry.topics, exclude_ids):
            if other.embedding is None:
                continue
            try:
                similarity = cosine_similarity(entry.embedding, other.embedding)
            except ValueError:
                continue
            if self.config.contradiction_min_similarity <= similarity < self.config.reconsolidation_threshold:
                candidates.append(other)
        return candidates

    async def scan(self, changed_ids: Iterable[str]) -> ScanReport:
        """Scan every entry inserted or updated in this batch; untouched entries were checked before."""
        changed = list(dict.fromkeys(changed_ids))
        changed_set = set(changed)
        superseded_in_pass: Set[str] = set()
        report = ScanReport()

        for entry_id in changed:
            if entry_id in superseded_in_pass:
                continue
            entry = self.store.get_entry(entry_id)
            if entry is None or not entry.is_live or entry.embedding is None:
                continue

            # A pair already in conflict stays that way until reviewed
            open_conflicts = set(self.store.get_contradiction_counterparts(entry_id))
            candidates = self._band_candidates(entry, changed_set | superseded_in_pass | open_conflicts)
            if not candidates:
                continue

            results = await self.llm.detect_and_resolve_contradiction(entry, candidates)
            candidate_ids = {c.id for c in candidates}

            for result in results:
                if result.candidate_id not in candidate_ids:
                    logger.warning(
                        f"[contradiction] Ignoring result for unknown candidate {result.candidate_id} "
                        f"(checking {entry_id})"
                    )
                    continue
                if result.candidate_id in superseded_in_pass:
                    continue

                report.detected += 1
                self.store.apply_contradiction_resolution(
                    result.resolution,
                    new_id=entry_id,
                    existing_id=result.candidate_id,
                    merge_data=result.merge_data() if result.resolution == "merge" else None,
                )
                logger.info(
                    f"[contradiction] {result.resolution}: new={entry_id} existing={result.candidate_id}"
                    + (f" ({result.reason})" if result.reason else "")
                )

                if result.resolution == "irresolvable":
                    continue
                report.resolved += 1
                if result.resolution == "supersede_new":
                    superseded_in_pass.add(entry_id)
                    break
                superseded_in_pass.add(result.candidate_id)

        if report.detected:
            logger.info(f"[contradiction] {report.detected} detected, {report.resolved} resolved")
        return report
