"""
Decay Engine

A forgetting curve whose half-life stretches with evidence and use:

    effective_half_life = base_half_life(type) * (1 + log2(1 + observations)) * (1 + log2(1 + accesses))
    strength = clamp(confidence * exp(-ln2 * days_since_access / effective_half_life), 0, 1)

Confidence is the ceiling: no amount of reinforcement lifts strength above it.
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, Optional

from config.settings import DecaySettings, settings
from core.types.knowledge_types import MS_PER_DAY, KnowledgeEntry, KnowledgeStatus, now_ms
from modules.knowledge.knowledge_store import KnowledgeStore

logger = logging.getLogger(__name__)

STRENGTH_EPSILON = 0.01
DEFAULT_HALF_LIFE_TYPE = "fact"


def base_half_life(entry_type, half_life_days: Dict[str, float]) -> float:
    type_value = getattr(entry_type, "value", entry_type)
    return half_life_days.get(type_value, half_life_days.get(DEFAULT_HALF_LIFE_TYPE, 30.0))


def compute_strength(
    entry: KnowledgeEntry,
    half_life_days: Optional[Dict[str, float]] = None,
    now: Optional[int] = None,
) -> float:
    half_life_days = half_life_days or settings.decay.half_life_days
    now = now if now is not None else now_ms()

    days_since_access = max(0.0, (now - entry.last_accessed_at) / MS_PER_DAY)
    observation_bonus = 1 + math.log2(1 + entry.observation_count)
    access_bonus = 1 + math.log2(1 + entry.access_count)
    effective_half_life = base_half_life(entry.type, half_life_days) * observation_bonus * access_bonus

    decay_factor = math.exp(-math.log(2) * days_since_access / effective_half_life)
    return max(0.0, min(1.0, entry.confidence * decay_factor))


@dataclass
class DecayReport:
    updated: int = 0
    archived: int = 0
    tombstoned: int = 0


class DecayEngine:

    def __init__(self, store: KnowledgeStore, config: Optional[DecaySettings] = None):
        self.store = store
        self.config = config or settings.decay

    def apply(self, now: Optional[int] = None) -> DecayReport:
        """Recompute live strengths, archive the faded, tombstone long-archived entries."""
        now = now if now is not None else now_ms()
        report = DecayReport()

        for entry in self.store.get_live_entries():
            strength = compute_strength(entry, self.config.half_life_days, now)
            if strength < self.config.archive_threshold:
                self.store.archive_entry(entry.id, strength, now)
                report.archived += 1
                logger.info(f"[decay] Archived {entry.id} (strength {strength:.3f}): {entry.content[:80]}")
            elif abs(strength - entry.strength) > STRENGTH_EPSILON:
                self.store.update_strength(entry.id, strength)
                report.updated += 1

        cutoff = now - self.config.tombstone_days * MS_PER_DAY
        for entry in self.store.get_entries_by_status(KnowledgeStatus.ARCHIVED):
            if entry.updated_at < cutoff:
                self.store.tombstone_entry(entry.id, now)
                report.tombstoned += 1

        if report.archived or report.tombstoned:
            logger.info(
                f"[decay] {report.updated} strength updates, {report.archived} archived, "
                f"{report.tombstoned} tombstoned"
            )
        return report
