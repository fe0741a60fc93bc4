from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
import time


def now_ms() -> int:
    """Wall clock in unix milliseconds, the time unit used throughout the store."""
    return int(time.time() * 1000)


MS_PER_DAY = 24 * 60 * 60 * 1000


class KnowledgeType(str, Enum):
    FACT = "fact"
    PRINCIPLE = "principle"
    PATTERN = "pattern"
    DECISION = "decision"
    PROCEDURE = "procedure"


class KnowledgeStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    SUPERSEDED = "superseded"
    CONFLICTED = "conflicted"
    TOMBSTONED = "tombstoned"


class KnowledgeScope(str, Enum):
    PERSONAL = "personal"
    TEAM = "team"


class RelationType(str, Enum):
    SUPPORTS = "supports"
    CONTRADICTS = "contradicts"
    REFINES = "refines"
    DEPENDS_ON = "depends_on"
    SUPERSEDES = "supersedes"


LIVE_STATUSES = (KnowledgeStatus.ACTIVE, KnowledgeStatus.CONFLICTED)


def clamp_knowledge_type(value: Any) -> KnowledgeType:
    """
    Map a free-form classification onto the closed type set.

    Exact matches win; otherwise the first known type contained in the value
    ("architectural decision" -> decision); otherwise fact.
    """
    if isinstance(value, KnowledgeType):
        return value
    normalized = str(value or "").strip().lower()
    for kt in KnowledgeType:
        if normalized == kt.value:
            return kt
    for kt in KnowledgeType:
        if kt.value in normalized:
            return kt
    return KnowledgeType.FACT


def clamp_scope(value: Any) -> KnowledgeScope:
    if isinstance(value, KnowledgeScope):
        return value
    normalized = str(value or "").strip().lower()
    if normalized == KnowledgeScope.TEAM.value:
        return KnowledgeScope.TEAM
    return KnowledgeScope.PERSONAL


def clamp_confidence(value: Any, default: float = 0.5) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return default
    if confidence != confidence:  # NaN
        return default
    return max(0.0, min(1.0, confidence))


class CamelModel(BaseModel):
    """Snake-case in Python, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class KnowledgeEntry(CamelModel):
    id: str
    type: KnowledgeType
    content: str
    topics: List[str] = Field(default_factory=list)
    confidence: float = 0.5
    source: str = ""
    scope: KnowledgeScope = KnowledgeScope.PERSONAL
    status: KnowledgeStatus = KnowledgeStatus.ACTIVE
    strength: float = 1.0
    created_at: int
    updated_at: int
    last_accessed_at: int
    access_count: int = 0
    observation_count: int = 1
    superseded_by: Optional[str] = None
    derived_from: List[str] = Field(default_factory=list)
    embedding: Optional[List[float]] = None

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    def public_dict(self) -> Dict[str, Any]:
        """JSON-ready dict without the embedding vector."""
        return self.model_dump(mode="json", by_alias=True, exclude={"embedding"})


class KnowledgeRelation(CamelModel):
    id: str
    source_id: str
    target_id: str
    type: RelationType
    created_at: int


class ConsolidationState(CamelModel):
    last_consolidated_at: int = 0
    last_message_time_created: int = 0
    total_sessions_processed: int = 0
    total_entries_created: int = 0
    total_entries_updated: int = 0


class Staleness(CamelModel):
    age_days: int
    strength: float
    last_accessed_days_ago: int
    may_be_stale: bool


class ContradictionAnnotation(CamelModel):
    conflicting_entry_id: str
    conflicting_content: str
    caveat: str


class ActivatedEntry(CamelModel):
    entry: KnowledgeEntry
    raw_similarity: float
    similarity: float
    staleness: Staleness
    contradiction: Optional[ContradictionAnnotation] = None

    def public_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json", by_alias=True, exclude={"entry": {"embedding"}})
        if self.contradiction is None:
            data.pop("contradiction", None)
        return data


class ActivationResult(CamelModel):
    entries: List[ActivatedEntry] = Field(default_factory=list)
    query: str = ""
    total_live_count: int = 0

    def public_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "entries": [e.public_dict() for e in self.entries],
            "totalLiveCount": self.total_live_count,
        }


class ConsolidationResult(CamelModel):
    sessions_processed: int = 0
    segments_processed: int = 0
    entries_created: int = 0
    entries_updated: int = 0
    entries_archived: int = 0
    conflicts_detected: int = 0
    conflicts_resolved: int = 0
    duration_ms: int = 0


@dataclass(frozen=True)
class ProcessedRange:
    """An episode already consolidated, identified by its first and last message ids."""
    start_message_id: str
    end_message_id: str
