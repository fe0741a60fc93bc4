"""
Validated shapes for the three consolidation collaborators.

Every parser falls back to a safe value on malformed output instead of raising:
extraction -> [], reconciliation -> InsertDecision, contradiction -> result dropped.
"""

import json
import logging
import re
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from core.types.knowledge_types import (
    CamelModel,
    KnowledgeScope,
    KnowledgeType,
    clamp_confidence,
    clamp_knowledge_type,
    clamp_scope,
)

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def extract_json(text: str) -> Optional[Any]:
    """Pull a JSON value out of model output: direct, fenced block, then outermost brackets."""
    if not text or not text.strip():
        return None
    stripped = text.strip()

    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        pass

    fenced = _FENCE_RE.search(stripped)
    if fenced:
        try:
            return json.loads(fenced.group(1).strip())
        except json.JSONDecodeError:
            pass

    starts = [i for i in (stripped.find("["), stripped.find("{")) if i != -1]
    if starts:
        start = min(starts)
        close = "]" if stripped[start] == "[" else "}"
        end = stripped.rfind(close)
        if end > start:
            try:
                return json.loads(stripped[start:end + 1])
            except json.JSONDecodeError:
                pass
    return None


# --- Extraction ---

class _KnowledgeFields(BaseModel):
    type: KnowledgeType
    content: str
    topics: List[str] = Field(default_factory=list)
    confidence: float = 0.5

    @field_validator("type", mode="before")
    @classmethod
    def _clamp_type(cls, v):
        return clamp_knowledge_type(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v):
        return clamp_confidence(v)

    @field_validator("topics", mode="before")
    @classmethod
    def _normalize_topics(cls, v):
        if isinstance(v, str):
            v = [v]
        if not isinstance(v, list):
            return []
        return [str(t).strip() for t in v if str(t).strip()]

    @field_validator("content")
    @classmethod
    def _require_content(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("content is empty")
        return v


class ExtractedKnowledge(_KnowledgeFields):
    scope: KnowledgeScope = KnowledgeScope.PERSONAL
    source: Optional[str] = None

    @field_validator("scope", mode="before")
    @classmethod
    def _clamp_scope(cls, v):
        return clamp_scope(v)


def parse_extraction(text: str) -> List[ExtractedKnowledge]:
    data = extract_json(text)
    if isinstance(data, dict):
        # Some models wrap the list: {"entries": [...]}
        data = next((v for v in data.values() if isinstance(v, list)), None)
    if not isinstance(data, list):
        logger.warning(f"[consolidation] Extraction response was not a JSON array; treating as empty: {str(text)[:200]}")
        return []

    entries: List[ExtractedKnowledge] = []
    for item in data:
        if not isinstance(item, dict):
            continue
        try:
            entries.append(ExtractedKnowledge.model_validate(item))
        except ValidationError as e:
            logger.debug(f"Dropping invalid extracted entry {item!r}: {e.errors()[0]['msg']}")
    return entries


# --- Reconciliation ---

class KeepDecision(BaseModel):
    action: Literal["keep"] = "keep"


class UpdateDecision(_KnowledgeFields):
    action: Literal["update", "replace"]


class InsertDecision(BaseModel):
    action: Literal["insert"] = "insert"


MergeDecision = Annotated[
    Union[KeepDecision, UpdateDecision, InsertDecision],
    Field(discriminator="action"),
]

_merge_decision_adapter = TypeAdapter(MergeDecision)


def parse_merge_decision(text: str) -> Union[KeepDecision, UpdateDecision, InsertDecision]:
    data = extract_json(text)
    if isinstance(data, dict) and isinstance(data.get("action"), str):
        data = {**data, "action": data["action"].strip().lower()}
    try:
        return _merge_decision_adapter.validate_python(data)
    except ValidationError as e:
        logger.warning(f"[consolidation] Unusable merge decision, defaulting to insert: {e.errors()[0]['msg']}")
        return InsertDecision()


# --- Contradiction ---

Resolution = Literal["no_conflict", "supersede_old", "supersede_new", "merge", "irresolvable"]


class ContradictionResult(CamelModel):
    candidate_id: str
    resolution: Resolution
    reason: Optional[str] = None
    merged_content: Optional[str] = None
    merged_type: Optional[str] = None
    merged_topics: Optional[List[str]] = None
    merged_confidence: Optional[float] = None

    def merge_data(self) -> Dict[str, Any]:
        return {
            "content": self.merged_content,
            "type": self.merged_type,
            "topics": self.merged_topics,
            "confidence": self.merged_confidence,
        }


def parse_contradiction_results(text: str) -> List[ContradictionResult]:
    data = extract_json(text)
    if isinstance(data, dict):
        data = data.get("results", [data])
    if not isinstance(data, list):
        logger.warning(f"[contradiction] Response was not a JSON array; discarding: {str(text)[:200]}")
        return []

    results: List[ContradictionResult] = []
    for item in data:
        if not isinstance(item, dict):
            continue
        try:
            results.append(ContradictionResult.model_validate(item))
        except ValidationError as e:
            logger.warning(f"[contradiction] Discarding malformed result {item!r}: {e.errors()[0]['msg']}")
    return results
