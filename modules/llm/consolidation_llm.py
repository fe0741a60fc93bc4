"""
Consolidation LLM collaborators: extraction, reconciliation decisions and contradiction checks.

All three route through an LLMClientInterface; the model slot and output cap
differ per task. Parsing is delegated to llm_responses so malformed output never raises.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional, Union

from config.settings import LLMSettings, settings
from core.interfaces.llm_client_interface import LLMClientInterface
from core.types.knowledge_types import KnowledgeEntry
from modules.llm.llm_responses import (
    ContradictionResult,
    ExtractedKnowledge,
    InsertDecision,
    KeepDecision,
    UpdateDecision,
    parse_contradiction_results,
    parse_extraction,
    parse_merge_decision,
)

logger = logging.getLogger(__name__)


EXTRACTION_SYSTEM_PROMPT = """You consolidate raw conversation episodes into durable, structured knowledge entries.

Think of sleep consolidation: most of what happened fades, and only what is genuinely useful later is kept.
The bar is high. Most episodes yield nothing, so return [] unless a future session would clearly benefit from remembering it.

Types:
- "fact": a specific, stable piece of information (identifiers, conventions, configuration that rarely changes)
- "principle": a general rule learned from experience
- "pattern": a recurring tendency worth anticipating
- "decision": a design or architecture choice together with its rationale
- "procedure": a non-obvious multi-step workflow

Scope:
- "personal": relevant only to this user's own workflow
- "team": relevant to anyone on the team (schemas, business rules, processes)

Keep: reusable facts that would otherwise need looking up, decisions whose rationale is hard to rebuild,
procedures that took effort to figure out, principles or patterns confirmed more than once.

Skip: plain Q&A, debugging or exploration with no lasting conclusion, anything obvious or easily searched,
one-off details tied to that moment, restatements of EXISTING KNOWLEDGE, values likely to change soon.

If a new episode turns an existing fact into a recurring pattern, extract the generalized form.
Near-duplicates and contradictions are handled after extraction, so you need not flag them.

Each entry is 1-3 self-contained sentences.
Confidence: 0.9+ explicitly stated, 0.7-0.9 strong inference, 0.5-0.7 tentative.

Respond ONLY with a JSON array, no markdown and no commentary. Return [] when nothing qualifies."""

EXTRACTION_USER_TEMPLATE = """## EXISTING KNOWLEDGE
{existing_knowledge}

## RECENT EPISODES
{episodes}

Extract knowledge entries as a JSON array:
[
  {{
    "type": "fact|principle|pattern|decision|procedure",
    "content": "The knowledge itself (1-3 sentences)",
    "topics": ["topic1", "topic2"],
    "confidence": 0.5,
    "scope": "personal|team",
    "source": "Brief provenance, e.g. 'session: Churn Analysis, Feb 2026'"
  }}
]

If nothing is worth keeping, return []"""

MERGE_SYSTEM_PROMPT = """You manage a knowledge memory. You are shown an EXISTING entry and a NEW observation that is semantically close to it.
Decide what happens to the new observation:

- "keep": the existing entry already covers it; discard the observation
- "update": the observation adds detail, nuance or a correction; merge both into an improved existing entry
- "replace": the observation is a clear upgrade (more general, more accurate, or newer) and replaces the entry
- "insert": despite the similarity they describe different things; keep both

Prefer "keep" for restatements, "update" for added specifics or exceptions,
"replace" for generalizations or corrections, and "insert" only when the subjects genuinely differ.

For "update" or "replace", include the full improved content, the best type, a topics array and a confidence.
Respond ONLY with a JSON object, no markdown and no commentary."""

MERGE_USER_TEMPLATE = """EXISTING ENTRY:
type: {existing_type}
topics: {existing_topics}
confidence: {existing_confidence}
content: {existing_content}

NEW OBSERVATION:
type: {new_type}
topics: {new_topics}
confidence: {new_confidence}
content: {new_content}

Respond with exactly one of:
{{"action": "keep"}}
{{"action": "update", "content": "...", "type": "...", "topics": [...], "confidence": 0.0}}
{{"action": "replace", "content": "...", "type": "...", "topics": [...], "confidence": 0.0}}
{{"action": "insert"}}"""

CONTRADICTION_SYSTEM_PROMPT = """You check a knowledge base for integrity. You are shown a NEW entry and EXISTING entries that share topics with it.
For each existing entry decide whether it genuinely contradicts the new one and, if so, how to resolve it.

A contradiction is two mutually exclusive claims about the same subject, for example
"the server listens on 8080" versus "the server port moved to 9090".
Different aspects of one topic, a more specific refinement, or statements about non-overlapping periods are NOT contradictions.

Resolutions:
- "no_conflict": no genuine contradiction
- "supersede_old": the new entry is more correct or more recent; the existing one is superseded
- "supersede_new": the existing entry is more correct; the new one is superseded
- "merge": the apparent conflict resolves into one unified statement; give the merged fields
- "irresolvable": evidence and recency are balanced; a human must decide

Respond ONLY with a JSON array, one object per existing entry, in the order given."""

CONTRADICTION_USER_TEMPLATE = """NEW ENTRY (just added):
id: {new_id}
type: {new_type} | confidence: {new_confidence} | created: {new_created}
topics: {new_topics}
content: {new_content}

EXISTING CANDIDATES:
{candidates}

Respond with a JSON array, one result per candidate in the same order:
[
  {{
    "candidateId": "...",
    "resolution": "no_conflict|supersede_old|supersede_new|merge|irresolvable",
    "reason": "one sentence",
    "mergedContent": "only for merge",
    "mergedType": "only for merge",
    "mergedTopics": [],
    "mergedConfidence": 0.0
  }}
]"""

NO_EXISTING_KNOWLEDGE = "(No existing knowledge yet. This is a fresh start.)"


def _date(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def _type_value(value) -> str:
    return getattr(value, "value", value)


class ConsolidationLLM:

    def __init__(self, client: LLMClientInterface, config: Optional[LLMSettings] = None):
        self.client = client
        self.config = config or settings.llm

    async def extract_knowledge(self, episodes_text: str, existing_knowledge: str) -> List[ExtractedKnowledge]:
        """Candidate entries for a chunk of episodes; usually an empty list."""
        user_prompt = EXTRACTION_USER_TEMPLATE.format(
            existing_knowledge=existing_knowledge or NO_EXISTING_KNOWLEDGE,
            episodes=episodes_text,
        )
        response = await self.client.complete(
            self.config.extraction_model,
            EXTRACTION_SYSTEM_PROMPT,
            user_prompt,
            self.config.extraction_max_tokens,
        )
        entries = parse_extraction(response)
        logger.debug(f"[consolidation] Extraction returned {len(entries)} candidate(s)")
        return entries

    async def decide_merge(
        self, existing: KnowledgeEntry, candidate: ExtractedKnowledge
    ) -> Union[KeepDecision, UpdateDecision, InsertDecision]:
        user_prompt = MERGE_USER_TEMPLATE.format(
            existing_type=_type_value(existing.type),
            existing_topics=", ".join(existing.topics),
            existing_confidence=existing.confidence,
            existing_content=existing.content,
            new_type=_type_value(candidate.type),
            new_topics=", ".join(candidate.topics),
            new_confidence=candidate.confidence,
            new_content=candidate.content,
        )
        response = await self.client.complete(
            self.config.merge_model,
            MERGE_SYSTEM_PROMPT,
            user_prompt,
            self.config.merge_max_tokens,
        )
        return parse_merge_decision(response)

    async def detect_and_resolve_contradiction(
        self, new_entry: KnowledgeEntry, candidates: List[KnowledgeEntry]
    ) -> List[ContradictionResult]:
        """
        Check one entry against its topic-overlapping candidates.

        Only actionable results come back: no_conflict is filtered out here.
        """
        if not candidates:
            return []

        candidate_text = "\n\n".join(
            f"[{i}] id: {c.id}\n"
            f"type: {_type_value(c.type)} | confidence: {c.confidence} | created: {_date(c.created_at)}\n"
            f"topics: {', '.join(c.topics)}\n"
            f"content: {c.content}"
            for i, c in enumerate(candidates, 1)
        )
        user_prompt = CONTRADICTION_USER_TEMPLATE.format(
            new_id=new_entry.id,
            new_type=_type_value(new_entry.type),
            new_confidence=new_entry.confidence,
            new_created=_date(new_entry.created_at),
            new_topics=", ".join(new_entry.topics),
            new_content=new_entry.content,
            candidates=candidate_text,
        )
        response = await self.client.complete(
            self.config.contradiction_model,
            CONTRADICTION_SYSTEM_PROMPT,
            user_prompt,
            self.config.contradiction_max_tokens,
        )
        return [r for r in parse_contradiction_results(response) if r.resolution != "no_conflict"]
