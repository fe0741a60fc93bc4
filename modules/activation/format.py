"""Text rendering of activation results for prompt injection and other plain-text consumers."""

from typing import Optional

from core.types.knowledge_types import ActivationResult, ContradictionAnnotation, Staleness

CONFLICT_TRUNCATE_LEN = 100


def truncate(text: str, max_len: int) -> str:
    return text if len(text) <= max_len else f"{text[:max_len]}…"


def stale_tag(staleness: Staleness) -> str:
    if not staleness.may_be_stale:
        return ""
    return f" [may be outdated — last accessed {staleness.last_accessed_days_ago}d ago]"


def contradiction_tag_inline(contradiction: Optional[ContradictionAnnotation]) -> str:
    if contradiction is None:
        return ""
    snippet = truncate(contradiction.conflicting_content, CONFLICT_TRUNCATE_LEN)
    return f' [CONFLICTED — conflicts with: "{snippet}". {contradiction.caveat}]'


def contradiction_tag_block(contradiction: Optional[ContradictionAnnotation]) -> str:
    if contradiction is None:
        return ""
    snippet = truncate(contradiction.conflicting_content, CONFLICT_TRUNCATE_LEN)
    return f'\n   ⚠ CONFLICTED — conflicts with: "{snippet}"\n   Caveat: {contradiction.caveat}'


def format_activation_text(result: ActivationResult, block: bool = False) -> str:
    """Markdown list, one line per activated entry; empty string when nothing activated."""
    if not result.entries:
        return ""
    lines = ["## Relevant knowledge"]
    for activated in result.entries:
        entry = activated.entry
        tag = contradiction_tag_block if block else contradiction_tag_inline
        lines.append(
            f"- [{entry.type.value}] {entry.content}"
            f"{stale_tag(activated.staleness)}{tag(activated.contradiction)}"
        )
    return "\n".join(lines)
