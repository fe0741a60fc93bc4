"""
Knowledge API Router
Retrieval, on-demand consolidation, review and inspection endpoints.

Services live on request.app.state (wired in main.py's lifespan):
store, activation, consolidation, run_lock, admin_token.
"""

from fastapi import APIRouter, Header, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from typing import Literal, Optional
import logging
import secrets

from core.types.knowledge_types import KnowledgeScope, KnowledgeStatus, KnowledgeType
from modules.activation.format import format_activation_text
from utils.exceptions import ConsolidationInProgressError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["knowledge"])

REVIEW_STALE_STRENGTH = 0.3
REVIEW_TEAM_CONFIDENCE = 0.7


def _require_admin(request: Request, authorization: Optional[str]) -> None:
    """Bearer token check; with no token configured the mutating endpoints stay closed."""
    expected = getattr(request.app.state, "admin_token", None)
    supplied = ""
    if authorization and authorization.lower().startswith("bearer "):
        supplied = authorization[len("bearer "):].strip()
    if not expected or not secrets.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(401, "Unauthorized")


@router.get("/activate")
async def activate(
    request: Request,
    q: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1, le=100),
    threshold: Optional[float] = Query(None, ge=0.0, le=1.0),
    format: Literal["json", "text"] = "json",
):
    """Knowledge relevant to the query `q`, ranked by decay-weighted similarity."""
    if not q or not q.strip():
        raise HTTPException(400, "Missing query parameter 'q'")

    activation = request.app.state.activation
    try:
        result = await activation.activate(q.strip(), limit=limit, threshold=threshold)
    except Exception as e:
        logger.error(f"Activation failed for query {q[:80]!r}: {e}", exc_info=True)
        raise HTTPException(500, f"Activation failed: {e}")

    if format == "text":
        return PlainTextResponse(format_activation_text(result))
    return result.public_dict()


@router.post("/consolidate")
async def consolidate(request: Request, authorization: Optional[str] = Header(None)):
    _require_admin(request, authorization)

    lock = request.app.state.run_lock
    try:
        lock.acquire()
    except ConsolidationInProgressError as e:
        raise HTTPException(409, str(e))
    try:
        result = await request.app.state.consolidation.consolidate()
    except Exception as e:
        logger.error(f"[consolidation] On-demand run failed: {e}", exc_info=True)
        raise HTTPException(500, f"Consolidation failed: {e}")
    finally:
        lock.release()
    return result.model_dump(by_alias=True)


@router.post("/reinitialize")
async def reinitialize(
    request: Request,
    confirm: Optional[str] = None,
    authorization: Optional[str] = Header(None),
):
    """Wipe all knowledge and reset the cursor. Requires ?confirm=yes."""
    _require_admin(request, authorization)
    if confirm != "yes":
        raise HTTPException(400, "Destructive operation: pass ?confirm=yes to proceed")

    lock = request.app.state.run_lock
    if not lock.try_acquire():
        raise HTTPException(409, "Consolidation in progress; try again when it finishes")
    try:
        request.app.state.store.reinitialize()
    finally:
        lock.release()
    return {"status": "reinitialized"}


@router.get("/review")
async def review(request: Request):
    """Entries that need a human: open conflicts, fading knowledge, and team-worthy personal entries."""
    store = request.app.state.store
    conflicted = store.get_entries_by_status(KnowledgeStatus.CONFLICTED)
    active = store.get_entries_by_status(KnowledgeStatus.ACTIVE)

    conflicts = []
    for entry in conflicted:
        counterparts = [store.get_entry(cid) for cid in store.get_contradiction_counterparts(entry.id)]
        conflicts.append({
            "entry": entry.public_dict(),
            "conflictsWith": [c.public_dict() for c in counterparts if c is not None],
        })

    return {
        "conflicted": conflicts,
        "stale": [e.public_dict() for e in active if e.strength < REVIEW_STALE_STRENGTH],
        "teamRelevant": [
            e.public_dict() for e in active
            if e.scope == KnowledgeScope.TEAM and e.confidence >= REVIEW_TEAM_CONFIDENCE
        ],
    }


@router.get("/status")
async def status(request: Request):
    store = request.app.state.store
    consolidation = request.app.state.consolidation
    try:
        pending = consolidation.check_pending()
    except Exception as e:
        logger.warning(f"Could not read pending sessions: {e}")
        pending = {"pendingSessions": None, "lastConsolidatedAt": None}

    return {
        "status": "ok",
        "knowledge": store.get_stats(),
        "consolidation": {
            **store.get_consolidation_state().model_dump(by_alias=True),
            **pending,
            "running": request.app.state.run_lock.is_running,
        },
    }


@router.get("/entries")
async def list_entries(
    request: Request,
    status: Optional[KnowledgeStatus] = None,
    type: Optional[KnowledgeType] = None,
    scope: Optional[KnowledgeScope] = None,
):
    store = request.app.state.store
    entries = store.get_entries(
        status=status.value if status else None,
        type=type.value if type else None,
        scope=scope.value if scope else None,
    )
    return {"entries": [e.public_dict() for e in entries], "count": len(entries)}


@router.get("/entries/{entry_id}")
async def get_entry(request: Request, entry_id: str):
    store = request.app.state.store
    entry = store.get_entry(entry_id)
    if entry is None:
        raise HTTPException(404, f"Entry {entry_id} not found")
    return {
        "entry": entry.public_dict(),
        "relations": [r.model_dump(mode="json", by_alias=True) for r in store.get_relations_for(entry_id)],
    }
