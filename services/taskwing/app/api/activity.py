"""Activity log API."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from ..persistence.models import ActivityEntry
from ..persistence.store import KnowledgeStore
from .deps import get_store

router = APIRouter(prefix="/api", tags=["activity"])

DEFAULT_LIMIT = 50
MAX_LIMIT = 200


def _entry(entry: ActivityEntry) -> dict:
    return {
        "id": entry.id,
        "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
        "type": entry.type.value,
        "category": entry.category,
        "path": entry.path,
        "agent": entry.agent,
        "message": entry.message,
        "details": entry.details or {},
    }


@router.get("/activity")
async def recent_activity(limit: str | None = None, store: KnowledgeStore = Depends(get_store)):
    size = DEFAULT_LIMIT
    if limit and limit.strip().isdigit() and 0 < int(limit) <= MAX_LIMIT:
        size = int(limit)
    entries = await store.recent_activity(size)
    return {"entries": [_entry(entry) for entry in entries], "summary": await store.activity_summary()}


@router.delete("/activity")
async def clear_activity(store: KnowledgeStore = Depends(get_store)):
    await store.clear_activity()
    return {"success": True}


__all__ = ["router"]
