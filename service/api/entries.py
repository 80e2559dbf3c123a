"""Entry API routes: list, upsert and delete a bot's knowledge entries."""
from __future__ import annotations

import asyncio
from typing import Any

from fastapi import APIRouter, Body, Depends

from kb.service import KnowledgeBase

from api.deps import BotId, EntriesResponse, require_kb

router = APIRouter(prefix="/bots/{bot_id}/kb", tags=["entries"])


@router.get("/entries", response_model=EntriesResponse, operation_id="list_entries")
async def list_entries(bot_id: BotId, kb: KnowledgeBase = Depends(require_kb)) -> EntriesResponse:
    entries = await asyncio.to_thread(kb.list_entries, bot_id)
    return EntriesResponse(
        entries=[entry.model_dump() for entry in entries],
        count=len(entries),
    )


@router.get("/entries/{entry_id}", operation_id="get_entry")
async def get_entry(bot_id: BotId, entry_id: str, kb: KnowledgeBase = Depends(require_kb)) -> dict[str, Any]:
    entry = await asyncio.to_thread(kb.get_entry, bot_id, entry_id)
    return entry.model_dump()


@router.post("/entries", operation_id="upsert_entry")
async def upsert_entry(
    bot_id: BotId,
    payload: Any = Body(...),
    kb: KnowledgeBase = Depends(require_kb),
) -> dict[str, Any]:
    entry_id = await asyncio.to_thread(kb.upsert_entry, bot_id, payload)
    return {"id": entry_id}


@router.delete("/entries/{entry_id}", operation_id="delete_entry")
async def delete_entry(bot_id: BotId, entry_id: str, kb: KnowledgeBase = Depends(require_kb)) -> dict[str, Any]:
    await asyncio.to_thread(kb.delete_entry, bot_id, entry_id)
    return {"deleted": entry_id}
