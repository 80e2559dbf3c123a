"""Training API routes: start, cancel, status, run history and stored versions."""
from __future__ import annotations

import asyncio
from typing import Any

from fastapi import APIRouter, Depends, Query

from kb.service import KnowledgeBase

from api.deps import BotId, now_iso, require_kb

router = APIRouter(prefix="/bots/{bot_id}/kb", tags=["training"])


@router.post("/train", operation_id="start_training")
async def start_training(bot_id: BotId, kb: KnowledgeBase = Depends(require_kb)) -> dict[str, Any]:
    # Awaited on the event loop so the training task is created there.
    handle = await kb.start_training(bot_id)
    return {"training": True, "job": handle.snapshot()}


@router.post("/train/cancel", operation_id="cancel_training")
async def cancel_training(bot_id: BotId, kb: KnowledgeBase = Depends(require_kb)) -> dict[str, Any]:
    job = kb.cancel_training(bot_id)
    return {"training": False, "job": job}


@router.get("/train/status", operation_id="training_status")
async def training_status(bot_id: BotId, kb: KnowledgeBase = Depends(require_kb)) -> dict[str, Any]:
    status = await asyncio.to_thread(kb.training_status, bot_id)
    status["timestamp"] = now_iso()
    return status


@router.get("/train/runs", operation_id="training_runs")
async def training_runs(
    bot_id: BotId,
    limit: int = Query(default=20, ge=1, le=200),
    kb: KnowledgeBase = Depends(require_kb),
) -> dict[str, Any]:
    runs = await asyncio.to_thread(kb.training_runs, bot_id, limit)
    return {"runs": runs, "count": len(runs), "timestamp": now_iso()}


@router.get("/models", operation_id="list_models")
async def list_models(bot_id: BotId, kb: KnowledgeBase = Depends(require_kb)) -> dict[str, Any]:
    models = await asyncio.to_thread(kb.list_models, bot_id)
    return {"models": models, "count": len(models)}
