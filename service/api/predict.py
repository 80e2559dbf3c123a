"""Prediction API routes: GET /predict and POST /predict."""
from __future__ import annotations

import asyncio
import time
from typing import Any

from fastapi import APIRouter, Depends, Query

from kb.service import KnowledgeBase

from api.deps import BotId, PredictRequest, now_iso, require_kb

router = APIRouter(prefix="/bots/{bot_id}/kb", tags=["predict"])


async def _run_predict(kb: KnowledgeBase, bot_id: str, body: PredictRequest) -> dict[str, Any]:
    start = time.perf_counter()
    outcome = await asyncio.to_thread(kb.predict, bot_id, body.q, body.lang, body.top_k)
    results = [item.model_dump() for item in outcome["results"]]
    return {
        "query": outcome["query"],
        "lang": outcome["lang"],
        "model_version": outcome["model_version"],
        "results": results,
        "result_count": len(results),
        "latency_ms": round((time.perf_counter() - start) * 1000, 2),
        "timestamp": now_iso(),
    }


@router.get("/predict", operation_id="get_predict")
async def predict_get(
    bot_id: BotId,
    q: str = Query(..., min_length=1),
    lang: str | None = None,
    top_k: int | None = Query(default=None, ge=1, le=100),
    kb: KnowledgeBase = Depends(require_kb),
) -> dict[str, Any]:
    return await _run_predict(kb, bot_id, PredictRequest(q=q, lang=lang, top_k=top_k))


@router.post("/predict", operation_id="post_predict")
async def predict_post(
    bot_id: BotId,
    body: PredictRequest,
    kb: KnowledgeBase = Depends(require_kb),
) -> dict[str, Any]:
    return await _run_predict(kb, bot_id, body)
