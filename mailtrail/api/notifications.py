"""
Push ingestion endpoint - accepts a {Records: [...]} envelope from the
notification topic and processes it like a queue batch.

The response mirrors the worker result: 200 when every record was handled,
207 when webhook delivery degraded, 500 when the batch failed outright so
the pusher retries. Records listed in batchItemFailures should be resent.
"""
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from mailtrail.api.deps import get_ingestion_worker
from mailtrail.workers.ingestion import IngestionWorker, handle_queue_event

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1", tags=["notifications"])


@router.post("/notifications")
async def receive_notifications(
    request: Request,
    worker: IngestionWorker = Depends(get_ingestion_worker),
):
    try:
        envelope = json.loads(await request.body())
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(envelope, dict) or not isinstance(envelope.get("Records"), list):
        raise HTTPException(status_code=400, detail="Body must contain a Records list")

    result = await handle_queue_event(envelope, worker)
    return JSONResponse(status_code=result["statusCode"], content=result)
