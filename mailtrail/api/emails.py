"""
Message detail endpoints - stored event timeline and archived content.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from mailtrail.api.deps import get_archive_fetcher, get_event_store
from mailtrail.errors import ArchiveError, ArchivePermissionError
from mailtrail.services.archive import ArchiveFetcher
from mailtrail.services.event_store import EventStore

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/emails", tags=["emails"])


@router.get("/{message_id}/events")
async def message_events(
    message_id: str,
    store: EventStore = Depends(get_event_store),
):
    records = await store.list_for_message(message_id)
    return {"messageId": message_id, "events": [r.to_dict() for r in records]}


@router.get("/{message_id}/archive")
async def message_archive(
    message_id: str,
    location: str = Query(..., description="Archive URL, ARN or archive id"),
    fetcher: ArchiveFetcher = Depends(get_archive_fetcher),
):
    try:
        archived = await fetcher.fetch(message_id, location)
    except ArchivePermissionError as e:
        logger.warning("Archive access denied for %s: %s", message_id, str(e))
        raise HTTPException(status_code=403, detail="Access to the archive was denied")
    except ArchiveError as e:
        logger.error("Archive fetch failed for %s: %s", message_id, str(e))
        raise HTTPException(status_code=502, detail="Archive unavailable")

    if archived is None:
        raise HTTPException(status_code=404, detail="Message not found in archive")
    return archived.model_dump(mode="json")
