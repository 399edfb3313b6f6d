"""Event indexer API routes"""
from fastapi import APIRouter, HTTPException, Request

from ticketgate.schemas.indexer import IndexerStatus

router = APIRouter(prefix="/api/indexer", tags=["indexer"])


@router.get("/status", response_model=IndexerStatus)
def indexer_status(request: Request):
    """Operational status of the event indexer"""
    indexer = getattr(request.app.state, "indexer", None)
    if indexer is None:
        raise HTTPException(503, "Event indexer is not configured")
    return indexer.status()
