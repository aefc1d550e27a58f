"""Read-only live trip state."""

from fastapi import APIRouter, HTTPException

router = APIRouter(prefix="/api/trips", tags=["trips"])

# Will be set by main.py
ingest = None


@router.get("/live")
async def list_live_trips():
    """All trips currently held in memory by the relay."""
    if ingest is None:
        return []
    return ingest.live_trips()


@router.get("/{trip_id}/live")
async def get_live_trip(trip_id: str):
    """Latest position, stop states and ETAs for one trip."""
    snapshot = ingest.snapshot(trip_id) if ingest else None
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Trip not live")
    return snapshot
