"""Inbound job events from the ACP transport."""

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request

from acp_seller.schemas.job import EventReceipt, JobEvent
from acp_seller.services.dispatcher import JobDispatcher

router = APIRouter(prefix="/events", tags=["events"])


def get_dispatcher(request: Request) -> JobDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Seller runtime is not ready")
    return dispatcher


@router.post("/new-task", response_model=EventReceipt, status_code=202)
async def new_task(
    event: JobEvent,
    dispatcher: JobDispatcher = Depends(get_dispatcher),
) -> EventReceipt:
    """Queue the lifecycle pipeline for one job event and return immediately."""
    if dispatcher.closed:
        raise HTTPException(status_code=503, detail="Seller runtime is shutting down")
    queued = dispatcher.submit(event)
    return EventReceipt(status="queued" if queued else "duplicate", job_id=event.id)


@router.post("/evaluate", response_model=EventReceipt, status_code=202)
async def evaluate(payload: dict[str, Any] | None = Body(None)) -> EventReceipt:
    """Evaluation happens elsewhere; acknowledged only."""
    job_id = (payload or {}).get("id")
    return EventReceipt(status="ignored", job_id=job_id if isinstance(job_id, (int, str)) else None)
