import asyncio
import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession

from citypulse.auth import Actor
from citypulse.database.config import get_db
from citypulse.dependencies import get_current_actor, get_workflow, resolve_actor
from citypulse.schemas import NotificationPage
from citypulse.services.workflow import WorkflowOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


@router.get("/", response_model=NotificationPage)
async def list_notifications(
    status_filter: Optional[Literal["read", "unread"]] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    items, total, pages, unread = await workflow.dispatcher.list_for(
        db, actor.id, status_filter, page=page, limit=limit
    )
    return NotificationPage(items=items, unread_count=unread, page=page, pages=pages, total=total)


@router.get("/count")
async def unread_count(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    return {"count": await workflow.dispatcher.unread_count(db, actor.id)}


@router.post("/bulk-read")
async def mark_all_read(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    return {"updated": await workflow.dispatcher.mark_all_read(db, actor.id)}


@router.patch("/{notification_id}/read")
async def mark_read(
    notification_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    """Idempotent; unknown or already-read ids report zero updates."""
    return {"updated": await workflow.dispatcher.mark_read(db, notification_id, actor.id)}


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_notification(
    notification_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    await workflow.dispatcher.delete(db, notification_id, actor.id)


@router.websocket("/ws")
async def notification_stream(
    websocket: WebSocket,
    user_id: str = Query(...),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    """Push new notifications for ``user_id`` as they are committed.

    No database session is held while the socket is open.
    """
    actor = await resolve_actor(workflow, user_id)
    if actor is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    hub = workflow.dispatcher.hub
    queue = hub.subscribe(actor.id)

    async def forward():
        while True:
            payload = await queue.get()
            await websocket.send_json(payload)

    sender = None
    try:
        await websocket.accept()
        sender = asyncio.create_task(forward())
        # Client messages are ignored; receiving is how a disconnect is noticed.
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("Live subscriber disconnected", extra={"recipient_id": actor.id})
    finally:
        if sender is not None:
            sender.cancel()
        hub.unsubscribe(actor.id, queue)
