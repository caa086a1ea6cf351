"""FastAPI dependencies shared by the routers."""

from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from citypulse.auth import Actor
from citypulse.database.config import AsyncSessionLocal
from citypulse.llm_service import SuggestionService, get_llm_service
from citypulse.services.notifications import AdminDirectory, LiveHub, NotificationDispatcher
from citypulse.services.workflow import WorkflowOrchestrator
from citypulse.storage_service import StorageService, get_storage_service
from citypulse.tasks.outbound import OutboundQueue

_workflow: Optional[WorkflowOrchestrator] = None


def get_workflow() -> WorkflowOrchestrator:
    """Process-wide orchestrator, built on first use."""
    global _workflow
    if _workflow is None:
        dispatcher = NotificationDispatcher(LiveHub(), AdminDirectory(), AsyncSessionLocal)
        _workflow = WorkflowOrchestrator(
            AsyncSessionLocal,
            dispatcher,
            OutboundQueue(),
            SuggestionService(get_llm_service()),
        )
    return _workflow


def get_storage() -> Optional[StorageService]:
    return get_storage_service()


async def resolve_actor(workflow: WorkflowOrchestrator, user_id: Optional[str]) -> Optional[Actor]:
    """Look the caller up on a short session, closed before the route body runs."""
    async with workflow.session_factory() as session:
        return await workflow.users.resolve_actor(session, user_id)


async def get_current_actor(
    x_user_id: Optional[str] = Header(default=None),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
) -> Actor:
    """Resolve the ``X-User-Id`` set by the gateway to a stored user."""
    actor = await resolve_actor(workflow, x_user_id)
    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return actor
