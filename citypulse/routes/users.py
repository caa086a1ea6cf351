from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from citypulse.auth import Actor
from citypulse.database.config import get_db
from citypulse.dependencies import get_current_actor, get_workflow
from citypulse.schemas import UserCreate, UserResponse, UserUpdate
from citypulse.services.workflow import WorkflowOrchestrator

router = APIRouter(prefix="/api/v1/users", tags=["users"])


@router.post("/", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(
    payload: UserCreate,
    actor: Actor = Depends(get_current_actor),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    """Create a user (admin only)"""
    return await workflow.create_user(actor, payload)


@router.get("/me", response_model=UserResponse)
async def me(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    return await workflow.users.get(db, actor.id)


@router.put("/me", response_model=UserResponse)
async def update_me(
    payload: UserUpdate,
    actor: Actor = Depends(get_current_actor),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    """Update your own name, contact details or profile image"""
    return await workflow.update_profile(actor, payload)


@router.get("/officers", response_model=list[UserResponse])
async def list_officers(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    """Officers with their rating aggregates, best rated first"""
    return await workflow.users.officers(db)
