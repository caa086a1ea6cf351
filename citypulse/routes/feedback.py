from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from citypulse.auth import Actor, require_role
from citypulse.database.config import get_db
from citypulse.dependencies import get_current_actor, get_workflow
from citypulse.schemas import (
    FeedbackCreate,
    FeedbackResponse,
    FeedbackUpdate,
    OfficerStats,
    ReplyCreate,
    SystemStats,
    UserRole,
)
from citypulse.services.workflow import WorkflowOrchestrator

router = APIRouter(prefix="/api/v1/feedback", tags=["feedback"])


@router.get("/me", response_model=list[FeedbackResponse])
async def my_feedback(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    """Citizens see what they wrote; officers see approved feedback about them."""
    return await workflow.feedback.list_for(db, actor)


@router.get("/stats", response_model=SystemStats)
async def system_stats(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    require_role(actor, UserRole.ADMIN)
    return await workflow.feedback.system_stats(db)


@router.get("/officer/{officer_id}/stats", response_model=OfficerStats)
async def officer_stats(
    officer_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    await workflow.users.get(db, officer_id)
    return await workflow.feedback.officer_stats(db, officer_id)


@router.post("/{issue_id}", response_model=FeedbackResponse, status_code=status.HTTP_201_CREATED)
async def submit_feedback(
    issue_id: str,
    payload: FeedbackCreate,
    actor: Actor = Depends(get_current_actor),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    """Rate the officer who handled a resolved issue"""
    return await workflow.submit_feedback(actor, issue_id, payload)


@router.put("/{feedback_id}", response_model=FeedbackResponse)
async def update_feedback(
    feedback_id: str,
    payload: FeedbackUpdate,
    actor: Actor = Depends(get_current_actor),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    return await workflow.update_feedback(actor, feedback_id, payload)


@router.delete("/{feedback_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_feedback(
    feedback_id: str,
    actor: Actor = Depends(get_current_actor),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    await workflow.delete_feedback(actor, feedback_id)


@router.patch("/{feedback_id}/approve", response_model=FeedbackResponse)
async def approve_feedback(
    feedback_id: str,
    actor: Actor = Depends(get_current_actor),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    return await workflow.approve_feedback(actor, feedback_id)


@router.patch("/{feedback_id}/reject", response_model=FeedbackResponse)
async def reject_feedback(
    feedback_id: str,
    actor: Actor = Depends(get_current_actor),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    return await workflow.reject_feedback(actor, feedback_id)


@router.post("/{feedback_id}/reply", response_model=FeedbackResponse, status_code=status.HTTP_201_CREATED)
async def reply_to_feedback(
    feedback_id: str,
    payload: ReplyCreate,
    actor: Actor = Depends(get_current_actor),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    return await workflow.reply_feedback(actor, feedback_id, payload.text)


@router.post("/{feedback_id}/helpful", response_model=FeedbackResponse)
async def mark_helpful(
    feedback_id: str,
    actor: Actor = Depends(get_current_actor),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    return await workflow.mark_feedback_helpful(actor, feedback_id)
