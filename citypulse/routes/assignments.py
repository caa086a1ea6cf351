from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from citypulse.auth import Actor, require_role
from citypulse.database.config import get_db
from citypulse.dependencies import get_current_actor, get_workflow
from citypulse.errors import Forbidden
from citypulse.schemas import (
    AssignmentComplete,
    AssignmentCreate,
    AssignmentPage,
    AssignmentReassign,
    AssignmentResponse,
    AssignmentStatus,
    UserRole,
)
from citypulse.services.workflow import WorkflowOrchestrator

router = APIRouter(prefix="/api/v1/assignments", tags=["assignments"])


@router.get("/me", response_model=AssignmentPage)
async def my_assignments(
    status_filter: Optional[AssignmentStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    """Assignments held by the calling officer"""
    require_role(actor, UserRole.OFFICER)
    items, total, pages = await workflow.assignments.list_for_officer(
        db, actor.id, status_filter, page=page, limit=limit
    )
    return AssignmentPage(items=items, page=page, pages=pages, total=total)


@router.get("/officer/{officer_id}", response_model=AssignmentPage)
async def officer_assignments(
    officer_id: str,
    status_filter: Optional[AssignmentStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    require_role(actor, UserRole.ADMIN)
    items, total, pages = await workflow.assignments.list_for_officer(
        db, officer_id, status_filter, page=page, limit=limit
    )
    return AssignmentPage(items=items, page=page, pages=pages, total=total)


@router.get("/issue/{issue_id}", response_model=list[AssignmentResponse])
async def issue_assignments(
    issue_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    """Every assignment an issue has had, oldest first"""
    require_role(actor, UserRole.OFFICER, UserRole.ADMIN)
    await workflow.issues.get(db, issue_id)
    return await workflow.assignments.list_for_issue(db, issue_id)


@router.post("/{issue_id}", response_model=AssignmentResponse, status_code=status.HTTP_201_CREATED)
async def create_assignment(
    issue_id: str,
    payload: AssignmentCreate,
    actor: Actor = Depends(get_current_actor),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    """Assign an issue to an officer"""
    return await workflow.assign(actor, issue_id, payload)


@router.get("/{assignment_id}", response_model=AssignmentResponse)
async def get_assignment(
    assignment_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    assignment = await workflow.assignments.get(db, assignment_id)
    if actor.role == UserRole.CITIZEN:
        raise Forbidden("Not authorized to view assignments")
    if actor.role == UserRole.OFFICER and assignment.assigned_to != actor.id:
        raise Forbidden("Not authorized to view this assignment")
    return assignment


@router.put("/{assignment_id}/accept", response_model=AssignmentResponse)
async def accept_assignment(
    assignment_id: str,
    actor: Actor = Depends(get_current_actor),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    return await workflow.accept(actor, assignment_id)


@router.put("/{assignment_id}/complete", response_model=AssignmentResponse)
async def complete_assignment(
    assignment_id: str,
    payload: Optional[AssignmentComplete] = None,
    actor: Actor = Depends(get_current_actor),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    """Resolve the issue; ``resolution_hours`` overrides the elapsed-time figure"""
    payload = payload or AssignmentComplete()
    return await workflow.complete(
        actor, assignment_id, notes=payload.notes, resolution_hours=payload.resolution_hours
    )


@router.put("/{assignment_id}/reassign", response_model=AssignmentResponse)
async def reassign_assignment(
    assignment_id: str,
    payload: AssignmentReassign,
    actor: Actor = Depends(get_current_actor),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    """Move an issue to another officer; returns the new assignment"""
    return await workflow.reassign(actor, assignment_id, payload.assigned_to, notes=payload.notes)


@router.delete("/{assignment_id}", response_model=AssignmentResponse)
async def cancel_assignment(
    assignment_id: str,
    actor: Actor = Depends(get_current_actor),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    """Cancel an assignment and reopen its issue"""
    return await workflow.cancel(actor, assignment_id)
