from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from citypulse.auth import Actor
from citypulse.database.config import get_db
from citypulse.dependencies import get_current_actor, get_workflow
from citypulse.schemas import (
    CommentCreate,
    IssueCategory,
    IssueCreate,
    IssuePage,
    IssuePriority,
    IssueResponse,
    IssueStatus,
    IssueUpdate,
    SuggestionRequest,
    SuggestionResponse,
)
from citypulse.services.workflow import WorkflowOrchestrator

router = APIRouter(prefix="/api/v1/issues", tags=["issues"])


@router.get("/", response_model=IssuePage)
async def list_issues(
    status_filter: Optional[IssueStatus] = Query(None, alias="status"),
    category: Optional[IssueCategory] = None,
    priority: Optional[IssuePriority] = None,
    assigned_to: Optional[str] = None,
    reported_by: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    """List issues, newest first."""
    filters = {
        "status": status_filter,
        "category": category,
        "priority": priority,
        "assigned_to": assigned_to,
        "reported_by": reported_by,
    }
    items, total, pages = await workflow.issues.search(db, filters, page=page, limit=limit)
    return IssuePage(items=items, page=page, pages=pages, total=total)


@router.get("/nearby", response_model=list[IssueResponse])
async def nearby_issues(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius: float = Query(5000, gt=0),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    """Issues within ``radius`` metres, nearest first."""
    return await workflow.issues.nearby(db, lat, lng, radius)


@router.post("/ai-suggest", response_model=SuggestionResponse)
async def suggest(
    payload: SuggestionRequest,
    actor: Actor = Depends(get_current_actor),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    suggestion = await workflow.suggest(actor, payload.description)
    return SuggestionResponse(
        category=suggestion.category,
        priority=suggestion.priority,
        title=suggestion.title,
    )


@router.get("/{issue_id}", response_model=IssueResponse, status_code=status.HTTP_200_OK)
async def get_issue(
    issue_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    """Get issue by ID"""
    return await workflow.issues.get(db, issue_id)


@router.post("/", response_model=IssueResponse, status_code=status.HTTP_201_CREATED)
async def create_issue(
    payload: IssueCreate,
    actor: Actor = Depends(get_current_actor),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    """Report a new issue"""
    return await workflow.create_issue(actor, payload)


@router.patch("/{issue_id}", response_model=IssueResponse)
async def update_issue(
    issue_id: str,
    payload: IssueUpdate,
    actor: Actor = Depends(get_current_actor),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    """Change priority and/or append a comment"""
    return await workflow.update_issue(actor, issue_id, payload)


@router.post("/{issue_id}/comments", response_model=IssueResponse, status_code=status.HTTP_201_CREATED)
async def add_comment(
    issue_id: str,
    payload: CommentCreate,
    actor: Actor = Depends(get_current_actor),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    return await workflow.add_comment(actor, issue_id, payload.text)


@router.post("/{issue_id}/close", response_model=IssueResponse)
async def close_issue(
    issue_id: str,
    actor: Actor = Depends(get_current_actor),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    return await workflow.close_issue(actor, issue_id)


@router.delete("/{issue_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_issue(
    issue_id: str,
    actor: Actor = Depends(get_current_actor),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    """Delete issue by ID"""
    await workflow.delete_issue(actor, issue_id)
