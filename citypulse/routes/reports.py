from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from citypulse.auth import Actor, require_role
from citypulse.database.config import get_db
from citypulse.dependencies import get_current_actor, get_workflow
from citypulse.errors import Forbidden
from citypulse.schemas import ReportCreate, ReportResponse, ReportUpdate, UserRole
from citypulse.services.workflow import WorkflowOrchestrator

router = APIRouter(prefix="/api/v1/reports", tags=["reports"])


@router.get("/dashboard/admin")
async def admin_dashboard(
    refresh: bool = Query(False),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    require_role(actor, UserRole.ADMIN)
    return await workflow.reports.admin_dashboard(db, refresh=refresh)


@router.get("/dashboard/officer/{officer_id}")
async def officer_dashboard(
    officer_id: str,
    refresh: bool = Query(False),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    require_role(actor, UserRole.OFFICER, UserRole.ADMIN)
    if actor.role == UserRole.OFFICER and actor.id != officer_id:
        raise Forbidden("Officers can only view their own dashboard")
    await workflow.users.get(db, officer_id)
    return await workflow.reports.officer_dashboard(db, officer_id, refresh=refresh)


@router.post("/generate")
async def generate_report(
    actor: Actor = Depends(get_current_actor),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    """Recompute the admin dashboard and notify the caller"""
    return await workflow.generate_report(actor)


@router.get("/dashboard/citizen/{citizen_id}")
async def citizen_dashboard(
    citizen_id: str,
    refresh: bool = Query(False),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    require_role(actor, UserRole.CITIZEN, UserRole.ADMIN)
    if actor.role == UserRole.CITIZEN and actor.id != citizen_id:
        raise Forbidden("Citizens can only view their own dashboard")
    await workflow.users.get(db, citizen_id)
    return await workflow.reports.citizen_dashboard(db, citizen_id, refresh=refresh)


# Saved report definitions

@router.post("/", response_model=ReportResponse, status_code=status.HTTP_201_CREATED)
async def create_report(
    payload: ReportCreate,
    actor: Actor = Depends(get_current_actor),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    return await workflow.create_report(actor, payload)


@router.get("/", response_model=list[ReportResponse])
async def list_reports(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    """Reports created by the caller, newest first"""
    require_role(actor, UserRole.ADMIN)
    return await workflow.reports.list_saved(db, actor.id)


@router.get("/{report_id}", response_model=ReportResponse)
async def get_report(
    report_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    require_role(actor, UserRole.ADMIN)
    return await workflow.reports.get_saved(db, report_id)


@router.put("/{report_id}", response_model=ReportResponse)
async def update_report(
    report_id: str,
    payload: ReportUpdate,
    actor: Actor = Depends(get_current_actor),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    return await workflow.update_report(actor, report_id, payload)


@router.delete("/{report_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_report(
    report_id: str,
    actor: Actor = Depends(get_current_actor),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    await workflow.delete_report(actor, report_id)


@router.patch("/{report_id}/toggle", response_model=ReportResponse)
async def toggle_report(
    report_id: str,
    actor: Actor = Depends(get_current_actor),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    """Flip a report between active and inactive"""
    return await workflow.toggle_report(actor, report_id)


@router.get("/{report_id}/run")
async def run_report(
    report_id: str,
    actor: Actor = Depends(get_current_actor),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    """Execute a report; results are cached for an hour"""
    return await workflow.run_report(actor, report_id)
