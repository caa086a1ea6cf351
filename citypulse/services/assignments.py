"""AssignmentEngine: the assignment state machine.

    active -> accepted -> completed
    active | accepted -> reassigned
    active | accepted -> cancelled

completed, reassigned and cancelled are terminal. At most one assignment per
issue may be active or accepted; the engine checks it before writing and the
partial unique index on ``assignments.issue_id`` enforces it at the storage
layer.
"""

import logging
import math
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from citypulse.database import models
from citypulse.database.config import utcnow
from citypulse.errors import Conflict, Forbidden, InvalidState, NotFound, ValidationError
from citypulse.schemas import (
    AssignmentStatus,
    HistoryAction,
    IssuePriority,
    IssueStatus,
    NotificationType,
    UserRole,
)
from citypulse.services.base import Outcome, SideEffect
from citypulse.services.issues import FINISHED_STATUSES, IssueStore
from citypulse.services.notifications import NotificationDispatcher, NotificationEvent

logger = logging.getLogger(__name__)

OPEN_STATUSES = {AssignmentStatus.ACTIVE, AssignmentStatus.ACCEPTED}
TERMINAL_STATUSES = {
    AssignmentStatus.COMPLETED,
    AssignmentStatus.REASSIGNED,
    AssignmentStatus.CANCELLED,
}


def _record(
    assignment: models.Assignment,
    action: HistoryAction,
    officer_id: Optional[str] = None,
    admin_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> None:
    assignment.history.append(
        models.AssignmentHistory(
            position=len(assignment.history),
            action=action,
            officer_id=officer_id,
            admin_id=admin_id,
            notes=notes,
            created_at=utcnow(),
        )
    )


class AssignmentEngine:
    def __init__(self, issues: IssueStore, dispatcher: NotificationDispatcher):
        self.issues = issues
        self.dispatcher = dispatcher

    async def get(self, session: AsyncSession, assignment_id: str, for_update: bool = False) -> models.Assignment:
        query = select(models.Assignment).where(models.Assignment.id == assignment_id)
        if for_update:
            query = query.with_for_update()
        assignment = (await session.execute(query)).scalars().first()
        if not assignment:
            raise NotFound("Assignment not found")
        return assignment

    async def open_for_issue(self, session: AsyncSession, issue_id: str) -> Optional[models.Assignment]:
        result = await session.execute(
            select(models.Assignment).where(
                models.Assignment.issue_id == issue_id,
                models.Assignment.status.in_(OPEN_STATUSES),
            )
        )
        return result.scalars().first()

    async def _officer(self, session: AsyncSession, officer_id: str) -> models.User:
        officer = await session.get(models.User, officer_id)
        if not officer:
            raise NotFound("Officer not found")
        if officer.role != UserRole.OFFICER:
            raise ValidationError("Assignments can only be given to officers")
        return officer

    async def _insert(self, session: AsyncSession, assignment: models.Assignment) -> None:
        session.add(assignment)
        try:
            await session.flush()
        except IntegrityError:
            logger.warning(
                "Open assignment already exists",
                extra={"issue_id": assignment.issue_id},
            )
            raise Conflict("Issue already has an active assignment")

    def _new_assignment(
        self,
        issue_id: str,
        officer_id: str,
        admin_id: str,
        priority: IssuePriority,
        deadline: Optional[datetime],
        notes: Optional[str],
        estimated_hours: Optional[float],
        history_note: str,
    ) -> models.Assignment:
        now = utcnow()
        assignment = models.Assignment(
            id=str(uuid.uuid4()),
            issue_id=issue_id,
            assigned_to=officer_id,
            assigned_by=admin_id,
            status=AssignmentStatus.ACTIVE,
            priority=priority,
            deadline=deadline,
            notes=notes,
            estimated_hours=estimated_hours,
            calendar_event_id=None,
            created_at=now,
            updated_at=now,
        )
        assignment.history = []
        _record(assignment, HistoryAction.ASSIGNED, officer_id, admin_id, history_note)
        return assignment

    async def assign(
        self,
        session: AsyncSession,
        issue_id: str,
        officer_id: str,
        admin_id: str,
        priority,
        deadline: Optional[datetime] = None,
        notes: Optional[str] = None,
        estimated_hours: Optional[float] = None,
    ) -> Outcome:
        issue = await self.issues.get(session, issue_id, for_update=True)
        if issue.status in FINISHED_STATUSES:
            raise Conflict("Cannot assign a resolved or closed issue")
        if await self.open_for_issue(session, issue_id):
            raise Conflict("Issue already has an active assignment")

        try:
            priority = IssuePriority(priority)
        except ValueError:
            raise ValidationError(f"Invalid priority: {priority!r}")
        if estimated_hours is not None and estimated_hours <= 0:
            raise ValidationError("Estimated time must be positive")
        await self._officer(session, officer_id)

        assignment = self._new_assignment(
            issue_id, officer_id, admin_id, priority, deadline, notes, estimated_hours,
            notes or "Initial assignment",
        )
        await self._insert(session, assignment)
        events = self.issues.transition_status(issue, IssueStatus.ASSIGNED, officer_id=officer_id)

        logger.info(
            "Assignment created",
            extra={"assignment_id": assignment.id, "issue_id": issue_id, "officer_id": officer_id},
        )

        data = {"issue_id": issue.id, "assignment_id": assignment.id, "url": f"/issues/{issue.id}"}
        events += [
            NotificationEvent(
                officer_id,
                NotificationType.ISSUE_ASSIGNED,
                "New Assignment",
                f'Issue "{issue.title}" has been assigned to you',
                data,
                priority=priority,
            ),
            NotificationEvent(
                issue.reported_by,
                NotificationType.ISSUE_ASSIGNED,
                "Issue Assigned",
                f'Your issue "{issue.title}" has been assigned to an officer',
                data,
            ),
        ]
        effects = [
            SideEffect("schedule_assignment_event", {"assignment_id": assignment.id}),
            SideEffect("send_assignment_emails", {"assignment_id": assignment.id}),
        ]
        return Outcome(assignment, events, effects)

    async def accept(self, session: AsyncSession, assignment_id: str, officer_id: str) -> Outcome:
        assignment = await self.get(session, assignment_id, for_update=True)
        if assignment.assigned_to != officer_id:
            raise Forbidden("You are not authorized to accept this assignment")
        if assignment.status != AssignmentStatus.ACTIVE:
            raise InvalidState(f"Cannot accept assignment in '{assignment.status.value}' status")

        assignment.status = AssignmentStatus.ACCEPTED
        assignment.updated_at = utcnow()
        _record(assignment, HistoryAction.ACCEPTED, officer_id, notes="Assignment accepted by officer")

        issue = await self.issues.get(session, assignment.issue_id, for_update=True)
        events = self.issues.transition_status(issue, IssueStatus.IN_PROGRESS)

        logger.info("Assignment accepted", extra={"assignment_id": assignment.id})

        events += self.dispatcher.to_admins(
            NotificationType.ASSIGNMENT_ACCEPTED,
            "Assignment Accepted",
            f'Officer has accepted the assignment for issue "{issue.title}"',
            {"issue_id": issue.id, "assignment_id": assignment.id},
        )
        effects = [
            SideEffect("schedule_assignment_event", {"assignment_id": assignment.id}),
            SideEffect("send_status_update_email", {"issue_id": issue.id, "status": IssueStatus.IN_PROGRESS.value}),
        ]
        return Outcome(assignment, events, effects)

    async def complete(
        self,
        session: AsyncSession,
        assignment_id: str,
        officer_id: str,
        notes: Optional[str] = None,
        resolution_hours: Optional[int] = None,
    ) -> Outcome:
        assignment = await self.get(session, assignment_id, for_update=True)
        if assignment.assigned_to != officer_id:
            raise Forbidden("You are not authorized to complete this assignment")
        if assignment.status != AssignmentStatus.ACCEPTED:
            raise InvalidState(f"Cannot complete assignment in '{assignment.status.value}' status")

        assignment.status = AssignmentStatus.COMPLETED
        assignment.updated_at = utcnow()
        _record(assignment, HistoryAction.COMPLETED, officer_id, notes=notes or "Work completed")

        issue = await self.issues.get(session, assignment.issue_id, for_update=True)
        events = self.issues.transition_status(
            issue, IssueStatus.RESOLVED, resolution_hours=resolution_hours
        )

        logger.info(
            "Assignment completed",
            extra={"assignment_id": assignment.id, "resolution_time": issue.resolution_time},
        )

        effects = [
            SideEffect("send_status_update_email", {"issue_id": issue.id, "status": IssueStatus.RESOLVED.value}),
        ]
        return Outcome(assignment, events, effects)

    async def reassign(
        self,
        session: AsyncSession,
        assignment_id: str,
        new_officer_id: str,
        admin_id: str,
        notes: Optional[str] = None,
    ) -> Outcome:
        """Retire the current assignment and open a fresh one for another officer."""
        previous = await self.get(session, assignment_id, for_update=True)
        if previous.status in TERMINAL_STATUSES:
            raise InvalidState(f"Cannot reassign assignment in '{previous.status.value}' status")
        if previous.assigned_to == new_officer_id:
            raise ValidationError("Assignment is already held by this officer")
        await self._officer(session, new_officer_id)

        previous_officer_id = previous.assigned_to
        previous.status = AssignmentStatus.REASSIGNED
        previous.updated_at = utcnow()
        _record(previous, HistoryAction.REASSIGNED, new_officer_id, admin_id, notes or "Reassigned by admin")
        await session.flush()

        assignment = self._new_assignment(
            previous.issue_id, new_officer_id, admin_id, previous.priority, previous.deadline,
            notes or previous.notes, previous.estimated_hours,
            notes or "Reassigned from previous officer",
        )
        await self._insert(session, assignment)

        issue = await self.issues.get(session, previous.issue_id, for_update=True)
        events = self.issues.transition_status(issue, IssueStatus.ASSIGNED, officer_id=new_officer_id)

        logger.info(
            "Assignment reassigned",
            extra={
                "assignment_id": assignment.id,
                "previous_assignment_id": previous.id,
                "issue_id": issue.id,
            },
        )

        data = {"issue_id": issue.id, "assignment_id": assignment.id, "url": f"/issues/{issue.id}"}
        events += [
            NotificationEvent(
                new_officer_id,
                NotificationType.ASSIGNMENT_REASSIGNED,
                "Issue Reassigned To You",
                f'Issue "{issue.title}" has been reassigned to you',
                data,
                priority=assignment.priority,
            ),
            NotificationEvent(
                previous_officer_id,
                NotificationType.ASSIGNMENT_REASSIGNED,
                "Assignment Reassigned",
                f'Issue "{issue.title}" has been reassigned to another officer',
                {"issue_id": issue.id, "assignment_id": previous.id},
            ),
        ]
        effects = [SideEffect("schedule_assignment_event", {"assignment_id": assignment.id})]
        return Outcome(assignment, events, effects)

    async def cancel(self, session: AsyncSession, assignment_id: str, admin_id: str) -> Outcome:
        assignment = await self.get(session, assignment_id, for_update=True)
        if assignment.status in TERMINAL_STATUSES:
            raise InvalidState(f"Cannot cancel assignment in '{assignment.status.value}' status")

        assignment.status = AssignmentStatus.CANCELLED
        assignment.updated_at = utcnow()

        issue = await self.issues.get(session, assignment.issue_id, for_update=True)
        events = self.issues.transition_status(issue, IssueStatus.OPEN)

        logger.info(
            "Assignment cancelled",
            extra={"assignment_id": assignment.id, "admin_id": admin_id},
        )
        return Outcome(assignment, events)

    async def list_for_officer(
        self,
        session: AsyncSession,
        officer_id: str,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[models.Assignment], int, int]:
        query = select(models.Assignment).where(models.Assignment.assigned_to == officer_id)
        if status:
            try:
                query = query.where(models.Assignment.status == AssignmentStatus(status))
            except ValueError:
                raise ValidationError(f"Invalid assignment status: {status!r}")

        total = await session.scalar(select(func.count()).select_from(query.subquery()))
        result = await session.execute(
            query.order_by(models.Assignment.created_at.desc()).limit(limit).offset((page - 1) * limit)
        )
        pages = math.ceil(total / limit) if limit else 0
        return list(result.scalars().all()), total, pages

    async def list_for_issue(self, session: AsyncSession, issue_id: str) -> list[models.Assignment]:
        result = await session.execute(
            select(models.Assignment)
            .where(models.Assignment.issue_id == issue_id)
            .order_by(models.Assignment.created_at)
        )
        return list(result.scalars().all())
