"""WorkflowOrchestrator: the entry points of the issue workflow.

Every mutating operation runs as one transaction:

    capability check -> per-issue lock -> mutate -> stage notifications -> commit

and only after the commit are notifications pushed to live subscribers and
outbound side effects (calendar, email) handed to the background queue.
"""

import asyncio
import logging
from contextlib import asynccontextmanager, nullcontext
from typing import Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from citypulse.auth import Actor, require_role
from citypulse.database import models
from citypulse.errors import Conflict, Forbidden, NotFound, ValidationError
from citypulse.llm_service import Suggestion, SuggestionService
from citypulse.schemas import (
    AssignmentCreate,
    FeedbackCreate,
    FeedbackUpdate,
    IssueCreate,
    IssueStatus,
    IssueUpdate,
    NotificationType,
    ReportCreate,
    ReportUpdate,
    UserCreate,
    UserRole,
    UserUpdate,
)
from citypulse.services.assignments import AssignmentEngine
from citypulse.services.base import Outcome
from citypulse.services.feedback import FeedbackLedger
from citypulse.services.issues import IssueStore
from citypulse.services.notifications import NotificationDispatcher
from citypulse.services.reports import ReportService
from citypulse.services.users import UserDirectory
from citypulse.tasks.outbound import OutboundQueue

logger = logging.getLogger(__name__)

MIN_SUGGESTION_LENGTH = 10

Operation = Callable[[AsyncSession], Awaitable[Outcome]]


class IssueLocks:
    """One asyncio.Lock per issue id, dropped when nobody holds or waits on it."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, issue_id: str):
        lock = self._locks.setdefault(issue_id, asyncio.Lock())
        self._users[issue_id] = self._users.get(issue_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[issue_id] -= 1
            if not self._users[issue_id]:
                del self._users[issue_id]
                del self._locks[issue_id]

    def __len__(self) -> int:
        return len(self._locks)


class WorkflowOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        dispatcher: NotificationDispatcher,
        outbound: OutboundQueue,
        suggestions: SuggestionService,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.outbound = outbound
        self.suggestions = suggestions

        self.issues = IssueStore(dispatcher)
        self.assignments = AssignmentEngine(self.issues, dispatcher)
        self.feedback = FeedbackLedger(self.issues)
        self.users = UserDirectory()
        self.reports = ReportService(self.feedback)
        self.locks = IssueLocks()

    async def _run(self, issue_id: Optional[str], op: Operation):
        """Run ``op`` in its own transaction, serialised per issue when given one."""
        guard = self.locks.hold(issue_id) if issue_id else nullcontext()
        async with guard:
            async with self.session_factory() as session:
                try:
                    async with session.begin():
                        outcome = await op(session)
                        notifications = self.dispatcher.stage_all(session, outcome.events)
                except IntegrityError as e:
                    logger.warning(f"Integrity violation on commit: {e.orig}", extra={"issue_id": issue_id})
                    raise Conflict("Operation conflicts with existing data")

        self.dispatcher.publish(notifications)
        if outcome.effects:
            self.outbound.enqueue(outcome.effects)
        return outcome.entity

    async def _issue_of_assignment(self, assignment_id: str) -> str:
        async with self.session_factory() as session:
            issue_id = await session.scalar(
                select(models.Assignment.issue_id).where(models.Assignment.id == assignment_id)
            )
        if issue_id is None:
            raise NotFound("Assignment not found")
        return issue_id

    # Issues

    async def suggest(self, actor: Actor, description: str) -> Suggestion:
        description = (description or "").strip()
        if len(description) < MIN_SUGGESTION_LENGTH:
            raise ValidationError(
                f"Description must be at least {MIN_SUGGESTION_LENGTH} characters"
            )
        return await self.suggestions.suggest(description)

    async def create_issue(self, actor: Actor, payload: IssueCreate) -> models.Issue:
        require_role(actor, UserRole.CITIZEN)

        suggestion = None
        missing = payload.title is None or payload.category is None or payload.priority is None
        if payload.use_ai and missing:
            suggestion = await self.suggestions.suggest(payload.description)

        return await self._run(
            None, lambda session: self.issues.create(session, actor, payload, suggestion)
        )

    async def update_issue(self, actor: Actor, issue_id: str, payload: IssueUpdate) -> models.Issue:
        require_role(actor, UserRole.OFFICER, UserRole.ADMIN)

        async def op(session: AsyncSession) -> Outcome:
            issue = await self.issues.get(session, issue_id, for_update=True)
            if actor.role == UserRole.OFFICER and issue.assigned_to != actor.id:
                raise Forbidden("Only the assigned officer can update this issue")
            if payload.priority is not None:
                self.issues.set_priority(issue, payload.priority)
            if payload.comment is not None:
                self.issues.append_comment(issue, actor.id, payload.comment)
            return Outcome(issue)

        return await self._run(issue_id, op)

    async def add_comment(self, actor: Actor, issue_id: str, text: str) -> models.Issue:
        async def op(session: AsyncSession) -> Outcome:
            issue = await self.issues.get(session, issue_id, for_update=True)
            if not actor.is_admin and actor.id not in (issue.reported_by, issue.assigned_to):
                raise Forbidden("Not authorized to comment on this issue")
            self.issues.append_comment(issue, actor.id, text)
            return Outcome(issue)

        return await self._run(issue_id, op)

    async def close_issue(self, actor: Actor, issue_id: str) -> models.Issue:
        require_role(actor, UserRole.ADMIN)

        async def op(session: AsyncSession) -> Outcome:
            issue = await self.issues.get(session, issue_id, for_update=True)
            events = self.issues.transition_status(issue, IssueStatus.CLOSED)
            return Outcome(issue, events)

        return await self._run(issue_id, op)

    async def delete_issue(self, actor: Actor, issue_id: str) -> None:
        require_role(actor, UserRole.ADMIN)

        async def op(session: AsyncSession) -> Outcome:
            await self.issues.delete(session, issue_id)
            return Outcome(None)

        await self._run(issue_id, op)

    # Assignments

    async def assign(self, actor: Actor, issue_id: str, payload: AssignmentCreate) -> models.Assignment:
        require_role(actor, UserRole.ADMIN)
        return await self._run(
            issue_id,
            lambda session: self.assignments.assign(
                session,
                issue_id,
                payload.assigned_to,
                actor.id,
                payload.priority,
                deadline=payload.deadline,
                notes=payload.notes,
                estimated_hours=payload.estimated_hours,
            ),
        )

    async def accept(self, actor: Actor, assignment_id: str) -> models.Assignment:
        require_role(actor, UserRole.OFFICER)
        issue_id = await self._issue_of_assignment(assignment_id)
        return await self._run(
            issue_id, lambda session: self.assignments.accept(session, assignment_id, actor.id)
        )

    async def complete(
        self,
        actor: Actor,
        assignment_id: str,
        notes: Optional[str] = None,
        resolution_hours: Optional[int] = None,
    ) -> models.Assignment:
        require_role(actor, UserRole.OFFICER)
        issue_id = await self._issue_of_assignment(assignment_id)
        return await self._run(
            issue_id,
            lambda session: self.assignments.complete(
                session, assignment_id, actor.id, notes=notes, resolution_hours=resolution_hours
            ),
        )

    async def reassign(
        self,
        actor: Actor,
        assignment_id: str,
        new_officer_id: str,
        notes: Optional[str] = None,
    ) -> models.Assignment:
        require_role(actor, UserRole.ADMIN)
        issue_id = await self._issue_of_assignment(assignment_id)
        return await self._run(
            issue_id,
            lambda session: self.assignments.reassign(
                session, assignment_id, new_officer_id, actor.id, notes=notes
            ),
        )

    async def cancel(self, actor: Actor, assignment_id: str) -> models.Assignment:
        require_role(actor, UserRole.ADMIN)
        issue_id = await self._issue_of_assignment(assignment_id)
        return await self._run(
            issue_id, lambda session: self.assignments.cancel(session, assignment_id, actor.id)
        )

    # Feedback

    async def submit_feedback(self, actor: Actor, issue_id: str, payload: FeedbackCreate) -> models.Feedback:
        require_role(actor, UserRole.CITIZEN)
        return await self._run(
            issue_id,
            lambda session: self.feedback.submit(
                session,
                issue_id,
                actor.id,
                payload.rating,
                comment=payload.comment,
                anonymous=payload.is_anonymous,
            ),
        )

    async def update_feedback(self, actor: Actor, feedback_id: str, payload: FeedbackUpdate) -> models.Feedback:
        require_role(actor, UserRole.CITIZEN)
        return await self._run(
            None,
            lambda session: self.feedback.update(
                session,
                feedback_id,
                actor.id,
                rating=payload.rating,
                comment=payload.comment,
                anonymous=payload.is_anonymous,
            ),
        )

    async def approve_feedback(self, actor: Actor, feedback_id: str) -> models.Feedback:
        require_role(actor, UserRole.ADMIN)
        return await self._run(None, lambda session: self.feedback.approve(session, feedback_id))

    async def reject_feedback(self, actor: Actor, feedback_id: str) -> models.Feedback:
        require_role(actor, UserRole.ADMIN)
        return await self._run(None, lambda session: self.feedback.reject(session, feedback_id))

    async def reply_feedback(self, actor: Actor, feedback_id: str, text: str) -> models.Feedback:
        require_role(actor, UserRole.OFFICER, UserRole.ADMIN)
        return await self._run(
            None, lambda session: self.feedback.add_reply(session, feedback_id, actor, text)
        )

    async def mark_feedback_helpful(self, actor: Actor, feedback_id: str) -> models.Feedback:
        return await self._run(None, lambda session: self.feedback.mark_helpful(session, feedback_id))

    async def delete_feedback(self, actor: Actor, feedback_id: str) -> None:
        require_role(actor, UserRole.CITIZEN, UserRole.ADMIN)

        async def op(session: AsyncSession) -> Outcome:
            await self.feedback.delete(session, feedback_id, actor)
            return Outcome(None)

        await self._run(None, op)

    # Users and reports

    async def create_user(self, actor: Actor, payload: UserCreate) -> models.User:
        require_role(actor, UserRole.ADMIN)

        async def op(session: AsyncSession) -> Outcome:
            return Outcome(await self.users.create(session, payload))

        user = await self._run(None, op)
        if user.role == UserRole.ADMIN:
            self.dispatcher.admins.register(user.id)
        return user

    async def update_profile(self, actor: Actor, payload: UserUpdate) -> models.User:
        """Any signed-in user may edit their own profile."""

        async def op(session: AsyncSession) -> Outcome:
            return Outcome(await self.users.update(session, actor.id, payload))

        return await self._run(None, op)

    async def generate_report(self, actor: Actor) -> dict:
        """Recompute the admin dashboard and tell the caller it is ready."""
        require_role(actor, UserRole.ADMIN)
        async with self.session_factory() as session:
            report = await self.reports.admin_dashboard(session, refresh=True)

        await self.dispatcher.notify(
            actor.id,
            NotificationType.REPORT_GENERATED,
            "Report Generated",
            f"Dashboard report ready: {report['total_issues']} issues tracked.",
            {"report": "admin", "url": "/reports/dashboard/admin"},
        )
        return report

    async def create_report(self, actor: Actor, payload: ReportCreate) -> models.Report:
        require_role(actor, UserRole.ADMIN)
        return await self._run(
            None, lambda session: self._outcome(self.reports.create_saved(session, actor.id, payload))
        )

    async def update_report(self, actor: Actor, report_id: str, payload: ReportUpdate) -> models.Report:
        require_role(actor, UserRole.ADMIN)
        return await self._run(
            None, lambda session: self._outcome(self.reports.update_saved(session, report_id, payload))
        )

    async def toggle_report(self, actor: Actor, report_id: str) -> models.Report:
        require_role(actor, UserRole.ADMIN)
        return await self._run(
            None, lambda session: self._outcome(self.reports.toggle_saved(session, report_id))
        )

    async def delete_report(self, actor: Actor, report_id: str) -> None:
        require_role(actor, UserRole.ADMIN)
        await self._run(
            None, lambda session: self._outcome(self.reports.delete_saved(session, report_id))
        )

    async def run_report(self, actor: Actor, report_id: str) -> dict:
        """Officers and admins may execute saved reports."""
        require_role(actor, UserRole.OFFICER, UserRole.ADMIN)
        return await self._run(
            None, lambda session: self._outcome(self.reports.run_saved(session, report_id))
        )

    @staticmethod
    async def _outcome(pending: Awaitable) -> Outcome:
        return Outcome(await pending)
