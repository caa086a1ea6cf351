import asyncio

import pytest
from sqlalchemy.exc import IntegrityError

from citypulse.database import models, utcnow
from citypulse.errors import Conflict, Forbidden, InvalidState, NotFound, ValidationError
from citypulse.schemas import (
    AssignmentStatus,
    HistoryAction,
    IssuePriority,
    IssueStatus,
    NotificationType,
)
from tests.factories import (
    assignment_payload,
    assignments_for,
    fetch,
    issue_payload,
    notifications_for,
    resolved_issue,
)


@pytest.fixture
async def issue(workflow, users):
    return await workflow.create_issue(users["citizen"], issue_payload())


async def _types(session_factory, recipient_id):
    return [n.type for n in await notifications_for(session_factory, recipient_id)]


async def test_happy_path_assign_accept_complete(workflow, users, issue, session_factory, outbound):
    officer = users["officer"]

    assignment = await workflow.assign(users["admin"], issue.id, assignment_payload(officer.id))
    assert assignment.status == AssignmentStatus.ACTIVE
    assert assignment.priority == IssuePriority.HIGH
    assert [h.action for h in assignment.history] == [HistoryAction.ASSIGNED]

    stored = await fetch(session_factory, models.Issue, issue.id)
    assert stored.status == IssueStatus.ASSIGNED
    assert stored.assigned_to == officer.id

    assignment = await workflow.accept(officer, assignment.id)
    assert assignment.status == AssignmentStatus.ACCEPTED
    stored = await fetch(session_factory, models.Issue, issue.id)
    assert stored.status == IssueStatus.IN_PROGRESS

    assignment = await workflow.complete(officer, assignment.id, notes="Patched")
    assert assignment.status == AssignmentStatus.COMPLETED
    assert [h.action for h in assignment.history] == [
        HistoryAction.ASSIGNED,
        HistoryAction.ACCEPTED,
        HistoryAction.COMPLETED,
    ]

    stored = await fetch(session_factory, models.Issue, issue.id)
    assert stored.status == IssueStatus.RESOLVED
    assert stored.assigned_to == officer.id
    assert stored.resolution_time == 0

    assert await _types(session_factory, officer.id) == [NotificationType.ISSUE_ASSIGNED]
    assert await _types(session_factory, users["citizen"].id) == [
        NotificationType.ISSUE_ASSIGNED,
        NotificationType.ISSUE_RESOLVED,
    ]
    assert await _types(session_factory, users["admin"].id) == [
        NotificationType.ISSUE_CREATED,
        NotificationType.ASSIGNMENT_ACCEPTED,
    ]
    assert outbound.tasks() == [
        "send_issue_reported_email",
        "schedule_assignment_event",
        "send_assignment_emails",
        "schedule_assignment_event",
        "send_status_update_email",
        "send_status_update_email",
    ]
    assert outbound.effects[-1].kwargs == {"issue_id": issue.id, "status": "resolved"}


async def test_second_assign_conflicts(workflow, users, issue, session_factory):
    await workflow.assign(users["admin"], issue.id, assignment_payload(users["officer"].id))

    with pytest.raises(Conflict):
        await workflow.assign(users["admin"], issue.id, assignment_payload(users["officer2"].id))

    assert len(await assignments_for(session_factory, issue.id)) == 1
    stored = await fetch(session_factory, models.Issue, issue.id)
    assert stored.assigned_to == users["officer"].id


async def test_concurrent_assign_has_exactly_one_winner(workflow, users, issue, session_factory):
    results = await asyncio.gather(
        workflow.assign(users["admin"], issue.id, assignment_payload(users["officer"].id)),
        workflow.assign(users["admin"], issue.id, assignment_payload(users["officer2"].id)),
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, models.Assignment)]
    conflicts = [r for r in results if isinstance(r, Conflict)]
    assert len(winners) == 1
    assert len(conflicts) == 1

    rows = await assignments_for(session_factory, issue.id)
    assert [row.id for row in rows] == [winners[0].id]
    assert len(workflow.locks) == 0


async def test_storage_rejects_two_open_assignments(session_factory, users, workflow, issue):
    def row(officer_id):
        now = utcnow()
        return models.Assignment(
            id=f"raw-{officer_id}",
            issue_id=issue.id,
            assigned_to=officer_id,
            assigned_by=users["admin"].id,
            status=AssignmentStatus.ACTIVE,
            priority=IssuePriority.LOW,
            created_at=now,
            updated_at=now,
        )

    with pytest.raises(IntegrityError):
        async with session_factory() as session:
            async with session.begin():
                session.add(row(users["officer"].id))
                session.add(row(users["officer2"].id))


async def test_assign_rejects_finished_issue(workflow, users):
    issue = await resolved_issue(workflow, users)
    with pytest.raises(Conflict):
        await workflow.assign(users["admin"], issue.id, assignment_payload(users["officer2"].id))


async def test_assign_validates_officer(workflow, users, issue):
    with pytest.raises(NotFound):
        await workflow.assign(users["admin"], issue.id, assignment_payload("nobody"))
    with pytest.raises(ValidationError):
        await workflow.assign(users["admin"], issue.id, assignment_payload(users["citizen"].id))
    with pytest.raises(Forbidden):
        await workflow.assign(users["officer"], issue.id, assignment_payload(users["officer"].id))
    with pytest.raises(NotFound):
        await workflow.assign(users["admin"], "missing", assignment_payload(users["officer"].id))


async def test_accept_checks_owner_and_state(workflow, users, issue):
    assignment = await workflow.assign(users["admin"], issue.id, assignment_payload(users["officer"].id))

    with pytest.raises(Forbidden):
        await workflow.accept(users["officer2"], assignment.id)

    await workflow.accept(users["officer"], assignment.id)
    with pytest.raises(InvalidState):
        await workflow.accept(users["officer"], assignment.id)

    with pytest.raises(NotFound):
        await workflow.accept(users["officer"], "missing")


async def test_complete_requires_acceptance(workflow, users, issue):
    assignment = await workflow.assign(users["admin"], issue.id, assignment_payload(users["officer"].id))

    with pytest.raises(InvalidState):
        await workflow.complete(users["officer"], assignment.id)
    with pytest.raises(Forbidden):
        await workflow.complete(users["officer2"], assignment.id)


async def test_reassign_accepted_assignment(workflow, users, issue, session_factory):
    first = await workflow.assign(users["admin"], issue.id, assignment_payload(users["officer"].id))
    await workflow.accept(users["officer"], first.id)

    second = await workflow.reassign(users["admin"], first.id, users["officer2"].id, notes="Closer crew")

    old = await fetch(session_factory, models.Assignment, first.id)
    assert old.status == AssignmentStatus.REASSIGNED
    assert [h.action for h in old.history] == [
        HistoryAction.ASSIGNED,
        HistoryAction.ACCEPTED,
        HistoryAction.REASSIGNED,
    ]

    assert second.id != first.id
    assert second.status == AssignmentStatus.ACTIVE
    assert second.assigned_to == users["officer2"].id
    assert [h.action for h in second.history] == [HistoryAction.ASSIGNED]

    stored = await fetch(session_factory, models.Issue, issue.id)
    assert stored.status == IssueStatus.ASSIGNED
    assert stored.assigned_to == users["officer2"].id

    rows = await assignments_for(session_factory, issue.id)
    assert [r.status for r in rows if r.status == AssignmentStatus.ACTIVE] == [AssignmentStatus.ACTIVE]

    assert NotificationType.ASSIGNMENT_REASSIGNED in await _types(session_factory, users["officer"].id)
    assert await _types(session_factory, users["officer2"].id) == [NotificationType.ASSIGNMENT_REASSIGNED]


async def test_reassign_guards(workflow, users, issue):
    assignment = await workflow.assign(users["admin"], issue.id, assignment_payload(users["officer"].id))

    with pytest.raises(ValidationError):
        await workflow.reassign(users["admin"], assignment.id, users["officer"].id)

    await workflow.accept(users["officer"], assignment.id)
    await workflow.complete(users["officer"], assignment.id)
    with pytest.raises(InvalidState):
        await workflow.reassign(users["admin"], assignment.id, users["officer2"].id)


async def test_cancel_reopens_issue(workflow, users, issue, session_factory):
    assignment = await workflow.assign(users["admin"], issue.id, assignment_payload(users["officer"].id))
    await workflow.accept(users["officer"], assignment.id)

    cancelled = await workflow.cancel(users["admin"], assignment.id)
    assert cancelled.status == AssignmentStatus.CANCELLED

    stored = await fetch(session_factory, models.Issue, issue.id)
    assert stored.status == IssueStatus.OPEN
    assert stored.assigned_to is None

    with pytest.raises(InvalidState):
        await workflow.cancel(users["admin"], assignment.id)

    again = await workflow.assign(users["admin"], issue.id, assignment_payload(users["officer2"].id))
    assert again.status == AssignmentStatus.ACTIVE


async def test_officer_listing(workflow, users, session_factory):
    for _ in range(3):
        issue = await workflow.create_issue(users["citizen"], issue_payload())
        await workflow.assign(users["admin"], issue.id, assignment_payload(users["officer"].id))

    async with session_factory() as session:
        items, total, pages = await workflow.assignments.list_for_officer(
            session, users["officer"].id, "active", page=1, limit=2
        )
        assert (len(items), total, pages) == (2, 3, 2)

        items, total, _ = await workflow.assignments.list_for_officer(session, users["officer"].id, "completed")
        assert total == 0

        with pytest.raises(ValidationError):
            await workflow.assignments.list_for_officer(session, users["officer"].id, "paused")
