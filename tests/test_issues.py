from datetime import timedelta

import pytest

from citypulse.database import models, utcnow
from citypulse.errors import Conflict, Forbidden, InvalidState, NotFound, ValidationError
from citypulse.llm_service import FALLBACK_TITLE, Suggestion
from citypulse.schemas import (
    IssueCategory,
    IssuePriority,
    IssueStatus,
    IssueUpdate,
    NotificationType,
)
from citypulse.services.issues import IssueStore, haversine_m
from citypulse.services.notifications import AdminDirectory, LiveHub, NotificationDispatcher
from tests.factories import (
    assignment_payload,
    fetch,
    issue_payload,
    notifications_for,
    resolved_issue,
)


def _issue(status=IssueStatus.OPEN, hours_old=0, **fields):
    now = utcnow()
    return models.Issue(
        id="issue-1",
        title="Broken streetlight",
        description="Light out for a week",
        category=IssueCategory.STREETLIGHT,
        priority=IssuePriority.LOW,
        status=status,
        latitude=0.0,
        longitude=0.0,
        reported_by="citizen-id",
        assigned_to=fields.pop("assigned_to", None),
        resolution_time=fields.pop("resolution_time", None),
        created_at=now - timedelta(hours=hours_old),
        updated_at=now,
        **fields,
    )


@pytest.fixture
def store():
    return IssueStore(NotificationDispatcher(LiveHub(), AdminDirectory(["admin-id"])))


async def test_create_issue_starts_open_and_tells_admins(workflow, users, session_factory, outbound):
    issue = await workflow.create_issue(users["citizen"], issue_payload())

    assert issue.status == IssueStatus.OPEN
    assert issue.assigned_to is None
    assert issue.reported_by == users["citizen"].id

    admin_inbox = await notifications_for(session_factory, users["admin"].id)
    assert [n.type for n in admin_inbox] == [NotificationType.ISSUE_CREATED]
    assert admin_inbox[0].data["issue_id"] == issue.id
    assert outbound.tasks() == ["send_issue_reported_email"]


async def test_only_citizens_report_issues(workflow, users):
    with pytest.raises(Forbidden):
        await workflow.create_issue(users["officer"], issue_payload())


async def test_create_requires_title_and_category_without_ai(workflow, users):
    with pytest.raises(ValidationError):
        await workflow.create_issue(users["citizen"], issue_payload(title=None))
    with pytest.raises(ValidationError):
        await workflow.create_issue(users["citizen"], issue_payload(category=None))


async def test_use_ai_fills_only_missing_fields(workflow, users, suggestions):
    issue = await workflow.create_issue(
        users["citizen"],
        issue_payload(title="Water leaking everywhere", category=None, priority=None, use_ai=True),
    )

    assert suggestions.calls
    assert issue.title == "Water leaking everywhere"
    assert issue.category == IssueCategory.WATER
    assert issue.priority == IssuePriority.HIGH


async def test_use_ai_skipped_when_nothing_missing(workflow, users, suggestions):
    await workflow.create_issue(users["citizen"], issue_payload(use_ai=True))
    assert suggestions.calls == []


async def test_blank_suggested_title_falls_back(workflow, users, suggestions):
    suggestions.suggestion = Suggestion(IssueCategory.ROAD, IssuePriority.MEDIUM, "")
    issue = await workflow.create_issue(users["citizen"], issue_payload(title=None, use_ai=True))
    assert issue.title == FALLBACK_TITLE


async def test_suggest_rejects_short_descriptions(workflow, users):
    with pytest.raises(ValidationError):
        await workflow.suggest(users["citizen"], "too short")

    suggestion = await workflow.suggest(users["citizen"], "Water pipe burst near the school gate")
    assert suggestion.category == IssueCategory.WATER


def test_transition_rejects_edges_outside_the_lifecycle(store):
    with pytest.raises(InvalidState):
        store.transition_status(_issue(IssueStatus.OPEN), IssueStatus.IN_PROGRESS)
    with pytest.raises(InvalidState):
        store.transition_status(_issue(IssueStatus.CLOSED), IssueStatus.OPEN)
    with pytest.raises(ValidationError):
        store.transition_status(_issue(IssueStatus.OPEN), "archived")


def test_assigning_requires_an_officer(store):
    with pytest.raises(ValidationError):
        store.transition_status(_issue(IssueStatus.OPEN), IssueStatus.ASSIGNED)


def test_reopening_clears_the_officer(store):
    issue = _issue(IssueStatus.ASSIGNED, assigned_to="officer-id")
    store.transition_status(issue, IssueStatus.OPEN)
    assert issue.status == IssueStatus.OPEN
    assert issue.assigned_to is None


def test_resolution_time_is_computed_once(store):
    issue = _issue(IssueStatus.IN_PROGRESS, hours_old=5, assigned_to="officer-id")

    events = store.transition_status(issue, IssueStatus.RESOLVED)
    assert issue.resolution_time == 5
    assert [(e.recipient_id, e.type) for e in events] == [("citizen-id", NotificationType.ISSUE_RESOLVED)]

    issue.status = IssueStatus.IN_PROGRESS
    store.transition_status(issue, IssueStatus.RESOLVED, resolution_hours=99)
    assert issue.resolution_time == 5


def test_resolution_time_override(store):
    issue = _issue(IssueStatus.IN_PROGRESS, hours_old=5, assigned_to="officer-id")
    store.transition_status(issue, IssueStatus.RESOLVED, resolution_hours=2)
    assert issue.resolution_time == 2


def test_negative_resolution_override_is_rejected(store):
    issue = _issue(IssueStatus.IN_PROGRESS, hours_old=5, assigned_to="officer-id")
    with pytest.raises(ValidationError):
        store.transition_status(issue, IssueStatus.RESOLVED, resolution_hours=-1)
    assert issue.resolution_time is None
    assert issue.status == IssueStatus.IN_PROGRESS


def test_comments_are_trimmed_and_truncated(store):
    issue = _issue()
    issue.comments = []

    with pytest.raises(ValidationError):
        store.append_comment(issue, "citizen-id", "   ")

    store.append_comment(issue, "citizen-id", "  first  ")
    store.append_comment(issue, "officer-id", "x" * 1500)

    assert [c.position for c in issue.comments] == [0, 1]
    assert issue.comments[0].text == "first"
    assert len(issue.comments[1].text) == 1000


async def test_update_issue_by_assigned_officer(workflow, users, session_factory):
    issue = await workflow.create_issue(users["citizen"], issue_payload())
    await workflow.assign(users["admin"], issue.id, assignment_payload(users["officer"].id))

    with pytest.raises(Forbidden):
        await workflow.update_issue(users["officer2"], issue.id, IssueUpdate(priority=IssuePriority.URGENT))

    updated = await workflow.update_issue(
        users["officer"], issue.id, IssueUpdate(priority=IssuePriority.URGENT, comment="On site tomorrow")
    )
    assert updated.priority == IssuePriority.URGENT
    assert [c.text for c in updated.comments] == ["On site tomorrow"]

    stored = await fetch(session_factory, models.Issue, issue.id)
    assert stored.priority == IssuePriority.URGENT


async def test_comment_permissions(workflow, users):
    issue = await workflow.create_issue(users["citizen"], issue_payload())

    with pytest.raises(Forbidden):
        await workflow.add_comment(users["neighbour"], issue.id, "Me too")

    updated = await workflow.add_comment(users["citizen"], issue.id, "Still there")
    updated = await workflow.add_comment(users["admin"], issue.id, "Noted")
    assert [c.author_id for c in updated.comments] == [users["citizen"].id, users["admin"].id]


async def test_unknown_issue_is_not_found(workflow, users):
    with pytest.raises(NotFound):
        await workflow.add_comment(users["admin"], "missing", "hello")


async def test_close_only_after_resolution(workflow, users):
    issue = await workflow.create_issue(users["citizen"], issue_payload())
    with pytest.raises(InvalidState):
        await workflow.close_issue(users["admin"], issue.id)

    issue = await resolved_issue(workflow, users)
    closed = await workflow.close_issue(users["admin"], issue.id)
    assert closed.status == IssueStatus.CLOSED


async def test_delete_forbidden_while_dependents_exist(workflow, users, session_factory):
    lonely = await workflow.create_issue(users["citizen"], issue_payload())
    busy = await workflow.create_issue(users["citizen"], issue_payload())
    await workflow.assign(users["admin"], busy.id, assignment_payload(users["officer"].id))

    with pytest.raises(Forbidden):
        await workflow.delete_issue(users["citizen"], lonely.id)
    with pytest.raises(Conflict):
        await workflow.delete_issue(users["admin"], busy.id)

    await workflow.delete_issue(users["admin"], lonely.id)
    assert await fetch(session_factory, models.Issue, lonely.id) is None
    assert await fetch(session_factory, models.Issue, busy.id) is not None


async def test_search_filters_and_paginates(workflow, users, session_factory):
    for _ in range(3):
        await workflow.create_issue(users["citizen"], issue_payload())
    await workflow.create_issue(users["citizen"], issue_payload(category=IssueCategory.WATER))

    async with session_factory() as session:
        items, total, pages = await workflow.issues.search(session, {"category": "road"}, page=1, limit=2)
        assert total == 3
        assert pages == 2
        assert len(items) == 2

        items, total, _ = await workflow.issues.search(session, {"category": "road"}, page=2, limit=2)
        assert len(items) == 1

        with pytest.raises(ValidationError):
            await workflow.issues.search(session, {"status": "lost"})


async def test_nearby_orders_by_distance(workflow, users, session_factory):
    close = await workflow.create_issue(users["citizen"], issue_payload(latitude=12.9720, longitude=77.5950))
    closest = await workflow.create_issue(users["citizen"], issue_payload(latitude=12.9716, longitude=77.5946))
    await workflow.create_issue(users["citizen"], issue_payload(latitude=13.5, longitude=78.5))

    async with session_factory() as session:
        found = await workflow.issues.nearby(session, 12.9716, 77.5946, radius_m=1000)

    assert [issue.id for issue in found] == [closest.id, close.id]


def test_haversine_one_degree_of_latitude():
    assert haversine_m(0, 0, 1, 0) == pytest.approx(111_195, rel=1e-3)
