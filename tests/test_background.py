import asyncio

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from citypulse.database import Base, models, utcnow
from citypulse.schemas import AssignmentStatus, IssueCategory, IssuePriority, IssueStatus, UserRole
from citypulse.services.base import SideEffect
from citypulse.tasks import celery_tasks
from citypulse.tasks.outbound import OutboundQueue


class RecordingTask:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def apply_async(self, kwargs=None):
        if self.error:
            raise self.error
        self.calls.append(kwargs)


async def _settle(predicate, attempts=100):
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return False


async def test_outbound_publishes_without_blocking():
    task = RecordingTask()
    queue = OutboundQueue({"send_issue_reported_email": task})

    queue.enqueue([SideEffect("send_issue_reported_email", {"issue_id": "i1"})])

    assert await _settle(lambda: task.calls)
    assert task.calls == [{"issue_id": "i1"}]


async def test_outbound_swallows_broker_failures(caplog):
    broken = RecordingTask(error=ConnectionError("broker down"))
    healthy = RecordingTask()
    queue = OutboundQueue({"schedule_assignment_event": broken, "send_assignment_emails": healthy})

    queue.enqueue(
        [
            SideEffect("schedule_assignment_event", {"assignment_id": "a1"}),
            SideEffect("send_assignment_emails", {"assignment_id": "a1"}),
            SideEffect("not_a_task", {}),
        ]
    )

    assert await _settle(lambda: healthy.calls and "Failed to queue" in caplog.text)
    assert healthy.calls == [{"assignment_id": "a1"}]


def test_default_task_map_covers_every_side_effect():
    tasks = OutboundQueue().tasks
    assert set(tasks) == {
        "schedule_assignment_event",
        "send_assignment_emails",
        "send_status_update_email",
        "send_issue_reported_email",
    }


@pytest.fixture
def sync_session(tmp_path, monkeypatch):
    engine = create_engine(f"sqlite:///{tmp_path / 'worker.db'}")
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    monkeypatch.setattr(celery_tasks, "SyncSessionLocal", factory)

    now = utcnow()
    with factory() as db:
        db.add_all(
            [
                models.User(id="c1", name="Citizen", email="c1@example.com", role=UserRole.CITIZEN,
                            avg_rating=0.0, feedback_count=0, created_at=now, updated_at=now),
                models.User(id="o1", name="Officer", email="o1@example.com", role=UserRole.OFFICER,
                            avg_rating=0.0, feedback_count=0, created_at=now, updated_at=now),
                models.Issue(id="i1", title="Flooded underpass", description="Knee deep water",
                             category=IssueCategory.DRAINAGE, priority=IssuePriority.HIGH,
                             status=IssueStatus.ASSIGNED, latitude=1.0, longitude=1.0, images=[],
                             reported_by="c1", assigned_to="o1", created_at=now, updated_at=now),
                models.Assignment(id="a1", issue_id="i1", assigned_to="o1", assigned_by="o1",
                                  status=AssignmentStatus.ACTIVE, priority=IssuePriority.HIGH,
                                  created_at=now, updated_at=now),
            ]
        )
        db.commit()
    yield factory
    engine.dispose()


class FakeCalendar:
    def __init__(self, event_id="evt-1"):
        self.event_id = event_id
        self.calls = []

    def schedule_event(self, officer, assignment, issue):
        self.calls.append((officer.id, assignment.id, issue.id))
        return self.event_id


class FakeMailer:
    def __init__(self):
        self.sent = []

    def send_assignment_to_officer(self, issue, officer, citizen):
        self.sent.append(("officer", officer.email))
        return True

    def send_assignment_to_citizen(self, issue, citizen, officer):
        self.sent.append(("citizen", citizen.email))
        return True

    def send_status_update(self, issue, citizen, status):
        self.sent.append(("status", status))
        return True

    def send_issue_reported(self, issue, citizen):
        self.sent.append(("reported", citizen.email))
        return True


def test_calendar_event_id_is_written_back(sync_session, monkeypatch):
    calendar = FakeCalendar()
    monkeypatch.setattr(celery_tasks, "get_calendar_service", lambda: calendar)

    assert celery_tasks.schedule_assignment_event.run("a1") == "evt-1"
    assert calendar.calls == [("o1", "a1", "i1")]

    with sync_session() as db:
        assert db.get(models.Assignment, "a1").calendar_event_id == "evt-1"


def test_unscheduled_event_leaves_assignment_alone(sync_session, monkeypatch):
    monkeypatch.setattr(celery_tasks, "get_calendar_service", lambda: FakeCalendar(event_id=None))

    assert celery_tasks.schedule_assignment_event.run("a1") is None
    with sync_session() as db:
        assert db.get(models.Assignment, "a1").calendar_event_id is None


def test_calendar_disabled_or_missing_assignment(sync_session, monkeypatch):
    monkeypatch.setattr(celery_tasks, "get_calendar_service", lambda: None)
    assert celery_tasks.schedule_assignment_event.run("a1") is None

    monkeypatch.setattr(celery_tasks, "get_calendar_service", lambda: FakeCalendar())
    assert celery_tasks.schedule_assignment_event.run("nope") is None


def test_email_tasks(sync_session, monkeypatch):
    mailer = FakeMailer()
    monkeypatch.setattr(celery_tasks, "get_email_service", lambda: mailer)

    assert celery_tasks.send_assignment_emails.run("a1") == 2
    assert celery_tasks.send_status_update_email.run("i1", "resolved") is True
    assert celery_tasks.send_issue_reported_email.run("i1") is True
    assert celery_tasks.send_status_update_email.run("missing", "resolved") is False

    assert mailer.sent == [
        ("officer", "o1@example.com"),
        ("citizen", "c1@example.com"),
        ("status", "resolved"),
        ("reported", "c1@example.com"),
    ]


def test_email_disabled(sync_session, monkeypatch):
    monkeypatch.setattr(celery_tasks, "get_email_service", lambda: None)
    assert celery_tasks.send_assignment_emails.run("a1") == 0
    assert celery_tasks.send_issue_reported_email.run("i1") is False
