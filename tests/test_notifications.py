import asyncio
from contextlib import asynccontextmanager

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from starlette.websockets import WebSocketDisconnect

from citypulse.database import Base
from citypulse.dependencies import get_workflow
from citypulse.errors import NotFound, ValidationError
from citypulse.schemas import NotificationType
from citypulse.services.notifications import (
    AdminDirectory,
    LiveHub,
    NotificationDispatcher,
    NotificationEvent,
)
from citypulse.services.workflow import WorkflowOrchestrator
from main import app
from tests.factories import issue_payload, notifications_for, seed_users


@pytest.fixture
def dispatcher(session_factory):
    return NotificationDispatcher(LiveHub(), AdminDirectory(), session_factory)


async def test_notify_persists_then_pushes(dispatcher, users, session_factory):
    queue = dispatcher.hub.subscribe(users["citizen"].id)

    notification = await dispatcher.notify(
        users["citizen"].id,
        NotificationType.SYSTEM_ALERT,
        "Maintenance",
        "Portal offline tonight",
        {"url": "/status"},
    )

    stored = await notifications_for(session_factory, users["citizen"].id)
    assert [n.id for n in stored] == [notification.id]
    assert stored[0].is_read is False
    assert stored[0].channels == ["web"]

    pushed = queue.get_nowait()
    assert pushed["id"] == notification.id
    assert pushed["type"] == "SYSTEM_ALERT"
    assert pushed["data"] == {"url": "/status"}


async def test_workflow_pushes_only_after_commit(workflow, users):
    queue = workflow.dispatcher.hub.subscribe(users["admin"].id)

    await workflow.create_issue(users["citizen"], issue_payload())

    pushed = queue.get_nowait()
    assert pushed["type"] == "ISSUE_CREATED"


async def test_failed_operation_pushes_nothing(workflow, users):
    queue = workflow.dispatcher.hub.subscribe(users["admin"].id)

    with pytest.raises(ValidationError):
        await workflow.create_issue(users["citizen"], issue_payload(title=None))

    assert queue.empty()


def test_full_queue_drops_push():
    hub = LiveHub(queue_size=1)
    queue = hub.subscribe("someone")

    assert hub.publish("someone", {"n": 1}) == 1
    assert hub.publish("someone", {"n": 2}) == 0
    assert queue.qsize() == 1
    assert hub.publish("nobody", {"n": 3}) == 0


def test_unsubscribe_forgets_recipient():
    hub = LiveHub()
    first = hub.subscribe("someone")
    second = hub.subscribe("someone")
    assert hub.subscriber_count("someone") == 2

    hub.unsubscribe("someone", first)
    hub.unsubscribe("someone", second)
    hub.unsubscribe("someone", second)
    assert hub.subscriber_count("someone") == 0


def test_admin_directory_broadcast():
    admins = AdminDirectory(["a2", "a1"])
    admins.register("a3")
    admins.unregister("a2")
    dispatcher = NotificationDispatcher(LiveHub(), admins)

    events = dispatcher.to_admins(NotificationType.ISSUE_CREATED, "New", "Body", {"issue_id": "i1"})
    assert [e.recipient_id for e in events] == ["a1", "a3"]
    events[0].data["extra"] = True
    assert "extra" not in events[1].data


async def test_stage_clips_long_text(dispatcher, users, session_factory):
    async with session_factory() as session:
        async with session.begin():
            notification = dispatcher.stage(
                session,
                NotificationEvent(users["citizen"].id, NotificationType.SYSTEM_ALERT, "t" * 150, "m" * 600),
            )

    assert len(notification.title) == 100
    assert notification.title.endswith("...")
    assert len(notification.message) == 500


async def test_read_flags_are_idempotent(dispatcher, users, session_factory):
    recipient = users["citizen"].id
    first = await dispatcher.notify(recipient, NotificationType.SYSTEM_ALERT, "One", "First")
    await dispatcher.notify(recipient, NotificationType.SYSTEM_ALERT, "Two", "Second")

    async with session_factory() as session:
        assert await dispatcher.unread_count(session, recipient) == 2
        assert await dispatcher.mark_read(session, first.id, recipient) == 1
        assert await dispatcher.mark_read(session, first.id, recipient) == 0
        assert await dispatcher.mark_read(session, "missing", recipient) == 0
        assert await dispatcher.mark_read(session, first.id, users["neighbour"].id) == 0
        assert await dispatcher.unread_count(session, recipient) == 1

        items, total, pages, unread = await dispatcher.list_for(session, recipient, "unread")
        assert (len(items), total, pages, unread) == (1, 1, 1, 1)
        assert items[0].title == "Two"

        assert await dispatcher.mark_all_read(session, recipient) == 1
        assert await dispatcher.mark_all_read(session, recipient) == 0

        items, total, _, unread = await dispatcher.list_for(session, recipient, "read")
        assert (total, unread) == (2, 0)


async def test_delete_own_notification(dispatcher, users, session_factory):
    recipient = users["citizen"].id
    notification = await dispatcher.notify(recipient, NotificationType.SYSTEM_ALERT, "One", "First")

    async with session_factory() as session:
        with pytest.raises(NotFound):
            await dispatcher.delete(session, notification.id, users["neighbour"].id)
        await dispatcher.delete(session, notification.id, recipient)
        with pytest.raises(NotFound):
            await dispatcher.delete(session, notification.id, recipient)

    assert await notifications_for(session_factory, recipient) == []


async def test_notify_without_session_factory_is_an_error():
    dispatcher = NotificationDispatcher(LiveHub(), AdminDirectory())
    with pytest.raises(RuntimeError):
        await dispatcher.notify("someone", NotificationType.SYSTEM_ALERT, "t", "m")


async def test_live_queue_wakes_waiting_consumer(dispatcher, users):
    queue = dispatcher.hub.subscribe(users["citizen"].id)
    waiter = asyncio.create_task(queue.get())

    await dispatcher.notify(users["citizen"].id, NotificationType.SYSTEM_ALERT, "Ping", "Pong")

    payload = await asyncio.wait_for(waiter, timeout=1)
    assert payload["title"] == "Ping"


# Live socket. These run the app on TestClient's own event loop, so the
# database is set up through its portal and the pool holds one connection.


@asynccontextmanager
async def no_lifespan(app):
    yield


@pytest.fixture
def live(tmp_path, monkeypatch, outbound, suggestions):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'live.db'}", pool_size=1, max_overflow=0, pool_timeout=5
    )
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    dispatcher = NotificationDispatcher(LiveHub(), AdminDirectory(), factory)
    workflow = WorkflowOrchestrator(factory, dispatcher, outbound, suggestions)

    async def setup():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        people = await seed_users(factory)
        async with factory() as session:
            await dispatcher.admins.load(session)
        return people

    monkeypatch.setattr(app.router, "lifespan_context", no_lifespan)
    app.dependency_overrides[get_workflow] = lambda: workflow
    with TestClient(app) as client:
        people = client.portal.call(setup)
        yield client, workflow, engine, people
        client.portal.call(engine.dispose)
    app.dependency_overrides.clear()


def test_socket_rejects_unknown_user(live):
    client, workflow, engine, people = live
    with pytest.raises(WebSocketDisconnect) as closed:
        with client.websocket_connect("/api/v1/notifications/ws?user_id=ghost"):
            pass
    assert closed.value.code == 1008
    assert engine.pool.checkedout() == 0


def test_socket_receives_committed_notifications(live):
    client, workflow, engine, people = live
    admin = people["admin"]
    hub = workflow.dispatcher.hub

    with client.websocket_connect(f"/api/v1/notifications/ws?user_id={admin.id}") as socket:
        assert hub.subscriber_count(admin.id) == 1
        assert engine.pool.checkedout() == 0

        # Needs the only pooled connection, so this fails if the socket pinned one.
        issue = client.portal.call(workflow.create_issue, people["citizen"], issue_payload())

        message = socket.receive_json()
        assert message["type"] == "ISSUE_CREATED"
        assert message["recipient_id"] == admin.id
        assert message["data"]["issue_id"] == issue.id

    assert hub.subscriber_count(admin.id) == 0
    assert engine.pool.checkedout() == 0
