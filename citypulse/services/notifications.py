"""Notification dispatch: persisted records plus best-effort live delivery.

A notification is written in the same transaction as the mutation that
caused it, so the stored record is the durable source of truth. Live
delivery to connected subscribers happens only after that transaction
commits and may be dropped; clients recover missed pushes by polling.
"""

import asyncio
import logging
import math
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from citypulse.database import models
from citypulse.database.config import utcnow
from citypulse.errors import NotFound
from citypulse.schemas import IssuePriority, NotificationResponse, NotificationType, UserRole

logger = logging.getLogger(__name__)

TITLE_LIMIT = 100
MESSAGE_LIMIT = 500


def _clip(value: str, limit: int) -> str:
    return value if len(value) <= limit else value[: limit - 3] + "..."


@dataclass
class NotificationEvent:
    """A notification to be persisted for one recipient."""

    recipient_id: str
    type: NotificationType
    title: str
    message: str
    data: dict = field(default_factory=dict)
    priority: IssuePriority = IssuePriority.MEDIUM
    channels: list[str] = field(default_factory=lambda: ["web"])


class LiveHub:
    """In-process fan-out of new notifications to connected subscribers."""

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)

    def subscribe(self, recipient_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers[recipient_id].add(queue)
        logger.info("Live subscriber connected", extra={"recipient_id": recipient_id})
        return queue

    def unsubscribe(self, recipient_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(recipient_id)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[recipient_id]

    def subscriber_count(self, recipient_id: str) -> int:
        return len(self._subscribers.get(recipient_id, ()))

    def publish(self, recipient_id: str, payload: dict) -> int:
        """Push ``payload`` to every queue of the recipient; returns deliveries."""
        delivered = 0
        for queue in list(self._subscribers.get(recipient_id, ())):
            try:
                queue.put_nowait(payload)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(
                    "Live queue full, dropping push",
                    extra={"recipient_id": recipient_id},
                )
        return delivered


class AdminDirectory:
    """Explicit subscription set of admins that receive lifecycle broadcasts."""

    def __init__(self, admin_ids: Iterable[str] = ()):
        self._admin_ids: set[str] = set(admin_ids)

    async def load(self, session: AsyncSession) -> int:
        result = await session.execute(
            select(models.User.id).where(models.User.role == UserRole.ADMIN)
        )
        self._admin_ids = set(result.scalars().all())
        logger.info("Loaded admin subscriptions", extra={"count": len(self._admin_ids)})
        return len(self._admin_ids)

    def register(self, admin_id: str) -> None:
        self._admin_ids.add(admin_id)

    def unregister(self, admin_id: str) -> None:
        self._admin_ids.discard(admin_id)

    def recipients(self) -> list[str]:
        return sorted(self._admin_ids)


class NotificationDispatcher:
    """Creates Notification records and delivers them to live subscribers."""

    def __init__(
        self,
        hub: LiveHub,
        admins: AdminDirectory,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        self.hub = hub
        self.admins = admins
        self.session_factory = session_factory

    def to_admins(
        self,
        type: NotificationType,
        title: str,
        message: str,
        data: Optional[dict] = None,
        priority: IssuePriority = IssuePriority.MEDIUM,
    ) -> list[NotificationEvent]:
        return [
            NotificationEvent(admin_id, type, title, message, dict(data or {}), priority)
            for admin_id in self.admins.recipients()
        ]

    def stage(self, session: AsyncSession, event: NotificationEvent) -> models.Notification:
        """Add a Notification for ``event`` to the caller's transaction."""
        notification = models.Notification(
            id=str(uuid.uuid4()),
            recipient_id=event.recipient_id,
            type=event.type,
            title=_clip(event.title, TITLE_LIMIT),
            message=_clip(event.message, MESSAGE_LIMIT),
            data=event.data,
            channels=event.channels,
            priority=event.priority,
            is_read=False,
            created_at=utcnow(),
        )
        session.add(notification)
        return notification

    def stage_all(
        self, session: AsyncSession, events: Iterable[NotificationEvent]
    ) -> list[models.Notification]:
        return [self.stage(session, event) for event in events]

    def publish(self, notifications: Iterable[models.Notification]) -> None:
        """Live delivery after commit. Failures are logged, never raised."""
        for notification in notifications:
            try:
                payload = NotificationResponse.model_validate(notification).model_dump(mode="json")
                self.hub.publish(notification.recipient_id, payload)
            except Exception:
                logger.exception(
                    "Live notification delivery failed",
                    extra={"notification_id": notification.id},
                )

    async def notify(
        self,
        recipient_id: str,
        type: NotificationType,
        title: str,
        message: str,
        data: Optional[dict] = None,
        priority: IssuePriority = IssuePriority.MEDIUM,
    ) -> models.Notification:
        """Persist one notification in its own transaction, then push it live."""
        if self.session_factory is None:
            raise RuntimeError("NotificationDispatcher has no session factory")

        event = NotificationEvent(recipient_id, type, title, message, dict(data or {}), priority)
        async with self.session_factory() as session:
            async with session.begin():
                notification = self.stage(session, event)
        self.publish([notification])
        return notification

    async def list_for(
        self,
        session: AsyncSession,
        recipient_id: str,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[models.Notification], int, int, int]:
        """Returns (items, total, pages, unread_count) for the recipient."""
        query = select(models.Notification).where(models.Notification.recipient_id == recipient_id)
        if status == "unread":
            query = query.where(models.Notification.is_read.is_(False))
        elif status == "read":
            query = query.where(models.Notification.is_read.is_(True))

        total = await session.scalar(select(func.count()).select_from(query.subquery()))
        result = await session.execute(
            query.order_by(models.Notification.created_at.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        )
        unread = await self.unread_count(session, recipient_id)
        pages = math.ceil(total / limit) if limit else 0
        return list(result.scalars().all()), total, pages, unread

    async def unread_count(self, session: AsyncSession, recipient_id: str) -> int:
        return await session.scalar(
            select(func.count(models.Notification.id)).where(
                models.Notification.recipient_id == recipient_id,
                models.Notification.is_read.is_(False),
            )
        )

    async def mark_read(self, session: AsyncSession, notification_id: str, recipient_id: str) -> int:
        """Idempotent; returns the number of rows that changed."""
        result = await session.execute(
            update(models.Notification)
            .where(
                models.Notification.id == notification_id,
                models.Notification.recipient_id == recipient_id,
                models.Notification.is_read.is_(False),
            )
            .values(is_read=True)
        )
        await session.commit()
        return result.rowcount

    async def mark_all_read(self, session: AsyncSession, recipient_id: str) -> int:
        result = await session.execute(
            update(models.Notification)
            .where(
                models.Notification.recipient_id == recipient_id,
                models.Notification.is_read.is_(False),
            )
            .values(is_read=True)
        )
        await session.commit()
        return result.rowcount

    async def delete(self, session: AsyncSession, notification_id: str, recipient_id: str) -> None:
        result = await session.execute(
            delete(models.Notification).where(
                models.Notification.id == notification_id,
                models.Notification.recipient_id == recipient_id,
            )
        )
        await session.commit()
        if not result.rowcount:
            raise NotFound("Notification not found")
