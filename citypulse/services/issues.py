"""IssueStore: owner of Issue entities and the only writer of issue status."""

import logging
import math
import uuid
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from citypulse.auth import Actor
from citypulse.database import models
from citypulse.database.config import utcnow
from citypulse.errors import Conflict, InvalidState, NotFound, ValidationError
from citypulse.llm_service import FALLBACK_TITLE, Suggestion
from citypulse.schemas import (
    IssueCategory,
    IssueCreate,
    IssuePriority,
    IssueStatus,
    NotificationType,
)
from citypulse.services.base import Outcome, SideEffect
from citypulse.services.notifications import NotificationDispatcher, NotificationEvent

logger = logging.getLogger(__name__)

COMMENT_LIMIT = 1000
EARTH_RADIUS_M = 6_371_000
METRES_PER_DEGREE = 111_320

# Valid issue status edges. Entering ASSIGNED from ASSIGNED or IN_PROGRESS
# only happens through reassignment; entering OPEN only through cancellation.
ALLOWED_TRANSITIONS: dict[IssueStatus, set[IssueStatus]] = {
    IssueStatus.OPEN: {IssueStatus.ASSIGNED},
    IssueStatus.ASSIGNED: {IssueStatus.IN_PROGRESS, IssueStatus.ASSIGNED, IssueStatus.OPEN},
    IssueStatus.IN_PROGRESS: {IssueStatus.RESOLVED, IssueStatus.ASSIGNED, IssueStatus.OPEN},
    IssueStatus.RESOLVED: {IssueStatus.CLOSED},
    IssueStatus.CLOSED: set(),
}

FINISHED_STATUSES = {IssueStatus.RESOLVED, IssueStatus.CLOSED}


def _coerce(enum_cls, value, field_name):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Invalid {field_name}: {value!r}")


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in metres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(a))


class IssueStore:
    def __init__(self, dispatcher: NotificationDispatcher):
        self.dispatcher = dispatcher

    async def get(self, session: AsyncSession, issue_id: str, for_update: bool = False) -> models.Issue:
        query = select(models.Issue).where(models.Issue.id == issue_id)
        if for_update:
            query = query.with_for_update()
        issue = (await session.execute(query)).scalars().first()
        if not issue:
            raise NotFound("Issue not found")
        return issue

    async def create(
        self,
        session: AsyncSession,
        reporter: Actor,
        payload: IssueCreate,
        suggestion: Optional[Suggestion] = None,
    ) -> Outcome:
        """Validate and persist a new open issue; admins are told about it."""
        description = (payload.description or "").strip()
        if not description:
            raise ValidationError("Description is required")

        title = payload.title or (suggestion.title if suggestion else None)
        if suggestion and not title:
            title = FALLBACK_TITLE
        if not title or not title.strip():
            raise ValidationError("Title is required")

        category = payload.category or (suggestion.category if suggestion else None)
        if category is None:
            raise ValidationError("Category is required")
        category = _coerce(IssueCategory, category, "category")

        priority = payload.priority or (suggestion.priority if suggestion else None) or IssuePriority.MEDIUM
        priority = _coerce(IssuePriority, priority, "priority")

        if payload.latitude is None or payload.longitude is None:
            raise ValidationError("Location coordinates are required")

        now = utcnow()
        issue = models.Issue(
            id=str(uuid.uuid4()),
            title=title.strip()[:100],
            description=description,
            category=category,
            priority=priority,
            status=IssueStatus.OPEN,
            latitude=payload.latitude,
            longitude=payload.longitude,
            address=payload.address,
            images=[image.model_dump() for image in payload.images],
            reported_by=reporter.id,
            assigned_to=None,
            resolution_time=None,
            created_at=now,
            updated_at=now,
        )
        issue.comments = []
        session.add(issue)
        await session.flush()

        logger.info("Issue created", extra={"issue_id": issue.id, "category": category.value})

        events = self.dispatcher.to_admins(
            NotificationType.ISSUE_CREATED,
            f"New Issue: {issue.title}",
            f"Citizen reported: {issue.description[:100]}...",
            {"issue_id": issue.id, "url": f"/issues/{issue.id}"},
            priority=priority,
        )
        effects = [SideEffect("send_issue_reported_email", {"issue_id": issue.id})]
        return Outcome(issue, events, effects)

    def transition_status(
        self,
        issue: models.Issue,
        new_status: IssueStatus,
        officer_id: Optional[str] = None,
        resolution_hours: Optional[int] = None,
    ) -> list[NotificationEvent]:
        """Apply one status edge and return the notifications it implies."""
        new_status = _coerce(IssueStatus, new_status, "status")
        current = IssueStatus(issue.status)
        if new_status not in ALLOWED_TRANSITIONS[current]:
            raise InvalidState(
                f"Invalid issue status transition: {current.value} -> {new_status.value}"
            )

        events: list[NotificationEvent] = []
        if new_status == IssueStatus.ASSIGNED:
            if not officer_id:
                raise ValidationError("An officer is required to assign an issue")
            issue.assigned_to = officer_id
        elif new_status == IssueStatus.OPEN:
            issue.assigned_to = None
        elif new_status == IssueStatus.RESOLVED:
            if issue.resolution_time is None:
                if resolution_hours is not None:
                    if resolution_hours < 0:
                        raise ValidationError("Resolution time cannot be negative")
                    issue.resolution_time = int(resolution_hours)
                else:
                    elapsed = utcnow() - issue.created_at
                    issue.resolution_time = round(elapsed.total_seconds() / 3600)
            events.append(
                NotificationEvent(
                    issue.reported_by,
                    NotificationType.ISSUE_RESOLVED,
                    "Issue Resolved!",
                    f'Your issue "{issue.title}" has been resolved. Please provide your feedback.',
                    {"issue_id": issue.id, "url": f"/issues/{issue.id}"},
                )
            )

        issue.status = new_status
        issue.updated_at = utcnow()
        logger.info(
            "Issue status changed",
            extra={"issue_id": issue.id, "from": current.value, "to": new_status.value},
        )
        return events

    def append_comment(self, issue: models.Issue, author_id: str, text: str) -> models.IssueComment:
        text = (text or "").strip()
        if not text:
            raise ValidationError("Comment text cannot be empty")
        if len(text) > COMMENT_LIMIT:
            text = text[:COMMENT_LIMIT]

        comment = models.IssueComment(
            issue_id=issue.id,
            position=len(issue.comments),
            text=text,
            author_id=author_id,
            created_at=utcnow(),
        )
        issue.comments.append(comment)
        issue.updated_at = utcnow()
        return comment

    def set_priority(self, issue: models.Issue, priority) -> None:
        issue.priority = _coerce(IssuePriority, priority, "priority")
        issue.updated_at = utcnow()

    async def delete(self, session: AsyncSession, issue_id: str) -> None:
        """Delete an issue that nothing else references."""
        issue = await self.get(session, issue_id, for_update=True)

        assignments = await session.scalar(
            select(func.count(models.Assignment.id)).where(models.Assignment.issue_id == issue_id)
        )
        feedback = await session.scalar(
            select(func.count(models.Feedback.id)).where(models.Feedback.issue_id == issue_id)
        )
        if assignments or feedback:
            raise Conflict("Issue has assignments or feedback and cannot be deleted")

        await session.delete(issue)
        logger.info("Issue deleted", extra={"issue_id": issue_id})

    async def search(
        self,
        session: AsyncSession,
        filters: dict,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[models.Issue], int, int]:
        query = select(models.Issue)
        for name, enum_cls in (
            ("status", IssueStatus),
            ("category", IssueCategory),
            ("priority", IssuePriority),
        ):
            if filters.get(name):
                query = query.where(getattr(models.Issue, name) == _coerce(enum_cls, filters[name], name))
        if filters.get("assigned_to"):
            query = query.where(models.Issue.assigned_to == filters["assigned_to"])
        if filters.get("reported_by"):
            query = query.where(models.Issue.reported_by == filters["reported_by"])

        total = await session.scalar(select(func.count()).select_from(query.subquery()))
        result = await session.execute(
            query.order_by(models.Issue.created_at.desc()).limit(limit).offset((page - 1) * limit)
        )
        pages = math.ceil(total / limit) if limit else 0
        return list(result.scalars().all()), total, pages

    async def nearby(
        self,
        session: AsyncSession,
        latitude: float,
        longitude: float,
        radius_m: float = 5000,
    ) -> list[models.Issue]:
        """Issues within ``radius_m`` of the point, nearest first."""
        if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
            raise ValidationError("Invalid coordinates")
        if radius_m <= 0:
            raise ValidationError("Radius must be positive")

        d_lat = radius_m / METRES_PER_DEGREE
        d_lng = radius_m / (METRES_PER_DEGREE * max(math.cos(math.radians(latitude)), 1e-6))
        result = await session.execute(
            select(models.Issue).where(
                models.Issue.latitude.between(latitude - d_lat, latitude + d_lat),
                models.Issue.longitude.between(longitude - d_lng, longitude + d_lng),
            )
        )

        ranked = []
        for issue in result.scalars().all():
            distance = haversine_m(latitude, longitude, issue.latitude, issue.longitude)
            if distance <= radius_m:
                ranked.append((distance, issue))
        ranked.sort(key=lambda pair: pair[0])
        return [issue for _, issue in ranked]
