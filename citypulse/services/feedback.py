"""FeedbackLedger: citizen ratings of the officer who handled an issue."""

import logging
import uuid
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from citypulse.auth import Actor
from citypulse.database import models
from citypulse.database.config import utcnow
from citypulse.errors import Conflict, Forbidden, InvalidState, NotFound, ValidationError
from citypulse.schemas import FeedbackStatus, NotificationType, UserRole
from citypulse.services.base import Outcome
from citypulse.services.issues import FINISHED_STATUSES, IssueStore
from citypulse.services.notifications import NotificationEvent

logger = logging.getLogger(__name__)

COMMENT_LIMIT = 1000
REPLY_LIMIT = 500
RATINGS = (1, 2, 3, 4, 5)
TOP_OFFICERS = 5


def _validate_rating(rating) -> int:
    if isinstance(rating, bool) or not isinstance(rating, int) or rating not in RATINGS:
        raise ValidationError("Rating must be an integer between 1 and 5")
    return rating


def _validate_comment(comment: Optional[str]) -> Optional[str]:
    if comment is None:
        return None
    comment = comment.strip()
    if len(comment) > COMMENT_LIMIT:
        raise ValidationError(f"Comment cannot exceed {COMMENT_LIMIT} characters")
    return comment or None


class FeedbackLedger:
    def __init__(self, issues: IssueStore):
        self.issues = issues

    async def get(self, session: AsyncSession, feedback_id: str, for_update: bool = False) -> models.Feedback:
        query = select(models.Feedback).where(models.Feedback.id == feedback_id)
        if for_update:
            query = query.with_for_update()
        feedback = (await session.execute(query)).scalars().first()
        if not feedback:
            raise NotFound("Feedback not found")
        return feedback

    async def submit(
        self,
        session: AsyncSession,
        issue_id: str,
        citizen_id: str,
        rating,
        comment: Optional[str] = None,
        anonymous: bool = False,
    ) -> Outcome:
        issue = await self.issues.get(session, issue_id)
        if issue.status not in FINISHED_STATUSES:
            raise InvalidState("Feedback can only be submitted for resolved or closed issues")
        if issue.reported_by != citizen_id:
            raise Forbidden("Only the citizen who reported the issue can provide feedback")
        if not issue.assigned_to:
            raise InvalidState("No officer was assigned to this issue")

        rating = _validate_rating(rating)
        comment = _validate_comment(comment)

        existing = await session.scalar(
            select(models.Feedback.id).where(
                models.Feedback.issue_id == issue_id,
                models.Feedback.citizen_id == citizen_id,
            )
        )
        if existing:
            raise Conflict("You have already submitted feedback for this issue")

        now = utcnow()
        feedback = models.Feedback(
            id=str(uuid.uuid4()),
            issue_id=issue_id,
            officer_id=issue.assigned_to,
            citizen_id=citizen_id,
            rating=rating,
            comment=comment,
            is_anonymous=bool(anonymous),
            status=FeedbackStatus.PENDING,
            helpful_votes=0,
            created_at=now,
            updated_at=now,
        )
        feedback.replies = []
        session.add(feedback)
        try:
            await session.flush()
        except IntegrityError:
            raise Conflict("You have already submitted feedback for this issue")

        logger.info("Feedback submitted", extra={"feedback_id": feedback.id, "issue_id": issue_id})

        event = NotificationEvent(
            feedback.officer_id,
            NotificationType.FEEDBACK_RECEIVED,
            "New Feedback Received",
            f"A citizen has rated your work {rating}/5 stars",
            {"feedback_id": feedback.id, "issue_id": issue_id},
        )
        return Outcome(feedback, [event])

    async def update(
        self,
        session: AsyncSession,
        feedback_id: str,
        citizen_id: str,
        rating=None,
        comment: Optional[str] = None,
        anonymous: Optional[bool] = None,
    ) -> Outcome:
        feedback = await self.get(session, feedback_id, for_update=True)
        if feedback.citizen_id != citizen_id:
            raise Forbidden("Not authorized to edit this feedback")
        if feedback.status != FeedbackStatus.PENDING:
            raise InvalidState(f"Cannot update feedback once it has been {feedback.status.value}")

        if rating is not None:
            feedback.rating = _validate_rating(rating)
        if comment is not None:
            feedback.comment = _validate_comment(comment)
        if anonymous is not None:
            feedback.is_anonymous = bool(anonymous)
        feedback.updated_at = utcnow()
        return Outcome(feedback)

    async def approve(self, session: AsyncSession, feedback_id: str) -> Outcome:
        feedback = await self.get(session, feedback_id, for_update=True)
        if feedback.status == FeedbackStatus.APPROVED:
            return Outcome(feedback)

        feedback.status = FeedbackStatus.APPROVED
        feedback.updated_at = utcnow()
        await session.flush()
        await self.refresh_officer_rating(session, feedback.officer_id)

        logger.info("Feedback approved", extra={"feedback_id": feedback.id})

        event = NotificationEvent(
            feedback.citizen_id,
            NotificationType.FEEDBACK_APPROVED,
            "Feedback Approved",
            "Your feedback has been reviewed and approved by an admin.",
            {"feedback_id": feedback.id, "issue_id": feedback.issue_id},
        )
        return Outcome(feedback, [event])

    async def reject(self, session: AsyncSession, feedback_id: str) -> Outcome:
        feedback = await self.get(session, feedback_id, for_update=True)
        was_approved = feedback.status == FeedbackStatus.APPROVED

        feedback.status = FeedbackStatus.REJECTED
        feedback.updated_at = utcnow()
        if was_approved:
            await session.flush()
            await self.refresh_officer_rating(session, feedback.officer_id)

        logger.info("Feedback rejected", extra={"feedback_id": feedback.id})
        return Outcome(feedback)

    async def add_reply(self, session: AsyncSession, feedback_id: str, author: Actor, text: str) -> Outcome:
        feedback = await self.get(session, feedback_id, for_update=True)
        if author.role != UserRole.ADMIN and feedback.officer_id != author.id:
            raise Forbidden("Not authorized to reply to this feedback")

        text = (text or "").strip()
        if not text:
            raise ValidationError("Reply text cannot be empty")
        if len(text) > REPLY_LIMIT:
            raise ValidationError(f"Reply cannot exceed {REPLY_LIMIT} characters")

        feedback.replies.append(
            models.FeedbackReply(
                feedback_id=feedback.id,
                position=len(feedback.replies),
                text=text,
                author_id=author.id,
                created_at=utcnow(),
            )
        )
        feedback.updated_at = utcnow()

        event = NotificationEvent(
            feedback.citizen_id,
            NotificationType.SYSTEM_ALERT,
            "New Reply to Your Feedback",
            f"An {author.role.value} has replied to your feedback.",
            {"feedback_id": feedback.id, "issue_id": feedback.issue_id},
        )
        return Outcome(feedback, [event])

    async def mark_helpful(self, session: AsyncSession, feedback_id: str) -> Outcome:
        feedback = await self.get(session, feedback_id, for_update=True)
        if feedback.status != FeedbackStatus.APPROVED:
            raise InvalidState("Only approved feedback can be voted on")
        feedback.helpful_votes += 1
        return Outcome(feedback)

    async def delete(self, session: AsyncSession, feedback_id: str, actor: Actor) -> None:
        feedback = await self.get(session, feedback_id, for_update=True)
        if actor.role != UserRole.ADMIN and feedback.citizen_id != actor.id:
            raise Forbidden("Not authorized to delete this feedback")

        was_approved = feedback.status == FeedbackStatus.APPROVED
        officer_id = feedback.officer_id
        await session.delete(feedback)
        await session.flush()
        if was_approved:
            await self.refresh_officer_rating(session, officer_id)
        logger.info("Feedback deleted", extra={"feedback_id": feedback_id})

    async def officer_rating(self, session: AsyncSession, officer_id: str) -> tuple[float, int]:
        """Average rating and count over approved feedback for the officer."""
        row = (
            await session.execute(
                select(func.avg(models.Feedback.rating), func.count(models.Feedback.id)).where(
                    models.Feedback.officer_id == officer_id,
                    models.Feedback.status == FeedbackStatus.APPROVED,
                )
            )
        ).one()
        average, count = row
        return round(float(average or 0.0), 2), int(count or 0)

    async def refresh_officer_rating(self, session: AsyncSession, officer_id: str) -> tuple[float, int]:
        average, count = await self.officer_rating(session, officer_id)
        officer = await session.get(models.User, officer_id)
        if officer is not None:
            officer.avg_rating = average
            officer.feedback_count = count
            officer.updated_at = utcnow()
        return average, count

    async def distribution(self, session: AsyncSession, officer_id: str) -> dict[int, int]:
        result = await session.execute(
            select(models.Feedback.rating, func.count(models.Feedback.id))
            .where(
                models.Feedback.officer_id == officer_id,
                models.Feedback.status == FeedbackStatus.APPROVED,
            )
            .group_by(models.Feedback.rating)
        )
        buckets = {rating: 0 for rating in RATINGS}
        for rating, count in result.all():
            buckets[int(rating)] = int(count)
        return buckets

    async def officer_stats(self, session: AsyncSession, officer_id: str) -> dict:
        average, count = await self.officer_rating(session, officer_id)
        return {
            "officer_id": officer_id,
            "average_rating": average,
            "total_feedback": count,
            "distribution": await self.distribution(session, officer_id),
        }

    async def system_stats(self, session: AsyncSession) -> dict:
        approved = models.Feedback.status == FeedbackStatus.APPROVED
        average, total = (
            await session.execute(
                select(func.avg(models.Feedback.rating), func.count(models.Feedback.id)).where(approved)
            )
        ).one()

        average_col = func.avg(models.Feedback.rating).label("average")
        result = await session.execute(
            select(
                models.Feedback.officer_id,
                models.User.name,
                average_col,
                func.count(models.Feedback.id),
            )
            .join(models.User, models.User.id == models.Feedback.officer_id)
            .where(approved)
            .group_by(models.Feedback.officer_id, models.User.name)
            .order_by(average_col.desc())
            .limit(TOP_OFFICERS)
        )
        top = [
            {
                "officer_id": officer_id,
                "name": name,
                "average_rating": round(float(avg), 2),
                "count": int(count),
            }
            for officer_id, name, avg, count in result.all()
        ]
        return {
            "system_average": round(float(average or 0.0), 2),
            "total_feedback": int(total or 0),
            "top_officers": top,
        }

    async def list_for(self, session: AsyncSession, actor: Actor) -> list[models.Feedback]:
        query = select(models.Feedback)
        if actor.role == UserRole.CITIZEN:
            query = query.where(models.Feedback.citizen_id == actor.id)
        elif actor.role == UserRole.OFFICER:
            query = query.where(
                models.Feedback.officer_id == actor.id,
                models.Feedback.status == FeedbackStatus.APPROVED,
            )
        result = await session.execute(query.order_by(models.Feedback.created_at.desc()))
        return list(result.scalars().all())
