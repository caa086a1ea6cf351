"""Dashboards, saved report definitions, and their advisory cache."""

import logging
import time
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from citypulse.database import models
from citypulse.database.config import utcnow
from citypulse.errors import InvalidState, NotFound
from citypulse.schemas import (
    AssignmentStatus,
    IssueStatus,
    ReportCreate,
    ReportFilters,
    ReportType,
    ReportUpdate,
)
from citypulse.services.feedback import FeedbackLedger

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300
SAVED_REPORT_TTL_SECONDS = 3600


class ReportCache:
    """Keyed cache with expiry. Last write wins; entries are advisory only."""

    def __init__(self, ttl: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self.clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def put(self, key: str, value: Any) -> None:
        self._entries[key] = (self.clock() + self.ttl, value)

    def invalidate(self, key: Optional[str] = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)


class ReportService:
    def __init__(
        self,
        feedback: FeedbackLedger,
        cache: Optional[ReportCache] = None,
        saved_cache: Optional[ReportCache] = None,
    ):
        self.feedback = feedback
        self.cache = cache or ReportCache()
        self.saved_cache = saved_cache or ReportCache(ttl=SAVED_REPORT_TTL_SECONDS)

    async def admin_dashboard(self, session: AsyncSession, refresh: bool = False) -> dict:
        key = "admin"
        if not refresh:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        total = await session.scalar(select(func.count(models.Issue.id)))
        by_status = await session.execute(
            select(models.Issue.status, func.count(models.Issue.id)).group_by(models.Issue.status)
        )
        by_category = await session.execute(
            select(models.Issue.category, func.count(models.Issue.id)).group_by(models.Issue.category)
        )
        avg_resolution = await session.scalar(
            select(func.avg(models.Issue.resolution_time)).where(models.Issue.resolution_time.is_not(None))
        )

        report = {
            "total_issues": int(total or 0),
            "by_status": {status.value: count for status, count in by_status.all()},
            "by_category": {category.value: count for category, count in by_category.all()},
            "average_resolution_hours": round(float(avg_resolution), 1) if avg_resolution is not None else None,
        }
        self.cache.put(key, report)
        return report

    async def officer_dashboard(self, session: AsyncSession, officer_id: str, refresh: bool = False) -> dict:
        key = f"officer:{officer_id}"
        if not refresh:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        assignments = models.Assignment
        active = await session.scalar(
            select(func.count(assignments.id)).where(
                assignments.assigned_to == officer_id,
                assignments.status.in_([AssignmentStatus.ACTIVE, AssignmentStatus.ACCEPTED]),
            )
        )
        completed = await session.scalar(
            select(func.count(assignments.id)).where(
                assignments.assigned_to == officer_id,
                assignments.status == AssignmentStatus.COMPLETED,
            )
        )
        resolved = await session.scalar(
            select(func.count(models.Issue.id)).where(
                models.Issue.assigned_to == officer_id,
                models.Issue.status.in_([IssueStatus.RESOLVED, IssueStatus.CLOSED]),
            )
        )
        average, count = await self.feedback.officer_rating(session, officer_id)

        report = {
            "officer_id": officer_id,
            "active_assignments": int(active or 0),
            "completed_assignments": int(completed or 0),
            "resolved_issues": int(resolved or 0),
            "average_rating": average,
            "feedback_count": count,
        }
        self.cache.put(key, report)
        return report

    async def citizen_dashboard(self, session: AsyncSession, citizen_id: str, refresh: bool = False) -> dict:
        key = f"citizen:{citizen_id}"
        if not refresh:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        issue = models.Issue
        total = await session.scalar(select(func.count(issue.id)).where(issue.reported_by == citizen_id))
        by_status = await session.execute(
            select(issue.status, func.count(issue.id))
            .where(issue.reported_by == citizen_id)
            .group_by(issue.status)
        )
        avg_resolution = await session.scalar(
            select(func.avg(issue.resolution_time)).where(
                issue.reported_by == citizen_id,
                issue.resolution_time.is_not(None),
            )
        )

        report = {
            "citizen_id": citizen_id,
            "total_issues": int(total or 0),
            "by_status": {status.value: count for status, count in by_status.all()},
            "average_resolution_hours": round(float(avg_resolution), 1) if avg_resolution is not None else None,
        }
        self.cache.put(key, report)
        return report

    # Saved reports

    async def get_saved(self, session: AsyncSession, report_id: str) -> models.Report:
        report = await session.get(models.Report, report_id)
        if not report:
            raise NotFound("Report not found")
        return report

    async def list_saved(self, session: AsyncSession, creator_id: str) -> list[models.Report]:
        result = await session.execute(
            select(models.Report)
            .where(models.Report.created_by == creator_id)
            .order_by(models.Report.created_at.desc())
        )
        return list(result.scalars().all())

    async def create_saved(self, session: AsyncSession, creator_id: str, payload: ReportCreate) -> models.Report:
        now = utcnow()
        report = models.Report(
            id=str(uuid.uuid4()),
            title=payload.title.strip(),
            description=payload.description,
            report_type=payload.report_type,
            filters=payload.filters.model_dump(mode="json"),
            created_by=creator_id,
            is_active=True,
            execution_count=0,
            created_at=now,
            updated_at=now,
        )
        session.add(report)
        await session.flush()
        logger.info("Report created", extra={"report_id": report.id, "report_type": report.report_type.value})
        return report

    async def update_saved(self, session: AsyncSession, report_id: str, payload: ReportUpdate) -> models.Report:
        report = await self.get_saved(session, report_id)
        changes = payload.model_dump(exclude_unset=True)
        if changes.get("title") is not None:
            report.title = payload.title.strip()
        if "description" in changes:
            report.description = payload.description
        if payload.report_type is not None:
            report.report_type = payload.report_type
        if payload.filters is not None:
            report.filters = payload.filters.model_dump(mode="json")
        report.updated_at = utcnow()
        self.saved_cache.invalidate(f"report:{report.id}")
        return report

    async def toggle_saved(self, session: AsyncSession, report_id: str) -> models.Report:
        report = await self.get_saved(session, report_id)
        report.is_active = not report.is_active
        report.updated_at = utcnow()
        self.saved_cache.invalidate(f"report:{report.id}")
        return report

    async def delete_saved(self, session: AsyncSession, report_id: str) -> None:
        report = await self.get_saved(session, report_id)
        await session.delete(report)
        self.saved_cache.invalidate(f"report:{report.id}")
        logger.info("Report deleted", extra={"report_id": report_id})

    async def run_saved(self, session: AsyncSession, report_id: str) -> dict:
        """
        Execute a saved report.

        A cached result is returned as-is while it is fresh; otherwise the
        report is recomputed and its execution metadata bumped.
        """
        report = await self.get_saved(session, report_id)
        if not report.is_active:
            raise InvalidState("Report is inactive")

        key = f"report:{report.id}"
        cached = self.saved_cache.get(key)
        if cached is not None:
            return cached

        filters = ReportFilters.model_validate(report.filters or {})
        results = await self._execute(session, ReportType(report.report_type), filters)

        now = utcnow()
        report.last_executed = now
        report.execution_count = (report.execution_count or 0) + 1
        report.updated_at = now

        output = {
            "report_id": report.id,
            "report_type": report.report_type.value,
            "generated_at": now.isoformat(),
            "results": results,
        }
        self.saved_cache.put(key, output)
        logger.info(
            "Report executed",
            extra={"report_id": report.id, "execution_count": report.execution_count},
        )
        return output

    async def _execute(self, session: AsyncSession, report_type: ReportType, filters: ReportFilters) -> list[dict]:
        issue = models.Issue
        clauses = _filter_clauses(filters)

        if report_type in GROUPED_COLUMNS:
            column = GROUPED_COLUMNS[report_type]
            rows = await session.execute(
                select(column, func.count(issue.id).label("count"))
                .where(*clauses)
                .group_by(column)
                .order_by(func.count(issue.id).desc())
            )
            return [{"key": key.value, "count": count} for key, count in rows.all()]

        if report_type == ReportType.OFFICER_PERFORMANCE:
            finished = case((issue.status.in_([IssueStatus.RESOLVED, IssueStatus.CLOSED]), 1), else_=0)
            rows = await session.execute(
                select(
                    issue.assigned_to,
                    models.User.name,
                    func.count(issue.id),
                    func.sum(finished),
                    func.avg(issue.resolution_time),
                )
                .join(models.User, models.User.id == issue.assigned_to)
                .where(issue.assigned_to.is_not(None), *clauses)
                .group_by(issue.assigned_to, models.User.name)
                .order_by(func.count(issue.id).desc())
            )
            return [
                {
                    "officer_id": officer_id,
                    "name": name,
                    "total": total,
                    "resolved": int(resolved or 0),
                    "average_resolution_hours": round(float(avg), 1) if avg is not None else None,
                }
                for officer_id, name, total, resolved, avg in rows.all()
            ]

        # MONTHLY_TRENDS
        created = await session.scalars(select(issue.created_at).where(*clauses))
        months = Counter(moment.strftime("%Y-%m") for moment in created)
        return [{"key": month, "count": months[month]} for month in sorted(months)]


GROUPED_COLUMNS = {
    ReportType.ISSUE_SUMMARY: models.Issue.status,
    ReportType.CATEGORY_ANALYSIS: models.Issue.category,
    ReportType.PRIORITY_BREAKDOWN: models.Issue.priority,
}


def _naive_utc(moment: datetime) -> datetime:
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment


def _filter_clauses(filters: ReportFilters) -> list:
    issue = models.Issue
    clauses = []
    if filters.categories:
        clauses.append(issue.category.in_(filters.categories))
    if filters.priorities:
        clauses.append(issue.priority.in_(filters.priorities))
    if filters.statuses:
        clauses.append(issue.status.in_(filters.statuses))
    if filters.officers:
        clauses.append(issue.assigned_to.in_(filters.officers))
    if filters.start_date:
        clauses.append(issue.created_at >= _naive_utc(filters.start_date))
    if filters.end_date:
        clauses.append(issue.created_at <= _naive_utc(filters.end_date))
    return clauses
