from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from citypulse.database.config import Base, utcnow
from citypulse.schemas import (
    AssignmentStatus,
    FeedbackStatus,
    HistoryAction,
    IssueCategory,
    IssuePriority,
    IssueStatus,
    NotificationType,
    ReportType,
    UserRole,
)


def _values(enum_cls):
    return [member.value for member in enum_cls]


def _enum(enum_cls, name):
    return Enum(enum_cls, name=name, values_callable=_values)


# Assignment statuses that hold the issue; at most one per issue.
OPEN_ASSIGNMENT_CLAUSE = text("status IN ('active', 'accepted')")


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    role = Column(_enum(UserRole, "user_role"), nullable=False, default=UserRole.CITIZEN)
    phone = Column(String(20), nullable=True)
    address = Column(String(300), nullable=True)
    profile_image = Column(JSON, nullable=True)

    avg_rating = Column(Float, nullable=False, default=0.0)
    feedback_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class Issue(Base):
    __tablename__ = "issues"
    __table_args__ = (
        Index("ix_issues_priority_status", "priority", "status"),
        Index("ix_issues_lat_lng", "latitude", "longitude"),
    )

    id = Column(String, primary_key=True, index=True)
    title = Column(String(100), nullable=False)
    description = Column(String(1000), nullable=False)
    category = Column(_enum(IssueCategory, "issue_category"), nullable=False, index=True)
    priority = Column(_enum(IssuePriority, "issue_priority"), nullable=False, default=IssuePriority.MEDIUM)
    status = Column(_enum(IssueStatus, "issue_status"), nullable=False, default=IssueStatus.OPEN, index=True)

    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    address = Column(String(300), nullable=True)
    images = Column(JSON, nullable=False, default=list)

    reported_by = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    assigned_to = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    resolution_time = Column(Integer, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    comments = relationship(
        "IssueComment",
        lazy="selectin",
        order_by="IssueComment.position",
        cascade="all, delete-orphan",
    )


class IssueComment(Base):
    __tablename__ = "issue_comments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    issue_id = Column(String, ForeignKey("issues.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    text = Column(Text, nullable=False)
    author_id = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Assignment(Base):
    __tablename__ = "assignments"
    __table_args__ = (
        Index(
            "uq_assignments_open_per_issue",
            "issue_id",
            unique=True,
            postgresql_where=OPEN_ASSIGNMENT_CLAUSE,
            sqlite_where=OPEN_ASSIGNMENT_CLAUSE,
        ),
        Index("ix_assignments_officer_status", "assigned_to", "status", "created_at"),
    )

    id = Column(String, primary_key=True, index=True)
    issue_id = Column(String, ForeignKey("issues.id"), nullable=False, index=True)
    assigned_to = Column(String, ForeignKey("users.id"), nullable=False)
    assigned_by = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(_enum(AssignmentStatus, "assignment_status"), nullable=False, default=AssignmentStatus.ACTIVE)
    priority = Column(_enum(IssuePriority, "assignment_priority"), nullable=False)
    deadline = Column(DateTime, nullable=True)
    notes = Column(String(500), nullable=True)
    estimated_hours = Column(Float, nullable=True)
    calendar_event_id = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    history = relationship(
        "AssignmentHistory",
        lazy="selectin",
        order_by="AssignmentHistory.position",
        cascade="all, delete-orphan",
    )


class AssignmentHistory(Base):
    __tablename__ = "assignment_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    assignment_id = Column(String, ForeignKey("assignments.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    action = Column(_enum(HistoryAction, "history_action"), nullable=False)
    officer_id = Column(String, ForeignKey("users.id"), nullable=True)
    admin_id = Column(String, ForeignKey("users.id"), nullable=True)
    notes = Column(String(500), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Feedback(Base):
    __tablename__ = "feedback"
    __table_args__ = (
        UniqueConstraint("citizen_id", "issue_id", name="uq_feedback_citizen_issue"),
        Index("ix_feedback_officer_status", "officer_id", "status", "created_at"),
    )

    id = Column(String, primary_key=True, index=True)
    issue_id = Column(String, ForeignKey("issues.id"), nullable=False, index=True)
    officer_id = Column(String, ForeignKey("users.id"), nullable=False)
    citizen_id = Column(String, ForeignKey("users.id"), nullable=False)
    rating = Column(Integer, nullable=False)
    comment = Column(String(1000), nullable=True)
    is_anonymous = Column(Boolean, nullable=False, default=False)
    status = Column(_enum(FeedbackStatus, "feedback_status"), nullable=False, default=FeedbackStatus.PENDING)
    helpful_votes = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    replies = relationship(
        "FeedbackReply",
        lazy="selectin",
        order_by="FeedbackReply.position",
        cascade="all, delete-orphan",
    )


class FeedbackReply(Base):
    __tablename__ = "feedback_replies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    feedback_id = Column(String, ForeignKey("feedback.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    text = Column(String(500), nullable=False)
    author_id = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_recipient_read", "recipient_id", "is_read", "created_at"),
    )

    id = Column(String, primary_key=True, index=True)
    recipient_id = Column(String, ForeignKey("users.id"), nullable=False)
    type = Column(_enum(NotificationType, "notification_type"), nullable=False, index=True)
    title = Column(String(100), nullable=False)
    message = Column(String(500), nullable=False)
    data = Column(JSON, nullable=False, default=dict)
    channels = Column(JSON, nullable=False, default=lambda: ["web"])
    priority = Column(_enum(IssuePriority, "notification_priority"), nullable=False, default=IssuePriority.MEDIUM)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Report(Base):
    """A saved report definition; run results live in the report cache."""

    __tablename__ = "reports"
    __table_args__ = (
        Index("ix_reports_type_active", "report_type", "is_active"),
    )

    id = Column(String, primary_key=True, index=True)
    title = Column(String(100), nullable=False)
    description = Column(String(500), nullable=True)
    report_type = Column(_enum(ReportType, "report_type"), nullable=False)
    filters = Column(JSON, nullable=False, default=dict)
    created_by = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    last_executed = Column(DateTime, nullable=True)
    execution_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
