from datetime import datetime
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional


class UserRole(str, Enum):
    CITIZEN = "citizen"
    OFFICER = "officer"
    ADMIN = "admin"


class IssueCategory(str, Enum):
    ROAD = "road"
    WATER = "water"
    ELECTRICITY = "electricity"
    WASTE = "waste"
    STREETLIGHT = "streetlight"
    DRAINAGE = "drainage"


class IssuePriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class IssueStatus(str, Enum):
    OPEN = "open"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in-progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class AssignmentStatus(str, Enum):
    ACTIVE = "active"
    ACCEPTED = "accepted"
    COMPLETED = "completed"
    REASSIGNED = "reassigned"
    CANCELLED = "cancelled"


class HistoryAction(str, Enum):
    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    REASSIGNED = "reassigned"
    COMPLETED = "completed"


class FeedbackStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class NotificationType(str, Enum):
    ISSUE_CREATED = "ISSUE_CREATED"
    ISSUE_ASSIGNED = "ISSUE_ASSIGNED"
    ISSUE_RESOLVED = "ISSUE_RESOLVED"
    ASSIGNMENT_ACCEPTED = "ASSIGNMENT_ACCEPTED"
    ASSIGNMENT_REASSIGNED = "ASSIGNMENT_REASSIGNED"
    FEEDBACK_RECEIVED = "FEEDBACK_RECEIVED"
    FEEDBACK_APPROVED = "FEEDBACK_APPROVED"
    REPORT_GENERATED = "REPORT_GENERATED"
    SYSTEM_ALERT = "SYSTEM_ALERT"


class ReportType(str, Enum):
    ISSUE_SUMMARY = "ISSUE_SUMMARY"
    CATEGORY_ANALYSIS = "CATEGORY_ANALYSIS"
    PRIORITY_BREAKDOWN = "PRIORITY_BREAKDOWN"
    OFFICER_PERFORMANCE = "OFFICER_PERFORMANCE"
    MONTHLY_TRENDS = "MONTHLY_TRENDS"


class NotificationChannel(str, Enum):
    WEB = "web"
    MOBILE = "mobile"
    EMAIL = "email"
    SMS = "sms"


# Users

class ImageRef(BaseModel):
    url: str
    public_id: Optional[str] = None


class UserCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    email: str = Field(min_length=3, max_length=255)
    role: UserRole = UserRole.CITIZEN
    phone: Optional[str] = Field(None, max_length=20)
    address: Optional[str] = Field(None, max_length=300)


class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[str] = Field(None, min_length=3, max_length=255)
    phone: Optional[str] = Field(None, max_length=20)
    address: Optional[str] = Field(None, max_length=300)
    profile_image: Optional[ImageRef] = None


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    email: str
    role: UserRole
    phone: Optional[str] = None
    address: Optional[str] = None
    profile_image: Optional[ImageRef] = None
    avg_rating: float = 0.0
    feedback_count: int = 0
    created_at: datetime


# Issues

class IssueCreate(BaseModel):
    title: Optional[str] = Field(None, min_length=3, max_length=100)
    description: str = Field(min_length=5, max_length=1000)
    category: Optional[IssueCategory] = None
    priority: Optional[IssuePriority] = None
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    address: Optional[str] = Field(None, max_length=300)
    images: list[ImageRef] = []
    use_ai: bool = False


class IssueUpdate(BaseModel):
    priority: Optional[IssuePriority] = None
    comment: Optional[str] = None


class CommentCreate(BaseModel):
    text: str


class CommentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    text: str
    author_id: Optional[str] = None
    created_at: datetime


class IssueResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    description: str
    category: IssueCategory
    priority: IssuePriority
    status: IssueStatus
    latitude: float
    longitude: float
    address: Optional[str] = None
    images: list[ImageRef] = []
    reported_by: str
    assigned_to: Optional[str] = None
    resolution_time: Optional[int] = None
    comments: list[CommentResponse] = []
    created_at: datetime
    updated_at: datetime


class IssuePage(BaseModel):
    items: list[IssueResponse]
    page: int
    pages: int
    total: int


class SuggestionRequest(BaseModel):
    description: str = Field(min_length=10, max_length=1000)


class SuggestionResponse(BaseModel):
    category: IssueCategory
    priority: IssuePriority
    title: str


# Assignments

class AssignmentCreate(BaseModel):
    assigned_to: str
    priority: IssuePriority
    deadline: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=500)
    estimated_hours: Optional[float] = Field(None, gt=0)


class AssignmentComplete(BaseModel):
    notes: Optional[str] = Field(None, max_length=500)
    resolution_hours: Optional[int] = Field(None, ge=0)


class AssignmentReassign(BaseModel):
    assigned_to: str
    notes: Optional[str] = Field(None, max_length=500)


class HistoryEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    action: HistoryAction
    officer_id: Optional[str] = None
    admin_id: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime


class AssignmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    issue_id: str
    assigned_to: str
    assigned_by: str
    status: AssignmentStatus
    priority: IssuePriority
    deadline: Optional[datetime] = None
    notes: Optional[str] = None
    estimated_hours: Optional[float] = None
    calendar_event_id: Optional[str] = None
    history: list[HistoryEntryResponse] = []
    created_at: datetime
    updated_at: datetime


class AssignmentPage(BaseModel):
    items: list[AssignmentResponse]
    page: int
    pages: int
    total: int


# Feedback

class FeedbackCreate(BaseModel):
    rating: int
    comment: Optional[str] = None
    is_anonymous: bool = False


class FeedbackUpdate(BaseModel):
    rating: Optional[int] = None
    comment: Optional[str] = None
    is_anonymous: Optional[bool] = None


class ReplyCreate(BaseModel):
    text: str


class ReplyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    text: str
    author_id: Optional[str] = None
    created_at: datetime


class FeedbackResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    issue_id: str
    officer_id: str
    citizen_id: str
    rating: int
    comment: Optional[str] = None
    is_anonymous: bool
    status: FeedbackStatus
    helpful_votes: int
    replies: list[ReplyResponse] = []
    created_at: datetime
    updated_at: datetime


class OfficerStats(BaseModel):
    officer_id: str
    average_rating: float
    total_feedback: int
    distribution: dict[int, int]


class TopOfficer(BaseModel):
    officer_id: str
    name: Optional[str] = None
    average_rating: float
    count: int


class SystemStats(BaseModel):
    system_average: float
    total_feedback: int
    top_officers: list[TopOfficer]


# Notifications

class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    recipient_id: str
    type: NotificationType
    title: str
    message: str
    data: dict = {}
    channels: list[NotificationChannel] = [NotificationChannel.WEB]
    priority: IssuePriority
    is_read: bool
    created_at: datetime


class NotificationPage(BaseModel):
    items: list[NotificationResponse]
    unread_count: int
    page: int
    pages: int
    total: int


# Reports

class ReportFilters(BaseModel):
    categories: list[IssueCategory] = []
    priorities: list[IssuePriority] = []
    statuses: list[IssueStatus] = []
    officers: list[str] = []
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class ReportCreate(BaseModel):
    title: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    report_type: ReportType
    filters: ReportFilters = ReportFilters()


class ReportUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    report_type: Optional[ReportType] = None
    filters: Optional[ReportFilters] = None


class ReportResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    description: Optional[str] = None
    report_type: ReportType
    filters: ReportFilters
    created_by: str
    is_active: bool
    last_executed: Optional[datetime] = None
    execution_count: int
    created_at: datetime
    updated_at: datetime


# Uploads

class UploadResponse(BaseModel):
    url: str
    public_id: Optional[str] = None
