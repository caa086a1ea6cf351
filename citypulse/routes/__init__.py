"""API route modules for FastAPI endpoints."""

from citypulse.routes.assignments import router as assignments_router
from citypulse.routes.feedback import router as feedback_router
from citypulse.routes.issues import router as issues_router
from citypulse.routes.notifications import router as notifications_router
from citypulse.routes.reports import router as reports_router
from citypulse.routes.uploads import router as uploads_router
from citypulse.routes.users import router as users_router

__all__ = [
    "assignments_router",
    "feedback_router",
    "issues_router",
    "notifications_router",
    "reports_router",
    "uploads_router",
    "users_router",
]
