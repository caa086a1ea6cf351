"""Celery tasks for the outbound side effects of workflow operations.

Each task reloads what it needs from the database, calls one external
collaborator and logs the result. Collaborator failures are absorbed by the
collaborator clients; only unexpected errors (database) trigger a retry.
"""

import logging

from citypulse.calendar_service import get_calendar_service
from citypulse.celery_app import app
from citypulse.database import models
from citypulse.database.config import SyncSessionLocal
from citypulse.email_service import get_email_service

logger = logging.getLogger(__name__)


@app.task(bind=True, max_retries=3, default_retry_delay=60)
def schedule_assignment_event(self, assignment_id: str):
    """
    Create or refresh the officer's calendar event for an assignment.

    Stores the returned event id on the assignment. A ``None`` from the
    calendar means "not scheduled" and leaves the assignment untouched.
    """
    calendar = get_calendar_service()
    if calendar is None:
        logger.info("Calendar disabled, skipping event", extra={"assignment_id": assignment_id})
        return None

    db = SyncSessionLocal()
    try:
        assignment = db.get(models.Assignment, assignment_id)
        if not assignment:
            logger.warning(f"Assignment {assignment_id} not found for calendar scheduling")
            return None

        issue = db.get(models.Issue, assignment.issue_id)
        officer = db.get(models.User, assignment.assigned_to)
        if not issue or not officer:
            logger.warning(f"Missing issue or officer for assignment {assignment_id}")
            return None

        event_id = calendar.schedule_event(officer, assignment, issue)
        if event_id:
            assignment.calendar_event_id = event_id
            db.commit()
        return event_id

    except Exception as exc:
        db.rollback()
        logger.error(
            f"Error scheduling calendar event for assignment {assignment_id}: {str(exc)}",
            extra={"assignment_id": assignment_id},
            exc_info=True,
        )
        raise self.retry(exc=exc, countdown=60 * (self.request.retries + 1))

    finally:
        db.close()


@app.task(bind=True, max_retries=3, default_retry_delay=60)
def send_assignment_emails(self, assignment_id: str):
    """Email both the assigned officer and the reporting citizen."""
    mailer = get_email_service()
    if mailer is None:
        return 0

    db = SyncSessionLocal()
    try:
        assignment = db.get(models.Assignment, assignment_id)
        if not assignment:
            logger.warning(f"Assignment {assignment_id} not found for email")
            return 0

        issue = db.get(models.Issue, assignment.issue_id)
        officer = db.get(models.User, assignment.assigned_to)
        citizen = db.get(models.User, issue.reported_by) if issue else None
        if not (issue and officer and citizen):
            logger.warning(f"Missing parties for assignment email {assignment_id}")
            return 0

        sent = 0
        sent += mailer.send_assignment_to_officer(issue, officer, citizen)
        sent += mailer.send_assignment_to_citizen(issue, citizen, officer)
        return sent

    except Exception as exc:
        logger.error(
            f"Error sending assignment emails for {assignment_id}: {str(exc)}",
            extra={"assignment_id": assignment_id},
            exc_info=True,
        )
        raise self.retry(exc=exc, countdown=60 * (self.request.retries + 1))

    finally:
        db.close()


@app.task(bind=True, max_retries=3, default_retry_delay=60)
def send_status_update_email(self, issue_id: str, status: str):
    """Tell the reporting citizen their issue is in progress or resolved."""
    mailer = get_email_service()
    if mailer is None:
        return False

    db = SyncSessionLocal()
    try:
        issue = db.get(models.Issue, issue_id)
        citizen = db.get(models.User, issue.reported_by) if issue else None
        if not citizen:
            logger.warning(f"Issue {issue_id} or its reporter not found for status email")
            return False
        return mailer.send_status_update(issue, citizen, status)

    except Exception as exc:
        logger.error(
            f"Error sending status email for issue {issue_id}: {str(exc)}",
            extra={"issue_id": issue_id},
            exc_info=True,
        )
        raise self.retry(exc=exc, countdown=60 * (self.request.retries + 1))

    finally:
        db.close()


@app.task(bind=True, max_retries=3, default_retry_delay=60)
def send_issue_reported_email(self, issue_id: str):
    """Confirmation email to the citizen who reported the issue."""
    mailer = get_email_service()
    if mailer is None:
        return False

    db = SyncSessionLocal()
    try:
        issue = db.get(models.Issue, issue_id)
        citizen = db.get(models.User, issue.reported_by) if issue else None
        if not citizen:
            logger.warning(f"Issue {issue_id} or its reporter not found for confirmation email")
            return False
        return mailer.send_issue_reported(issue, citizen)

    except Exception as exc:
        logger.error(
            f"Error sending confirmation email for issue {issue_id}: {str(exc)}",
            extra={"issue_id": issue_id},
            exc_info=True,
        )
        raise self.retry(exc=exc, countdown=60 * (self.request.retries + 1))

    finally:
        db.close()
