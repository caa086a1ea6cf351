import logging
import os
from typing import Optional

import httpx

from citypulse.database import models

logger = logging.getLogger(__name__)

EMAIL_TIMEOUT_SECONDS = float(os.getenv("EMAIL_TIMEOUT_SECONDS", "10"))


def _app_url() -> str:
    return os.getenv("APP_URL", "http://localhost:3000")


def _layout(colour: str, heading: str, body: str) -> str:
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f'<div style="background: {colour}; padding: 20px; text-align: center;">'
        f'<h2 style="color: white; margin: 0;">{heading}</h2></div>'
        f'<div style="padding: 20px;">{body}</div></div>'
    )


class EmailService:
    """SendGrid mail client. ``send`` logs failures and never raises."""

    def __init__(self, api_key: str, from_email: str, timeout: float = EMAIL_TIMEOUT_SECONDS):
        self.api_key = api_key
        self.from_email = from_email
        self.timeout = timeout
        self.url = "https://api.sendgrid.com/v3/mail/send"

    def send(self, to: Optional[str], subject: str, html: str) -> bool:
        if not to:
            logger.warning(f"Cannot send '{subject}': recipient email is missing")
            return False

        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.from_email},
            "subject": subject,
            "content": [{"type": "text/html", "value": html}],
        }
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(
                    self.url,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json=payload,
                )
                response.raise_for_status()
            logger.info(f"Email sent: {subject}")
            return True
        except httpx.HTTPError:
            logger.exception(f"Email failed: {subject}")
            return False

    def send_assignment_to_citizen(self, issue: models.Issue, citizen: models.User, officer: models.User) -> bool:
        body = (
            f"<p><strong>Title:</strong> {issue.title}</p>"
            f"<p><strong>Category:</strong> {issue.category.value}</p>"
            f"<p><strong>Priority:</strong> {issue.priority.value.upper()}</p>"
            f"<p><strong>Location:</strong> {issue.address or 'N/A'}</p>"
            f"<h3>Assigned to Officer:</h3><p><strong>{officer.name}</strong> ({officer.phone or 'N/A'})</p>"
            f'<p><a href="{_app_url()}/issues/{issue.id}">View Issue Details</a></p>'
        )
        return self.send(
            citizen.email,
            f"Issue Assigned - {issue.title}",
            _layout("#2563eb", "Your Issue Has Been Assigned!", body),
        )

    def send_assignment_to_officer(self, issue: models.Issue, officer: models.User, citizen: models.User) -> bool:
        body = (
            f"<p><strong>Priority:</strong> {issue.priority.value.upper()}</p>"
            f"<p><strong>Title:</strong> {issue.title}</p>"
            f"<p><strong>Description:</strong> {issue.description[:200]}...</p>"
            f"<p><strong>Category:</strong> {issue.category.value}</p>"
            f"<p><strong>Location:</strong> {issue.address or 'N/A'}</p>"
            f"<h4>Reported by:</h4><p>{citizen.name} | {citizen.email} | {citizen.phone or 'N/A'}</p>"
            f'<p><a href="{_app_url()}/issues/{issue.id}">Accept Assignment</a> '
            f'<a href="{_app_url()}/assignments/me">View All Assignments</a></p>'
        )
        return self.send(
            officer.email,
            f"New Assignment: {issue.title}",
            _layout("#dc2626", "NEW ASSIGNMENT RECEIVED", body),
        )

    def send_status_update(self, issue: models.Issue, citizen: models.User, status: str) -> bool:
        if status == "in-progress":
            heading, colour = "Issue is now In Progress", "#f59e0b"
            message = "An officer has started working on your issue. We will keep you updated on the progress."
        else:
            heading, colour = "Issue has been Resolved!", "#059669"
            message = (
                "Great news! Your reported issue has been marked as resolved. "
                "Please check the details and provide your feedback if possible."
            )
        body = (
            f"<p><strong>Title:</strong> {issue.title}</p>"
            f"<p><strong>Status:</strong> {status.replace('-', ' ')}</p>"
            f"<p>{message}</p>"
            f'<p><a href="{_app_url()}/issues/{issue.id}">View Details</a></p>'
        )
        return self.send(citizen.email, f"Issue Update: {issue.title}", _layout(colour, heading, body))

    def send_issue_reported(self, issue: models.Issue, citizen: models.User) -> bool:
        body = (
            f"<p>Hello {citizen.name},</p>"
            "<p>Thank you for reporting an issue to CityPulse. We will review it shortly.</p>"
            f"<p><strong>Issue ID:</strong> #{issue.id}</p>"
            f"<p><strong>Title:</strong> {issue.title}</p>"
            f"<p><strong>Category:</strong> {issue.category.value}</p>"
            f"<p><strong>Priority:</strong> {issue.priority.value.upper()}</p>"
            f'<p><a href="{_app_url()}/issues/{issue.id}">Track My Issue</a></p>'
        )
        return self.send(
            citizen.email,
            f"Issue Report Received: {issue.title}",
            _layout("#6366f1", "We've Received Your Report!", body),
        )


def get_email_service() -> Optional[EmailService]:
    """
    Factory for the configured mail client.

    Reads SENDGRID_API_KEY and FROM_EMAIL; returns None (email disabled)
    when either is missing.
    """
    api_key = os.getenv("SENDGRID_API_KEY")
    from_email = os.getenv("FROM_EMAIL")
    if not api_key or not from_email:
        logger.warning("SENDGRID_API_KEY or FROM_EMAIL not set, email disabled")
        return None
    return EmailService(api_key, from_email)
