import logging
import os
from datetime import timedelta
from typing import Optional

import httpx

from citypulse.database import models
from citypulse.database.config import utcnow

logger = logging.getLogger(__name__)

CALENDAR_TIMEOUT_SECONDS = float(os.getenv("CALENDAR_TIMEOUT_SECONDS", "10"))


class CalendarService:
    """
    Google Calendar client for officer assignment events.

    ``schedule_event`` never raises: any failure is logged and reported as
    ``None`` ("not scheduled").
    """

    def __init__(self, access_token: str, calendar_id: Optional[str] = None, timeout: float = CALENDAR_TIMEOUT_SECONDS):
        self.access_token = access_token
        self.calendar_id = calendar_id
        self.timeout = timeout
        self.base_url = "https://www.googleapis.com/calendar/v3"

    def build_event(self, officer: models.User, assignment: models.Assignment, issue: models.Issue) -> dict:
        start = utcnow()
        if assignment.deadline:
            end = assignment.deadline
        elif assignment.estimated_hours:
            end = start + timedelta(hours=assignment.estimated_hours)
        else:
            end = start + timedelta(hours=1)

        return {
            "summary": f"CityPulse: {issue.title}",
            "location": issue.address or f"{issue.latitude}, {issue.longitude}",
            "description": (
                f"Assigned to: {officer.email}\n\n"
                f"Assignment Details:\n{assignment.notes or 'No notes provided'}\n\n"
                f"Issue Description:\n{issue.description}"
            ),
            "start": {"dateTime": start.isoformat() + "Z", "timeZone": "UTC"},
            "end": {"dateTime": end.isoformat() + "Z", "timeZone": "UTC"},
            "reminders": {"useDefault": False, "overrides": [{"method": "popup", "minutes": 30}]},
        }

    def schedule_event(self, officer: models.User, assignment: models.Assignment, issue: models.Issue) -> Optional[str]:
        """Create the assignment's event, or update it if one already exists."""
        calendar_id = self.calendar_id or officer.email or "primary"
        event = self.build_event(officer, assignment, issue)
        url = f"{self.base_url}/calendars/{calendar_id}/events"

        try:
            with httpx.Client(timeout=self.timeout) as client:
                headers = {"Authorization": f"Bearer {self.access_token}"}
                if assignment.calendar_event_id:
                    response = client.put(
                        f"{url}/{assignment.calendar_event_id}",
                        params={"sendUpdates": "all"},
                        headers=headers,
                        json=event,
                    )
                else:
                    response = client.post(url, params={"sendUpdates": "all"}, headers=headers, json=event)
                response.raise_for_status()
                event_id = response.json().get("id")

            logger.info(
                "Calendar event scheduled",
                extra={"assignment_id": assignment.id, "event_id": event_id},
            )
            return event_id

        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 401:
                logger.error("Calendar authentication failed, check GOOGLE_CALENDAR_TOKEN")
            elif status == 403:
                logger.error("Calendar permission denied or Calendar API not enabled")
            elif status == 404:
                logger.error(f"Calendar not found: {calendar_id}")
            else:
                logger.error(f"Calendar API error {status}: {str(e)}")
        except httpx.HTTPError as e:
            logger.error(f"Calendar request failed: {str(e)}")
        except Exception:
            logger.exception("Unexpected calendar error", extra={"assignment_id": assignment.id})
        return None


def get_calendar_service() -> Optional[CalendarService]:
    """
    Factory for the configured calendar client.

    Reads GOOGLE_CALENDAR_TOKEN and GOOGLE_SHARED_CALENDAR_ID; returns None
    (calendar disabled) when no token is set.
    """
    token = os.getenv("GOOGLE_CALENDAR_TOKEN")
    if not token:
        logger.info("GOOGLE_CALENDAR_TOKEN not set, calendar integration disabled")
        return None
    return CalendarService(token, os.getenv("GOOGLE_SHARED_CALENDAR_ID"))
