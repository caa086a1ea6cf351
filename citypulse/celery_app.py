"""
Celery application initialization and configuration.
This module sets up Celery to use Redis as the message broker for the
outbound side effects of workflow operations (calendar, email).
"""

import os
from celery import Celery
from kombu import Exchange, Queue

# Get configuration from environment variables
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")

# Initialize Celery app
app = Celery(
    "citypulse",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
)

# Configure task settings
app.conf.update(
    # Task serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task execution
    task_track_started=True,
    task_time_limit=5 * 60,  # Kill task after 5 minutes
    task_soft_time_limit=4 * 60,

    # Retry behavior
    task_acks_late=True,
    worker_prefetch_multiplier=1,

    # Publishing must not stall the request path when the broker is down
    broker_connection_timeout=2,
    task_publish_retry_policy={
        "max_retries": 1,
        "interval_start": 0,
        "interval_step": 0.5,
        "interval_max": 0.5,
    },

    # Task routes and queues
    task_routes={
        "citypulse.tasks.celery_tasks.schedule_assignment_event": {"queue": "calendar"},
        "citypulse.tasks.celery_tasks.send_assignment_emails": {"queue": "email"},
        "citypulse.tasks.celery_tasks.send_status_update_email": {"queue": "email"},
        "citypulse.tasks.celery_tasks.send_issue_reported_email": {"queue": "email"},
    },
    task_queues=[
        Queue("default", Exchange("default"), routing_key="default"),
        Queue("calendar", Exchange("calendar"), routing_key="calendar"),
        Queue("email", Exchange("email"), routing_key="email"),
    ],
)

# Explicitly import task modules to ensure they're registered
from citypulse.tasks import celery_tasks  # noqa: E402, F401
