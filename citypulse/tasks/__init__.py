"""Background work module.

Celery tasks (``celery_tasks``) run the outbound side effects of workflow
operations in a worker process: calendar scheduling and email.

``outbound.OutboundQueue`` is what the request path uses to hand those
effects off after a transaction commits, without waiting on the broker.

IMPORTANT: celery_tasks is not imported here to avoid circular imports with
Celery initialization. Use: from citypulse.tasks import celery_tasks
"""

from citypulse.tasks.outbound import OutboundQueue

__all__ = ["OutboundQueue"]
