"""CityPulse civic issue workflow service.

A FastAPI application for citizen-reported municipal issues with:
- Issue, assignment and feedback lifecycles with their invariants
- Persisted notifications with live WebSocket delivery
- Celery background jobs for calendar scheduling and email
- SQLAlchemy ORM with async support
"""
