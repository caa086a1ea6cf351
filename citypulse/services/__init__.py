"""Workflow core: issue, assignment, feedback and notification services.

Import the concrete modules directly (``citypulse.services.workflow`` for the
orchestrator); nothing is re-exported here to keep import order flat.
"""
