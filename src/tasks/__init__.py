"""Background tasks for the CoachPlan platform.

This package contains Celery tasks for:
- Workout plan queue messages
- Job history cleanup
"""
