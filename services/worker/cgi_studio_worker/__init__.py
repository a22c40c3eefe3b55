"""Celery worker that turns queued studio jobs into images and videos."""
