"""
PageSnap
========

Renders web pages into images and serves them to many concurrent requesters
while keeping the number of expensive browser renders low.

This package provides:
- A Playwright session pool with health checks and restarts
- A capture engine with layered content waits and bounded retries
- A time-to-live cache fronting a durable remote store
- Hourly housekeeping of expired cache rows and orphaned capture files
- FastAPI endpoints and a Celery beat entry for scheduling
"""

__version__ = "1.0.0"
__author__ = "PageSnap Team"
