"""
Queue Module
============

Celery application used to schedule periodic housekeeping.
"""
