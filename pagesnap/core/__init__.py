"""
Core Business Logic
==================

Core modules for page rendering and cache-aside delivery.

Modules:
- rendering: browser session pool, capture engine, output file naming
- cache: cache metadata store and its persistence backends
- storage: durable remote store for captured images
- housekeeping: periodic purge of expired metadata and stale captures
- queue: Celery app scheduling housekeeping
"""
