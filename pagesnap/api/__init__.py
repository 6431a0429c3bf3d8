"""
API Layer
=========

FastAPI application exposing screenshot, cache and maintenance endpoints.
"""
