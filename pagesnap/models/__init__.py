"""
Data Models
===========

Pydantic models shared by the rendering, cache and API layers.
"""
