"""
Test Suite
==========

Test suite mirroring the pagesnap/ package structure.

Test Categories:
- unit: Unit tests for individual components
- integration: FastAPI application tests over fake browser and memory cache
"""
