"""
Configuration Management
=======================

Environment-based configuration using Pydantic Settings.

Components:
- settings: Main application settings and environment configuration
- database: PostgreSQL / Redis connections and cache backend selection
- logging: Structured logging configuration
"""
