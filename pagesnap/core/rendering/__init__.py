"""
Rendering Module
===============

Browser automation for page screenshots.

Components:
- session_pool: keyed Playwright pages over one restartable browser
- capture_engine: navigation, content waits and image capture with retries
- filenames: filesystem-safe naming of capture files
"""
