"""
Cache Module
============

Maps cache keys to remote references with a fixed time-to-live.
"""
