"""
Storage Module
==============

Durable remote storage for captured images.
"""
