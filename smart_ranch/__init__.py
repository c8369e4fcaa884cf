"""
Smart Ranch monitor backend.

Relays camera frames to an AI vision provider and keeps a durable,
size-bounded history of herd health analyses for the dashboard.
"""

__version__ = "1.0.0"
