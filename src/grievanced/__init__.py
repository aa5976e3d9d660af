"""
grievanced: notification delivery service

Accepts notification requests over HTTP, queues them durably, and sends them
by channel from a batch worker with exponential backoff.
"""

__version__ = "0.1.0"
