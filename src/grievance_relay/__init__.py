"""
grievance_relay: durable retry/backoff delivery for complaint submissions
and outbound notifications.

The Postgres store lives in grievance_relay.delivery.pg_store and is imported
explicitly so the client flavor does not need a database driver loaded.
"""

__version__ = "0.1.0"
