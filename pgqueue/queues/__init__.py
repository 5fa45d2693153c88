"""Producer and management API for queue items and queue configuration."""

from pgqueue.queues.manager import Queues

__all__ = ["Queues"]
