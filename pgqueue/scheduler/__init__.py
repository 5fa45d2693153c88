"""Scheduler: leases due queue items into the work queue."""

from pgqueue.scheduler.main import Scheduler

__all__ = ["Scheduler"]
