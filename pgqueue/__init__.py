"""
Postgres-backed distributed job queue with an integrated scheduler.

Producers push queue items, the scheduler leases due items into the work
queue, workers execute handlers and finalize items into history, and the
schedule runner turns recurring schedule definitions into queue items.
Mutual exclusion relies only on Postgres row locks (SKIP LOCKED) and
self-expiring leases.
"""

__version__ = "1.0.0"
