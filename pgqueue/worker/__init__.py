"""
Worker module.
Contains the worker loop and the handler registry.
"""

from pgqueue.worker.handlers import HandlerRegistry, handler_registry, register_handler
from pgqueue.worker.main import Worker, WorkerRegistry

__all__ = [
    "Worker",
    "WorkerRegistry",
    "HandlerRegistry",
    "handler_registry",
    "register_handler",
]
