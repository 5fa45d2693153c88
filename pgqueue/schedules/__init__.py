"""Recurring schedules: management API and the schedule runner."""

from pgqueue.schedules.main import ScheduleRunner
from pgqueue.schedules.manager import Schedules

__all__ = ["ScheduleRunner", "Schedules"]
