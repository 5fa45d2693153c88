"""
Unit tests for the schedule calculator.
"""

from datetime import UTC, datetime

import pytest

from pgqueue import cron
from pgqueue.cron import CronSchedule, IntervalSchedule
from pgqueue.errors import InvalidScheduleError


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)


class TestIntervalNextRun:
    """Tests for interval schedules."""

    def test_hours_from_after(self):
        schedule = IntervalSchedule(every=2, unit="hours")

        assert cron.next_run(schedule, after=utc(2024, 1, 1, 10, 15)) == utc(2024, 1, 1, 12, 15)

    def test_days_keep_wall_clock_across_dst(self):
        schedule = IntervalSchedule(every=2, unit="days")

        # Europe/Warsaw moves to CEST on 2024-03-31
        result = cron.next_run(schedule, "Europe/Warsaw", after=utc(2024, 3, 30, 20, 0))

        assert result == utc(2024, 4, 1, 19, 0)

    def test_days_in_utc(self):
        schedule = IntervalSchedule(every=2, unit="days")

        assert cron.next_run(schedule, after=utc(2024, 3, 30, 20, 0)) == utc(2024, 4, 1, 20, 0)

    def test_anchored_steps_past_after(self):
        schedule = IntervalSchedule(every=1, unit="hours", start_at=utc(2024, 1, 1))

        assert cron.next_run(schedule, after=utc(2024, 1, 1, 5, 30)) == utc(2024, 1, 1, 6)

    def test_anchored_result_is_strictly_later(self):
        schedule = IntervalSchedule(every=1, unit="hours", start_at=utc(2024, 1, 1))

        assert cron.next_run(schedule, after=utc(2024, 1, 1, 5)) == utc(2024, 1, 1, 6)

    def test_anchored_before_start(self):
        schedule = IntervalSchedule(every=1, unit="hours", start_at=utc(2024, 1, 1))

        assert cron.next_run(schedule, after=utc(2023, 12, 1)) == utc(2024, 1, 1, 1)

    def test_month_end_anchor_does_not_drift(self):
        schedule = IntervalSchedule(every=1, unit="months", start_at=utc(2024, 1, 31, 10))

        assert cron.next_run(schedule, after=utc(2024, 2, 15)) == utc(2024, 2, 29, 10)
        assert cron.next_run(schedule, after=utc(2024, 3, 1)) == utc(2024, 3, 31, 10)

    def test_years(self):
        schedule = IntervalSchedule(every=1, unit="years", start_at=utc(2020, 6, 1))

        assert cron.next_run(schedule, after=utc(2023, 7, 1)) == utc(2024, 6, 1)

    def test_every_must_be_positive(self):
        with pytest.raises(ValueError):
            IntervalSchedule(every=0, unit="hours")


class TestCronNextRun:
    """Tests for cron schedules."""

    def test_midnight_utc(self):
        schedule = CronSchedule(cron="0 0 * * *")

        assert cron.next_run(schedule, "UTC", after=utc(2024, 3, 30, 20)) == utc(2024, 3, 31)

    def test_midnight_in_timezone(self):
        schedule = CronSchedule(cron="0 0 * * *")

        result = cron.next_run(schedule, "Europe/Warsaw", after=utc(2024, 3, 30, 20))

        assert result == utc(2024, 3, 30, 23)

    def test_repeated_wall_clock_fires_once_on_fall_back(self):
        schedule = CronSchedule(cron="30 2 * * *")

        runs = []
        after = utc(2024, 10, 26)
        for _ in range(3):
            after = cron.next_run(schedule, "Europe/Warsaw", after=after)
            runs.append(after)

        assert runs == [
            utc(2024, 10, 26, 0, 30),
            utc(2024, 10, 27, 0, 30),
            utc(2024, 10, 28, 1, 30),
        ]

    def test_skipped_wall_clock_fires_once_on_spring_forward(self):
        schedule = CronSchedule(cron="30 2 * * *")

        runs = []
        after = utc(2024, 3, 30)
        for _ in range(3):
            after = cron.next_run(schedule, "Europe/Warsaw", after=after)
            runs.append(after)

        assert runs == [
            utc(2024, 3, 30, 1, 30),
            utc(2024, 3, 31, 1, 30),
            utc(2024, 4, 1, 0, 30),
        ]

    def test_start_at_is_lower_bound(self):
        schedule = CronSchedule(cron="0 * * * *", start_at=utc(2024, 6, 1, 0, 30))

        assert cron.next_run(schedule, after=utc(2024, 1, 1)) == utc(2024, 6, 1, 1)

    def test_invalid_expression(self):
        with pytest.raises(ValueError):
            CronSchedule(cron="not a cron")

    def test_result_is_utc(self):
        schedule = CronSchedule(cron="30 9 * * *")

        result = cron.next_run(schedule, "America/New_York", after=utc(2024, 7, 1, 12))

        assert result.utcoffset().total_seconds() == 0
        assert result == utc(2024, 7, 1, 13, 30)


class TestSerialization:
    """Tests for the storage string format."""

    def test_interval(self):
        assert cron.serialize(IntervalSchedule(every=5, unit="minutes")) == "B=5 m"

    def test_interval_with_start(self):
        schedule = IntervalSchedule(every=1, unit="months", start_at=utc(2021, 3, 3, 11, 22, 23))

        assert cron.serialize(schedule) == "B=1 mo 1614770543000"
        assert cron.deserialize("B=1 mo 1614770543000") == schedule

    def test_cron(self):
        assert cron.serialize(CronSchedule(cron="*/5 * * * *")) == "C=*/5 * * * *"

    def test_cron_with_start(self):
        schedule = cron.deserialize("C=0 0 * * *|1614770543000")

        assert schedule == CronSchedule(cron="0 0 * * *", start_at=utc(2021, 3, 3, 11, 22, 23))

    @pytest.mark.parametrize("value", ["X=foo", "B=0 m", "B=5 w", "B=five m", "C=not a cron"])
    def test_invalid(self, value: str):
        with pytest.raises(InvalidScheduleError):
            cron.deserialize(value)

    def test_start_at_truncated_to_milliseconds(self):
        schedule = IntervalSchedule(every=1, unit="seconds", start_at=utc(2024, 1, 1, 0, 0, 0, 123456))

        assert schedule.start_at == utc(2024, 1, 1, 0, 0, 0, 123000)

    def test_naive_start_at_is_utc(self):
        schedule = IntervalSchedule(every=1, unit="seconds", start_at=datetime(2024, 1, 1))

        assert schedule.start_at == utc(2024, 1, 1)


class TestParseSchedule:
    """Tests for parse_schedule and timezone validation."""

    def test_bare_cron(self):
        assert cron.parse_schedule("0 0 * * *") == CronSchedule(cron="0 0 * * *")

    def test_storage_string(self):
        assert cron.parse_schedule("B=2 d") == IntervalSchedule(every=2, unit="days")

    def test_mapping(self):
        schedule = cron.parse_schedule({"type": "interval", "every": 3, "unit": "hours"})

        assert schedule == IntervalSchedule(every=3, unit="hours")

    def test_invalid(self):
        with pytest.raises(InvalidScheduleError):
            cron.parse_schedule("every tuesday")

    def test_unknown_timezone(self):
        with pytest.raises(InvalidScheduleError):
            cron.validate_timezone("Mars/Olympus_Mons")

    def test_known_timezone(self):
        cron.validate_timezone("Europe/Warsaw")
        cron.validate_timezone(None)


class TestSimulate:
    """Tests for guess_granularity and simulate."""

    @pytest.mark.parametrize(
        ("expression", "granularity"),
        [
            ("@daily", "hours"),
            ("@hourly", "minutes"),
            ("@yearly", "months"),
            ("*/5 * * * *", "minutes"),
            ("0 0 * * *", "hours"),
            ("0 0 1 * *", "months"),
            ("0 0 1 1 *", "years"),
            ("0 0 1 1 1", "days"),
        ],
    )
    def test_guess_granularity(self, expression: str, granularity: str):
        assert cron.guess_granularity(expression) == granularity

    def test_cron_simulation(self):
        schedule = CronSchedule(cron="0 0 * * *", start_at=utc(2021, 3, 3, 11, 22, 23))

        simulation = cron.simulate(schedule, {"hours": 5})

        assert simulation.granularity == "hours"
        assert simulation.runs == [utc(2021, 3, day) for day in range(4, 9)]

    def test_interval_simulation(self):
        schedule = IntervalSchedule(every=1, unit="days", start_at=utc(2024, 1, 1))

        simulation = cron.simulate(schedule, {"days": 3})

        assert simulation.granularity == "days"
        assert simulation.runs == [utc(2024, 1, 2), utc(2024, 1, 3), utc(2024, 1, 4)]

    def test_default_count(self):
        schedule = IntervalSchedule(every=1, unit="minutes", start_at=utc(2024, 1, 1))

        assert len(cron.simulate(schedule).runs) == cron.DEFAULT_SIMULATION_COUNT
