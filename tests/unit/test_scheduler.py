import threading
from datetime import datetime, time

import pytest

from fitter.core.config import PipelineConfig
from fitter.services.scheduler import DailyTrigger, Scheduler


def _recording_jobs(calls: list[str]) -> dict:
    def _job(name: str):
        def _run(**kwargs):
            calls.append(name)
            return name

        return _run

    return {name: _job(name) for name in ("aggregate", "expire", "suggestions")}


def test_triggers_fire_once_per_day() -> None:
    calls: list[str] = []
    scheduler = Scheduler.from_config(PipelineConfig(), _recording_jobs(calls))

    assert scheduler.tick(datetime(2026, 10, 18, 0, 10)) == {}
    scheduler.tick(datetime(2026, 10, 18, 0, 15))
    assert calls == ["aggregate"]

    scheduler.tick(datetime(2026, 10, 18, 3, 0))
    assert calls == ["aggregate"]

    scheduler.tick(datetime(2026, 10, 18, 6, 0, 30))
    assert calls == ["aggregate", "expire", "suggestions"]

    scheduler.tick(datetime(2026, 10, 18, 23, 59))
    assert calls == ["aggregate", "expire", "suggestions"]

    scheduler.tick(datetime(2026, 10, 19, 0, 16))
    assert calls == ["aggregate", "expire", "suggestions", "aggregate"]


def test_late_start_catches_up_both_triggers() -> None:
    calls: list[str] = []
    scheduler = Scheduler.from_config(PipelineConfig(), _recording_jobs(calls))
    results = scheduler.tick(datetime(2026, 10, 18, 9, 0))
    assert set(results) == {"daily-aggregation", "daily-suggestions"}
    assert calls == ["aggregate", "expire", "suggestions"]


def test_failing_job_does_not_block_the_next_job() -> None:
    calls: list[str] = []
    jobs = _recording_jobs(calls)

    def _boom(**kwargs):
        raise RuntimeError("store offline")

    jobs["expire"] = _boom
    scheduler = Scheduler.from_config(PipelineConfig(), jobs)
    results = scheduler.tick(datetime(2026, 10, 18, 6, 1))
    assert isinstance(results["daily-suggestions"]["expire"], RuntimeError)
    assert "suggestions" in calls
    # Not retried on the next poll the same day.
    assert scheduler.due(datetime(2026, 10, 18, 6, 2)) == []


def test_run_once_passes_arguments() -> None:
    seen: dict = {}

    def _aggregate(day=None):
        seen["day"] = day
        return "ok"

    scheduler = Scheduler((), {"aggregate": _aggregate})
    assert scheduler.run_once("aggregate", day="2026-10-17") == "ok"
    assert seen == {"day": "2026-10-17"}
    with pytest.raises(KeyError):
        scheduler.run_once("reindex")


def test_unknown_job_in_trigger_is_rejected() -> None:
    with pytest.raises(ValueError):
        Scheduler((DailyTrigger("x", time(1, 0), ("missing",)),), {})


def test_run_forever_stops_on_event() -> None:
    calls: list[str] = []
    stop = threading.Event()
    ticks: list[datetime] = []

    def _clock() -> datetime:
        ticks.append(datetime(2026, 10, 18, 7, 0))
        stop.set()
        return ticks[-1]

    scheduler = Scheduler.from_config(PipelineConfig(), _recording_jobs(calls), clock=_clock)
    scheduler.run_forever(stop)
    assert calls == ["aggregate", "expire", "suggestions"]
