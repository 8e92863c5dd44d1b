"""Daily clock triggers for the pipeline jobs.

Trigger times are wall-clock UTC. Each trigger fires at most once per calendar day;
a trigger whose time already passed when the process starts fires on the first tick,
which is safe because every job is re-runnable.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Callable, Mapping, Optional

from fitter.core.config import PipelineConfig
from fitter.core.dates import utc_now

logger = logging.getLogger("fitter.scheduler")


@dataclass(frozen=True)
class DailyTrigger:
    name: str
    at: time
    jobs: tuple[str, ...]

    def is_due(self, now: datetime, last_fired: Optional[date]) -> bool:
        if last_fired == now.date():
            return False
        return now.time() >= self.at


def default_triggers(config: PipelineConfig) -> tuple[DailyTrigger, ...]:
    return (
        DailyTrigger(name="daily-aggregation", at=config.aggregation_time, jobs=("aggregate",)),
        # Expire yesterday's batch before generating today's.
        DailyTrigger(name="daily-suggestions", at=config.suggestion_time, jobs=("expire", "suggestions")),
    )


class Scheduler:
    def __init__(
        self,
        triggers: tuple[DailyTrigger, ...],
        jobs: Mapping[str, Callable[..., Any]],
        clock: Callable[[], datetime] = utc_now,
        poll_seconds: float = 30.0,
    ):
        unknown = {name for trigger in triggers for name in trigger.jobs if name not in jobs}
        if unknown:
            raise ValueError(f"Triggers reference unknown jobs: {sorted(unknown)}")
        self.triggers = triggers
        self.jobs = dict(jobs)
        self.clock = clock
        self.poll_seconds = poll_seconds
        self._last_fired: dict[str, date] = {}

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        jobs: Mapping[str, Callable[..., Any]],
        clock: Callable[[], datetime] = utc_now,
    ) -> "Scheduler":
        return cls(default_triggers(config), jobs, clock=clock, poll_seconds=config.scheduler_poll_seconds)

    def run_once(self, name: str, **kwargs: Any) -> Any:
        if name not in self.jobs:
            raise KeyError(name)
        logger.info("job_started job=%s", name)
        result = self.jobs[name](**kwargs)
        logger.info("job_finished job=%s", name)
        return result

    def due(self, now: Optional[datetime] = None) -> list[DailyTrigger]:
        current = now or self.clock()
        return [t for t in self.triggers if t.is_due(current, self._last_fired.get(t.name))]

    def tick(self, now: Optional[datetime] = None) -> dict[str, dict[str, Any]]:
        current = now or self.clock()
        results: dict[str, dict[str, Any]] = {}
        for trigger in self.due(current):
            # Marked before running so a crashing job is not retried every poll.
            self._last_fired[trigger.name] = current.date()
            outcome: dict[str, Any] = {}
            for job_name in trigger.jobs:
                try:
                    outcome[job_name] = self.run_once(job_name)
                except Exception as exc:
                    logger.exception("job_failed trigger=%s job=%s detail=%s", trigger.name, job_name, exc)
                    outcome[job_name] = exc
            results[trigger.name] = outcome
        return results

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        stop = stop_event or threading.Event()
        logger.info(
            "scheduler_started triggers=%s poll_s=%s",
            ",".join(f"{t.name}@{t.at.strftime('%H:%M')}" for t in self.triggers),
            self.poll_seconds,
        )
        while not stop.is_set():
            self.tick()
            stop.wait(self.poll_seconds)
        logger.info("scheduler_stopped")
