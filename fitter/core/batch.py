import logging
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

logger = logging.getLogger("fitter.jobs")


@dataclass(frozen=True)
class UserFailure:
    user_id: int
    error_type: str
    message: str

    def as_dict(self) -> dict[str, Any]:
        return {"user_id": self.user_id, "error_type": self.error_type, "message": self.message}


@dataclass
class BatchReport:
    job: str
    succeeded: list[int] = field(default_factory=list)
    failed: list[UserFailure] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)

    @property
    def failed_user_ids(self) -> list[int]:
        return [failure.user_id for failure in self.failed]

    def as_dict(self) -> dict[str, Any]:
        return {
            "job": self.job,
            "succeeded": list(self.succeeded),
            "skipped": list(self.skipped),
            "failed": [failure.as_dict() for failure in self.failed],
        }


# A unit of work returns False when it deliberately did nothing for the user.
UserWork = Callable[[int], Any]


def run_isolated(
    job: str,
    user_ids: Sequence[int],
    work: UserWork,
    max_workers: int = 1,
    task_timeout: float = 120.0,
    monotonic: Callable[[], float] = time.monotonic,
) -> BatchReport:
    """Run ``work`` once per user with at most ``max_workers`` live tasks.

    A task's deadline counts from the moment it starts running, never from when it was
    queued. A task past its deadline is reported as a timeout and abandoned: its thread
    is left to finish on its own and a fresh slot is opened for the next user, so a hung
    user cannot hold back the rest of the sweep. An abandoned task may still complete
    its writes after the report is returned.

    The report lists users in input order regardless of completion order.
    """
    report = BatchReport(job=job)
    if not user_ids:
        return report

    limit = max(1, max_workers)
    started: dict[int, float] = {}
    outcomes: dict[int, tuple[str, Any]] = {}

    def _run(user_id: int) -> Any:
        started[user_id] = monotonic()
        return work(user_id)

    def _collect(user_id: int, future: Future) -> None:
        try:
            outcomes[user_id] = ("ok", future.result())
        except Exception as exc:
            logger.exception("%s_user_failed user_id=%s error=%s", job, user_id, exc.__class__.__name__)
            outcomes[user_id] = ("error", exc)

    def _next_wait(running: dict[Future, int]) -> float:
        now = monotonic()
        deadlines = [started[uid] + task_timeout for uid in running.values() if uid in started]
        if not deadlines:
            return task_timeout
        return max(0.0, min(deadlines) - now)

    # Admission is done here, so the pool only needs spare threads for abandoned tasks.
    pool = ThreadPoolExecutor(max_workers=limit + len(user_ids), thread_name_prefix=f"fitter-{job}")
    queue = deque(user_ids)
    running: dict[Future, int] = {}
    try:
        while queue or running:
            while queue and len(running) < limit:
                user_id = queue.popleft()
                running[pool.submit(_run, user_id)] = user_id

            done, _ = wait(list(running), timeout=_next_wait(running), return_when=FIRST_COMPLETED)
            for future in done:
                _collect(running.pop(future), future)

            now = monotonic()
            for future, user_id in list(running.items()):
                begun = started.get(user_id)
                if begun is None or now - begun < task_timeout:
                    continue
                del running[future]
                logger.error("%s_user_timeout user_id=%s timeout_s=%s", job, user_id, task_timeout)
                outcomes[user_id] = ("timeout", None)
    finally:
        pool.shutdown(wait=False, cancel_futures=True)

    for user_id in user_ids:
        kind, value = outcomes[user_id]
        if kind == "timeout":
            report.failed.append(UserFailure(user_id, "TimeoutError", f"Task exceeded {task_timeout}s"))
        elif kind == "error":
            report.failed.append(UserFailure(user_id, value.__class__.__name__, str(value)[:500]))
        elif value is False:
            report.skipped.append(user_id)
        else:
            report.succeeded.append(user_id)
    return report
