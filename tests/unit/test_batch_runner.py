import threading

from fitter.core.batch import run_isolated
from fitter.core.errors import ProviderUnavailable


def test_failures_are_isolated_and_ordered() -> None:
    def _work(user_id: int):
        if user_id == 2:
            raise ProviderUnavailable("all models failed")
        return True

    report = run_isolated("suggestions", [1, 2, 3], _work, max_workers=3)
    assert report.succeeded == [1, 3]
    assert report.failed_user_ids == [2]
    assert report.failed[0].error_type == "ProviderUnavailable"


def test_false_outcome_is_recorded_as_skipped() -> None:
    report = run_isolated("suggestions", [1, 2], lambda user_id: user_id != 1)
    assert report.skipped == [1]
    assert report.succeeded == [2]


def test_slow_task_is_reported_as_timeout() -> None:
    release = threading.Event()

    def _work(user_id: int):
        if user_id == 1:
            release.wait(5)
        return True

    try:
        report = run_isolated("suggestions", [1, 2], _work, max_workers=2, task_timeout=0.2)
    finally:
        release.set()
    assert report.failed_user_ids == [1]
    assert report.failed[0].error_type == "TimeoutError"
    assert report.succeeded == [2]


def test_hung_user_does_not_fail_queued_users() -> None:
    release = threading.Event()
    ran: list[int] = []

    def _work(user_id: int):
        ran.append(user_id)
        if user_id == 1:
            release.wait(5)
        return True

    try:
        report = run_isolated("suggestions", [1, 2, 3], _work, max_workers=1, task_timeout=0.3)
    finally:
        release.set()
    assert report.failed_user_ids == [1]
    assert report.succeeded == [2, 3]
    assert ran == [1, 2, 3]


def test_deadline_counts_from_task_start() -> None:
    def _work(user_id: int):
        # Each task alone fits the deadline; queued together they would not.
        threading.Event().wait(0.2)
        return True

    report = run_isolated("aggregate", [1, 2, 3], _work, max_workers=1, task_timeout=0.5)
    assert report.succeeded == [1, 2, 3]
    assert report.failed == []


def test_empty_population() -> None:
    report = run_isolated("aggregate", [], lambda user_id: True)
    assert report.as_dict() == {"job": "aggregate", "succeeded": [], "skipped": [], "failed": []}
