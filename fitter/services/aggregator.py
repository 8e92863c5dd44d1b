import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fitter.core.batch import BatchReport, run_isolated
from fitter.core.config import PipelineConfig
from fitter.core.dates import DayLike, day_bounds, utc_now
from fitter.core.errors import AggregationError, StoreWriteError
from fitter.core.insights import DEFAULT_RULES, ActivityCounts, DayFacts, InsightRule, derive_insights
from fitter.core.nutrients import MacroTotals
from fitter.db.models import DailySummary, Log, NutritionLog
from fitter.db.store import ActivityStore

logger = logging.getLogger("fitter.aggregator")


def sum_meal_totals(meals: Iterable[NutritionLog]) -> MacroTotals:
    totals = MacroTotals()
    for meal in meals:
        totals = totals + MacroTotals(
            calories=meal.total_calories or 0.0,
            protein=meal.total_protein or 0.0,
            carbs=meal.total_carbs or 0.0,
            fat=meal.total_fat or 0.0,
        )
    return totals


def count_activity(logs: Iterable[Log]) -> ActivityCounts:
    workouts = 0
    sleep_hours = 0.0
    steps = 0.0
    for log in logs:
        if log.type == "workout":
            workouts += 1
        elif log.type == "sleep":
            sleep_hours += log.value or 0.0
        elif log.type == "steps":
            steps += log.value or 0.0
    return ActivityCounts(workouts=workouts, sleep_hours=sleep_hours, steps=steps)


def build_summary_fields(
    logs: list[Log], meals: list[NutritionLog], rules: tuple[InsightRule, ...] = DEFAULT_RULES
) -> dict:
    facts = DayFacts(
        totals=sum_meal_totals(meals),
        logs=count_activity(logs),
        meals_logged=len(meals),
        steps_logged=any(log.type == "steps" for log in logs),
        sleep_logged=any(log.type == "sleep" for log in logs),
    )
    return {
        "totals": facts.totals.as_dict(),
        "logs": facts.logs.as_dict(),
        "insights": derive_insights(facts, rules),
    }


class DailyAggregator:
    def __init__(self, store: ActivityStore, rules: tuple[InsightRule, ...] = DEFAULT_RULES):
        self.store = store
        self.rules = rules

    def aggregate(self, user_id: int, day: DayLike) -> DailySummary:
        start, end = day_bounds(day)
        try:
            logs = self.store.find_logs(user_id, start, end)
            meals = self.store.find_meals(user_id, start, end)
            fields = build_summary_fields(logs, meals, self.rules)
            row = self.store.upsert_daily_summary(user_id, start, fields)
        except (SQLAlchemyError, StoreWriteError) as exc:
            raise AggregationError(
                f"Daily aggregation failed for user {user_id} on {start.date().isoformat()}: {exc}",
                user_id=user_id,
            ) from exc
        logger.debug(
            "daily_summary_upserted user_id=%s date=%s logs=%s meals=%s",
            user_id,
            start.date().isoformat(),
            len(logs),
            len(meals),
        )
        return row


def run_daily_aggregation(
    session_factory: Callable[[], Session],
    config: PipelineConfig,
    day: Optional[DayLike] = None,
    clock: Callable[[], datetime] = utc_now,
) -> BatchReport:
    """Roll up ``day`` (default: yesterday by ``clock``) for every user."""
    target = day if day is not None else (clock() - timedelta(days=1)).date()
    with session_factory() as db:
        user_ids = [user.id for user in ActivityStore(db).find_users()]

    logger.info("daily_aggregation_started day=%s users=%s", target, len(user_ids))

    def _work(user_id: int) -> None:
        with session_factory() as db:
            DailyAggregator(ActivityStore(db)).aggregate(user_id, target)

    report = run_isolated(
        "aggregate",
        user_ids,
        _work,
        max_workers=config.batch_max_workers,
        task_timeout=config.batch_user_timeout_seconds,
    )
    logger.info(
        "daily_aggregation_finished day=%s succeeded=%s failed=%s",
        target,
        len(report.succeeded),
        len(report.failed),
    )
    return report
