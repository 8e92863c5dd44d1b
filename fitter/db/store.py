"""Read/write contracts over the activity tables.

Every method is scoped to the session it was built with. Writes commit on success and
roll back on failure, surfacing ``StoreWriteError`` so callers can isolate the user
whose write failed.
"""

import json
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import case, func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fitter.core.errors import StoreWriteError
from fitter.db.models import DailySummary, Log, NutritionLog, Suggestion, User

RECENT_SUMMARY_LIMIT = 14
TIMESTAMP_FIELDS = {"completed_at", "dismissed_at"}


class ActivityStore:
    def __init__(self, db: Session):
        self.db = db

    # Reads

    def find_users(self, onboarded: Optional[bool] = None) -> list[User]:
        query = self.db.query(User)
        if onboarded is not None:
            query = query.filter(User.completed_onboarding.is_(onboarded))
        return query.order_by(User.id.asc()).all()

    def get_user(self, user_id: int) -> Optional[User]:
        return self.db.get(User, user_id)

    def find_logs(
        self, user_id: int, start: datetime, end: datetime, log_type: Optional[str] = None
    ) -> list[Log]:
        query = self.db.query(Log).filter(Log.user_id == user_id, Log.date >= start, Log.date < end)
        if log_type:
            query = query.filter(Log.type == log_type)
        return query.order_by(Log.date.asc(), Log.id.asc()).all()

    def find_meals(self, user_id: int, start: datetime, end: datetime) -> list[NutritionLog]:
        return (
            self.db.query(NutritionLog)
            .filter(NutritionLog.user_id == user_id, NutritionLog.date >= start, NutritionLog.date < end)
            .order_by(NutritionLog.date.asc(), NutritionLog.id.asc())
            .all()
        )

    def get_daily_summary(self, user_id: int, day: datetime) -> Optional[DailySummary]:
        return (
            self.db.query(DailySummary)
            .filter(DailySummary.user_id == user_id, DailySummary.date == day)
            .first()
        )

    def recent_summaries(self, user_id: int, limit: int = RECENT_SUMMARY_LIMIT) -> list[DailySummary]:
        return (
            self.db.query(DailySummary)
            .filter(DailySummary.user_id == user_id)
            .order_by(DailySummary.date.desc())
            .limit(limit)
            .all()
        )

    def count_active_suggestions_since(self, user_id: int, since: datetime) -> int:
        return (
            self.db.query(func.count(Suggestion.id))
            .filter(
                Suggestion.user_id == user_id,
                Suggestion.status == "active",
                Suggestion.generated_at >= since,
            )
            .scalar()
            or 0
        )

    def list_active_suggestions(self, user_id: int) -> list[Suggestion]:
        priority_rank = case(
            (Suggestion.priority == "high", 0),
            (Suggestion.priority == "medium", 1),
            else_=2,
        )
        return (
            self.db.query(Suggestion)
            .filter(Suggestion.user_id == user_id, Suggestion.status == "active")
            .order_by(priority_rank.asc(), Suggestion.generated_at.desc(), Suggestion.id.desc())
            .all()
        )

    def suggestion_history(
        self, user_id: int, limit: int = 50, status: Optional[str] = None
    ) -> list[Suggestion]:
        query = self.db.query(Suggestion).filter(Suggestion.user_id == user_id)
        if status:
            query = query.filter(Suggestion.status == status)
        return query.order_by(Suggestion.generated_at.desc(), Suggestion.id.desc()).limit(limit).all()

    def get_suggestion(self, user_id: int, suggestion_id: int) -> Optional[Suggestion]:
        return (
            self.db.query(Suggestion)
            .filter(Suggestion.id == suggestion_id, Suggestion.user_id == user_id)
            .first()
        )

    # Writes

    def upsert_daily_summary(self, user_id: int, day: datetime, fields: dict[str, Any]) -> DailySummary:
        totals = fields.get("totals", {})
        logs = fields.get("logs", {})
        insights = list(fields.get("insights", []))
        try:
            row = self.get_daily_summary(user_id, day)
            if not row:
                row = DailySummary(user_id=user_id, date=day)
                self.db.add(row)
            row.total_calories = float(totals.get("calories", 0.0))
            row.total_protein = float(totals.get("protein", 0.0))
            row.total_carbs = float(totals.get("carbs", 0.0))
            row.total_fat = float(totals.get("fat", 0.0))
            row.workouts = int(logs.get("workouts", 0))
            row.sleep_hours = float(logs.get("sleepHours", 0.0))
            row.steps = float(logs.get("steps", 0.0))
            row.insights_json = json.dumps(insights)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StoreWriteError(f"Daily summary upsert failed: {exc}", user_id=user_id) from exc
        self.db.refresh(row)
        return row

    def insert_suggestions(self, user_id: int, items: Iterable[dict[str, Any]]) -> list[Suggestion]:
        rows = [Suggestion(user_id=user_id, **item) for item in items]
        try:
            self.db.add_all(rows)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StoreWriteError(f"Suggestion insert failed: {exc}", user_id=user_id) from exc
        for row in rows:
            self.db.refresh(row)
        return rows

    def bulk_update_suggestion_status(
        self,
        status: str,
        timestamp_field: str,
        now: datetime,
        current_status: str = "active",
        expires_before: Optional[datetime] = None,
    ) -> int:
        if timestamp_field not in TIMESTAMP_FIELDS:
            raise ValueError(f"Unsupported timestamp field {timestamp_field!r}")
        stmt = update(Suggestion).where(Suggestion.status == current_status)
        if expires_before is not None:
            stmt = stmt.where(Suggestion.expires_at.is_not(None), Suggestion.expires_at < expires_before)
        stmt = stmt.values({"status": status, timestamp_field: now}).execution_options(
            synchronize_session=False
        )
        try:
            result = self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StoreWriteError(f"Suggestion status update failed: {exc}") from exc
        return int(result.rowcount or 0)

    def set_suggestion_status(
        self, row: Suggestion, status: str, timestamp_field: str, now: datetime
    ) -> Suggestion:
        if timestamp_field not in TIMESTAMP_FIELDS:
            raise ValueError(f"Unsupported timestamp field {timestamp_field!r}")
        try:
            row.status = status
            setattr(row, timestamp_field, now)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StoreWriteError(f"Suggestion status update failed: {exc}", user_id=row.user_id) from exc
        self.db.refresh(row)
        return row


def summary_to_dict(row: DailySummary) -> dict[str, Any]:
    try:
        insights = json.loads(row.insights_json or "[]")
    except json.JSONDecodeError:
        insights = []
    return {
        "userId": row.user_id,
        "date": row.date.isoformat(),
        "totals": {
            "calories": row.total_calories,
            "protein": row.total_protein,
            "carbs": row.total_carbs,
            "fat": row.total_fat,
        },
        "logs": {"workouts": row.workouts, "sleepHours": row.sleep_hours, "steps": row.steps},
        "insights": insights if isinstance(insights, list) else [],
    }


def suggestion_to_dict(row: Suggestion) -> dict[str, Any]:
    def _iso(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    return {
        "id": row.id,
        "userId": row.user_id,
        "title": row.title,
        "description": row.description,
        "category": row.category,
        "priority": row.priority,
        "status": row.status,
        "emoji": row.emoji,
        "actionText": row.action_text,
        "dismissText": row.dismiss_text,
        "generatedAt": _iso(row.generated_at),
        "expiresAt": _iso(row.expires_at),
        "completedAt": _iso(row.completed_at),
        "dismissedAt": _iso(row.dismissed_at),
    }
