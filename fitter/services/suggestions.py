import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator
from sqlalchemy.orm import Session

from fitter.core.batch import BatchReport, run_isolated
from fitter.core.config import PipelineConfig
from fitter.core.dates import day_bucket, utc_now
from fitter.core.errors import MalformedSuggestionPayload
from fitter.core.nutrients import Micronutrients, sum_micronutrients
from fitter.db.models import Log, NutritionLog, Suggestion, User
from fitter.db.store import ActivityStore
from fitter.services.ai_gateway import AIGateway, ChatMessage

logger = logging.getLogger("fitter.suggestions")

USER_TURN = "Generate personalized wellness suggestions for today."


class SuggestionDraft(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    title: str = Field(min_length=1, max_length=255)
    description: str = Field(min_length=1)
    category: Literal["nutrition", "exercise", "sleep", "hydration", "wellness", "recovery"]
    priority: Literal["high", "medium", "low"]
    emoji: str = Field(min_length=1, max_length=32)
    action_text: str = Field(default="I'll do it", alias="actionText", max_length=128)
    dismiss_text: str = Field(default="Dismiss", alias="dismissText", max_length=128)

    @field_validator("category", "priority", mode="before")
    @classmethod
    def _lowercase(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("action_text", "dismiss_text", mode="before")
    @classmethod
    def _default_when_blank(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return "I'll do it" if info.field_name == "action_text" else "Dismiss"
        return value


def _extract_json_array(raw_text: str) -> Any:
    text = raw_text.strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
        text = text.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    start = text.find("[")
    end = text.rfind("]")
    if start != -1 and end != -1 and end > start:
        try:
            return json.loads(text[start : end + 1])
        except json.JSONDecodeError:
            pass
    raise MalformedSuggestionPayload("Provider reply is not JSON", raw_excerpt=raw_text[:200])


def parse_suggestions(raw_text: str) -> list[SuggestionDraft]:
    """Validate the provider reply against the suggestion schema.

    Anything other than a non-empty JSON array of conforming objects is rejected as a
    whole; a partially valid batch is never persisted.
    """
    payload = _extract_json_array(raw_text or "")
    if not isinstance(payload, list):
        raise MalformedSuggestionPayload("Provider reply is not a JSON array", raw_excerpt=raw_text[:200])
    if not payload:
        raise MalformedSuggestionPayload("Provider reply is an empty array", raw_excerpt=raw_text[:200])
    drafts: list[SuggestionDraft] = []
    for index, item in enumerate(payload):
        if not isinstance(item, dict):
            raise MalformedSuggestionPayload(
                f"Suggestion #{index} is not an object", raw_excerpt=raw_text[:200]
            )
        try:
            drafts.append(SuggestionDraft.model_validate(item))
        except ValidationError as exc:
            raise MalformedSuggestionPayload(
                f"Suggestion #{index} does not match schema: {exc.error_count()} error(s)",
                raw_excerpt=raw_text[:200],
            ) from exc
    return drafts


@dataclass(frozen=True)
class ActivitySnapshot:
    hydration_today: float = 0.0
    sleep_today: float = 0.0
    workout_today: float = 0.0
    calories_today: float = 0.0
    workouts_7d: int = 0
    avg_sleep_7d: Optional[float] = None
    micronutrients_today: Optional[Micronutrients] = None


def build_activity_snapshot(
    logs: list[Log], meals: list[NutritionLog], today_start: datetime
) -> ActivitySnapshot:
    today_logs = [log for log in logs if log.date >= today_start]
    today_meals = [meal for meal in meals if meal.date >= today_start]

    def _sum(rows: list[Log], log_type: str) -> float:
        return sum((row.value or 0.0) for row in rows if row.type == log_type)

    sleep_days: dict[str, float] = {}
    for log in logs:
        if log.type == "sleep":
            key = log.date.date().isoformat()
            sleep_days[key] = sleep_days.get(key, 0.0) + (log.value or 0.0)
    avg_sleep = round(sum(sleep_days.values()) / len(sleep_days), 1) if sleep_days else None

    micros = sum_micronutrients(Micronutrients.from_json(meal.micronutrients_json) for meal in today_meals)
    return ActivitySnapshot(
        hydration_today=_sum(today_logs, "hydration"),
        sleep_today=_sum(today_logs, "sleep"),
        workout_today=_sum(today_logs, "workout"),
        calories_today=sum((meal.total_calories or 0.0) for meal in today_meals),
        workouts_7d=sum(1 for log in logs if log.type == "workout"),
        avg_sleep_7d=avg_sleep,
        micronutrients_today=None if micros.is_empty() else micros,
    )


def _user_goals(user: User) -> list[str]:
    if not user.goals_json:
        return []
    try:
        parsed = json.loads(user.goals_json)
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, list):
        return []
    return [str(item).strip() for item in parsed if str(item).strip()][:5]


def _fmt(value: Optional[float], suffix: str = "") -> str:
    if value is None:
        return "not specified"
    number = int(value) if float(value).is_integer() else round(value, 1)
    return f"{number}{suffix}"


def build_system_prompt(user: User, snapshot: ActivitySnapshot, max_items: int = 5) -> str:
    goals = ", ".join(_user_goals(user)) or "general wellness"
    lines = [
        f"You are Fitter AI, a wellness coach. Generate 3-{max_items} personalized daily suggestions based on user data.",
        "",
        "User Profile:",
        f"- Goals: {goals}",
        f"- Age: {_fmt(user.age)}",
        f"- Height: {_fmt(user.height_cm, 'cm')}",
        f"- Weight: {_fmt(user.weight_kg, 'kg')}",
        f"- Activity level: {user.activity_level or 'not specified'}",
        "",
        "Today's Activity:",
        f"- Hydration: {_fmt(snapshot.hydration_today)} glasses",
        f"- Sleep: {_fmt(snapshot.sleep_today)} hours",
        f"- Workout: {_fmt(snapshot.workout_today)} calories",
        f"- Calories consumed: {_fmt(snapshot.calories_today)}",
        "",
        "Last 7 Days:",
        f"- Workouts logged: {snapshot.workouts_7d}",
        f"- Average sleep: {_fmt(snapshot.avg_sleep_7d, ' hours')}",
    ]
    micros = snapshot.micronutrients_today
    if micros is not None:
        if micros.fiber_g is not None:
            lines.append(f"- Fiber today: {_fmt(micros.fiber_g, 'g')}")
        if micros.sodium_mg is not None:
            lines.append(f"- Sodium today: {_fmt(micros.sodium_mg, 'mg')}")
    lines.extend(
        [
            "",
            "Generate suggestions that are:",
            "1. Specific and actionable",
            "2. Based on their current activity levels",
            "3. Helpful for their goals",
            "4. Varied across categories (nutrition, exercise, sleep, hydration, wellness)",
            "",
            "Return ONLY a JSON array with this exact format and no other text:",
            "[",
            "  {",
            '    "title": "Brief suggestion title",',
            '    "description": "Detailed explanation of the suggestion",',
            '    "category": "nutrition|exercise|sleep|hydration|wellness|recovery",',
            '    "priority": "high|medium|low",',
            '    "emoji": "💪",',
            '    "actionText": "I\'ll do it",',
            '    "dismissText": "Dismiss"',
            "  }",
            "]",
        ]
    )
    return "\n".join(lines)


class SuggestionGenerator:
    def __init__(
        self,
        config: PipelineConfig,
        gateway: AIGateway,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.gateway = gateway
        self.clock = clock

    def generate_for_user(self, store: ActivityStore, user: User) -> list[Suggestion]:
        """Create today's batch for one user; returns an empty list when one already exists."""
        now = self.clock()
        today_start = day_bucket(now)
        if store.count_active_suggestions_since(user.id, today_start) > 0:
            logger.info("suggestions_already_generated user_id=%s", user.id)
            return []

        window_start = today_start - timedelta(days=self.config.suggestion_history_days)
        window_end = today_start + timedelta(days=1)
        logs = store.find_logs(user.id, window_start, window_end)
        meals = store.find_meals(user.id, window_start, window_end)
        snapshot = build_activity_snapshot(logs, meals, today_start)

        messages: list[ChatMessage] = [
            {"role": "system", "content": build_system_prompt(user, snapshot, self.config.max_suggestions_per_batch)},
            {"role": "user", "content": USER_TURN},
        ]
        raw = self.gateway.generate(messages)
        try:
            drafts = parse_suggestions(raw)
        except MalformedSuggestionPayload as exc:
            exc.user_id = user.id
            raise

        expires_at = now + timedelta(hours=self.config.suggestion_ttl_hours)
        items = [
            {
                "title": draft.title,
                "description": draft.description,
                "category": draft.category,
                "priority": draft.priority,
                "status": "active",
                "emoji": draft.emoji,
                "action_text": draft.action_text,
                "dismiss_text": draft.dismiss_text,
                "generated_at": now,
                "expires_at": expires_at,
            }
            for draft in drafts[: self.config.max_suggestions_per_batch]
        ]
        rows = store.insert_suggestions(user.id, items)
        logger.info("suggestions_generated user_id=%s count=%s", user.id, len(rows))
        return rows

    def run_for_all_users(self, session_factory: Callable[[], Session]) -> BatchReport:
        with session_factory() as db:
            user_ids = [user.id for user in ActivityStore(db).find_users(onboarded=True)]

        logger.info("suggestion_sweep_started users=%s", len(user_ids))

        def _work(user_id: int) -> bool:
            with session_factory() as db:
                store = ActivityStore(db)
                user = store.get_user(user_id)
                if user is None:
                    return False
                return bool(self.generate_for_user(store, user))

        report = run_isolated(
            "suggestions",
            user_ids,
            _work,
            max_workers=self.config.batch_max_workers,
            task_timeout=self.config.batch_user_timeout_seconds,
        )
        logger.info(
            "suggestion_sweep_finished succeeded=%s skipped=%s failed=%s",
            len(report.succeeded),
            len(report.skipped),
            len(report.failed),
        )
        return report
