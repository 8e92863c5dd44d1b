from dataclasses import dataclass
from typing import Callable, Optional

from fitter.core.nutrients import MacroTotals

LOW_SLEEP_HOURS = 7.0
LOW_PROTEIN_G = 60.0
LOW_CALORIES_KCAL = 1500.0
LOW_STEPS = 5000.0


@dataclass(frozen=True)
class ActivityCounts:
    workouts: int = 0
    sleep_hours: float = 0.0
    steps: float = 0.0

    def as_dict(self) -> dict[str, float]:
        return {
            "workouts": self.workouts,
            "sleepHours": round(self.sleep_hours, 2),
            "steps": round(self.steps, 2),
        }


@dataclass(frozen=True)
class DayFacts:
    totals: MacroTotals
    logs: ActivityCounts
    meals_logged: int = 0
    steps_logged: bool = False
    sleep_logged: bool = False


InsightRule = Callable[[DayFacts], Optional[str]]


def low_sleep(facts: DayFacts) -> Optional[str]:
    if facts.sleep_logged and facts.logs.sleep_hours < LOW_SLEEP_HOURS:
        return "Sleep under 7h; prioritize rest."
    return None


def no_workout(facts: DayFacts) -> Optional[str]:
    if facts.logs.workouts == 0:
        return "No workout logged; consider light activity."
    return None


def low_protein(facts: DayFacts) -> Optional[str]:
    if facts.totals.protein < LOW_PROTEIN_G:
        return "Protein intake below 60g; add lean protein."
    return None


def low_calories(facts: DayFacts) -> Optional[str]:
    # An empty food diary says nothing about intake.
    if facts.meals_logged and facts.totals.calories < LOW_CALORIES_KCAL:
        return "Calories under 1500 kcal; consider a balanced meal to meet energy needs."
    return None


def low_steps(facts: DayFacts) -> Optional[str]:
    if facts.steps_logged and facts.logs.steps < LOW_STEPS:
        return "Fewer than 5000 steps; add a short walk."
    return None


DEFAULT_RULES: tuple[InsightRule, ...] = (
    low_sleep,
    no_workout,
    low_protein,
    low_calories,
    low_steps,
)


def derive_insights(facts: DayFacts, rules: tuple[InsightRule, ...] = DEFAULT_RULES) -> list[str]:
    insights: list[str] = []
    for rule in rules:
        message = rule(facts)
        if message:
            insights.append(message)
    return insights
