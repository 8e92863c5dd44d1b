import json
from dataclasses import dataclass
from typing import Iterable, Optional

from pydantic import BaseModel, Field, ValidationError

MICRONUTRIENT_FIELDS = (
    "fiber_g",
    "sugar_g",
    "sodium_mg",
    "potassium_mg",
    "calcium_mg",
    "iron_mg",
    "vitamin_c_mg",
    "vitamin_d_mcg",
)


@dataclass(frozen=True)
class MacroTotals:
    calories: float = 0.0
    protein: float = 0.0
    carbs: float = 0.0
    fat: float = 0.0

    def __add__(self, other: "MacroTotals") -> "MacroTotals":
        return MacroTotals(
            calories=self.calories + other.calories,
            protein=self.protein + other.protein,
            carbs=self.carbs + other.carbs,
            fat=self.fat + other.fat,
        )

    def as_dict(self) -> dict[str, float]:
        return {
            "calories": round(self.calories, 2),
            "protein": round(self.protein, 2),
            "carbs": round(self.carbs, 2),
            "fat": round(self.fat, 2),
        }


class Micronutrients(BaseModel):
    """Named micronutrient amounts for a meal.

    Unknown nutrients land in ``extra`` so a new label never breaks parsing, but the
    arithmetic over known fields stays explicit.
    """

    fiber_g: Optional[float] = Field(default=None, ge=0)
    sugar_g: Optional[float] = Field(default=None, ge=0)
    sodium_mg: Optional[float] = Field(default=None, ge=0)
    potassium_mg: Optional[float] = Field(default=None, ge=0)
    calcium_mg: Optional[float] = Field(default=None, ge=0)
    iron_mg: Optional[float] = Field(default=None, ge=0)
    vitamin_c_mg: Optional[float] = Field(default=None, ge=0)
    vitamin_d_mcg: Optional[float] = Field(default=None, ge=0)
    extra: dict[str, float] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        return not self.extra and all(getattr(self, name) is None for name in MICRONUTRIENT_FIELDS)

    @classmethod
    def from_json(cls, raw: Optional[str]) -> "Micronutrients":
        if not raw:
            return cls()
        try:
            loaded = json.loads(raw)
        except json.JSONDecodeError:
            return cls()
        if not isinstance(loaded, dict):
            return cls()
        known = {key: loaded[key] for key in MICRONUTRIENT_FIELDS if key in loaded}
        nested = loaded.get("extra")
        extra = dict(nested) if isinstance(nested, dict) else {}
        for key, value in loaded.items():
            if key in MICRONUTRIENT_FIELDS or key == "extra":
                continue
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                extra[key] = float(value)
        try:
            return cls(**known, extra=extra)
        except ValidationError as exc:
            # Drop only the offending fields; one bad value must not hide the rest.
            bad = {str(error["loc"][0]) for error in exc.errors() if error["loc"]}
        known = {key: value for key, value in known.items() if key not in bad}
        extra = {
            key: float(value)
            for key, value in extra.items()
            if isinstance(value, (int, float)) and not isinstance(value, bool)
        }
        return cls(**known, extra=extra)


def _add_optional(left: Optional[float], right: Optional[float]) -> Optional[float]:
    if left is None:
        return right
    if right is None:
        return left
    return left + right


def sum_micronutrients(records: Iterable[Micronutrients]) -> Micronutrients:
    totals: dict[str, Optional[float]] = {name: None for name in MICRONUTRIENT_FIELDS}
    extra: dict[str, float] = {}
    for record in records:
        for name in MICRONUTRIENT_FIELDS:
            totals[name] = _add_optional(totals[name], getattr(record, name))
        for key, value in record.extra.items():
            extra[key] = extra.get(key, 0.0) + value
    return Micronutrients(**totals, extra=extra)
