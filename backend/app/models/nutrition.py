"""Food catalog and macro Pydantic models."""

from __future__ import annotations

import math
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


# (food_id, is_user_created) - user foods and global foods share id space
FoodKey = tuple[str, bool]


def safe_float(value: Any, default: float = 0.0) -> float:
    """Coerce loose numeric input (None, "", "12,5", NaN) to a finite float."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, str):
        value = value.strip().replace(",", ".")
        if not value:
            return default
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(result):
        return default
    return result


class FoodUnit(str, Enum):
    """How an ingredient quantity is measured."""

    GRAMS = "grams"
    UNITS = "units"

    @classmethod
    def parse(cls, value: Any) -> FoodUnit:
        raw = str(value or "").strip().lower()
        if raw in ("units", "unit", "unidades", "unidad"):
            return cls.UNITS
        return cls.GRAMS


class MacroTotals(BaseModel):
    """Calories and macronutrients, never negative."""

    calories: float = 0
    proteins: float = 0
    carbs: float = 0
    fats: float = 0

    def __add__(self, other: MacroTotals) -> MacroTotals:
        return MacroTotals(
            calories=self.calories + other.calories,
            proteins=self.proteins + other.proteins,
            carbs=self.carbs + other.carbs,
            fats=self.fats + other.fats,
        )

    def minus_clamped(self, other: MacroTotals) -> MacroTotals:
        """Component-wise subtraction floored at zero."""
        return MacroTotals(
            calories=max(0.0, self.calories - other.calories),
            proteins=max(0.0, self.proteins - other.proteins),
            carbs=max(0.0, self.carbs - other.carbs),
            fats=max(0.0, self.fats - other.fats),
        )

    def clamped(self) -> MacroTotals:
        return MacroTotals(
            calories=max(0.0, self.calories),
            proteins=max(0.0, self.proteins),
            carbs=max(0.0, self.carbs),
            fats=max(0.0, self.fats),
        )

    def is_zero(self, tolerance: float = 1e-9) -> bool:
        return all(
            abs(v) <= tolerance
            for v in (self.calories, self.proteins, self.carbs, self.fats)
        )


class ConditionLink(BaseModel):
    """A food's relation to a medical condition."""

    condition_id: str
    relation: Optional[str] = None  # "avoid" | "recommend" after normalisation
    name: Optional[str] = None


class SensitivityLink(BaseModel):
    sensitivity_id: str
    name: Optional[str] = None


class Food(BaseModel):
    """A catalog food. Read-only to the ledger."""

    id: str
    name: str = ""
    unit: FoodUnit = FoodUnit.GRAMS
    # Per 100 g for gram foods, per unit for unit foods
    macros_per_100: MacroTotals = Field(default_factory=MacroTotals)
    is_user_created: bool = False

    group_ids: list[str] = Field(default_factory=list)
    sensitivities: list[SensitivityLink] = Field(default_factory=list)
    conditions: list[ConditionLink] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> str:
        return str(v)

    @field_validator("group_ids", "sensitivities", "conditions", mode="before")
    @classmethod
    def _none_is_empty(cls, v: Any) -> Any:
        return v or []

    @property
    def key(self) -> FoodKey:
        return (self.id, self.is_user_created)

    def macros_per_quantity(self) -> MacroTotals:
        """Macros contributed by one gram (or one unit) of this food."""
        per = 1.0 if self.unit == FoodUnit.UNITS else 0.01
        m = self.macros_per_100
        return MacroTotals(
            calories=m.calories * per,
            proteins=m.proteins * per,
            carbs=m.carbs * per,
            fats=m.fats * per,
        )


class Ingredient(BaseModel):
    """A food reference plus a quantity in the food's unit."""

    food_id: str
    is_user_created: bool = False
    quantity: float = 0

    @field_validator("food_id", mode="before")
    @classmethod
    def _coerce_food_id(cls, v: Any) -> str:
        return str(v)

    @field_validator("quantity", mode="before")
    @classmethod
    def _coerce_quantity(cls, v: Any) -> float:
        return max(0.0, safe_float(v))

    @property
    def food_key(self) -> FoodKey:
        return (self.food_id, self.is_user_created)


FoodCatalog = dict[FoodKey, Food]


def index_foods(foods: list[Food]) -> FoodCatalog:
    """Index foods by (id, is_user_created)."""
    return {f.key: f for f in foods}
