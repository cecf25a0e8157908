"""
Macro aggregation.

Pure computation, safe to call on every render:
- Foods are resolved by (food_id, is_user_created)
- Unresolved foods contribute nothing instead of failing the whole recipe
- No rounding happens here; rounding is a display concern
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from app.models.nutrition import (
    Food,
    FoodCatalog,
    FoodUnit,
    Ingredient,
    MacroTotals,
)

logger = logging.getLogger(__name__)


class MacroAggregator:
    """Ingredient list + food catalog -> macro totals."""

    def ingredient_macros(self, ingredient: Ingredient, food: Optional[Food]) -> MacroTotals:
        """Macros contributed by a single ingredient."""
        if food is None or ingredient.quantity <= 0:
            return MacroTotals()

        # Unit foods store their macros per unit, not per 100 g
        ratio = ingredient.quantity if food.unit == FoodUnit.UNITS else ingredient.quantity / 100
        m = food.macros_per_100

        return MacroTotals(
            calories=max(0.0, m.calories) * ratio,
            proteins=max(0.0, m.proteins) * ratio,
            carbs=max(0.0, m.carbs) * ratio,
            fats=max(0.0, m.fats) * ratio,
        )

    def aggregate(self, ingredients: Iterable[Ingredient], catalog: FoodCatalog) -> MacroTotals:
        """Sum macros over ingredients, skipping foods missing from the catalog."""
        calories = proteins = carbs = fats = 0.0
        missing = 0

        for ingredient in ingredients or ():
            if ingredient is None:
                continue
            food = catalog.get(ingredient.food_key)
            if food is None:
                missing += 1
                continue
            contribution = self.ingredient_macros(ingredient, food)
            calories += contribution.calories
            proteins += contribution.proteins
            carbs += contribution.carbs
            fats += contribution.fats

        if missing:
            logger.debug(f"Macro aggregation skipped {missing} ingredient(s) with unknown food")

        return MacroTotals(
            calories=calories,
            proteins=proteins,
            carbs=carbs,
            fats=fats,
        ).clamped()


def derive_calories(proteins: float, carbs: float, fats: float) -> float:
    """Atwater estimate used when a food has no explicit calorie value."""
    return proteins * 4 + carbs * 4 + fats * 9


# Singleton
_macro_aggregator: Optional[MacroAggregator] = None


def get_macro_aggregator() -> MacroAggregator:
    """Get singleton macro aggregator."""
    global _macro_aggregator
    if _macro_aggregator is None:
        _macro_aggregator = MacroAggregator()
    return _macro_aggregator
