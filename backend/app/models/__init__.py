"""Pydantic models for the equivalence ledger API."""

from .nutrition import (
    Food,
    FoodCatalog,
    FoodKey,
    FoodUnit,
    Ingredient,
    MacroTotals,
    index_foods,
)
from .restrictions import (
    ConflictType,
    ConflictVerdict,
    RestrictionProfile,
    SubstitutionMapping,
    SubstitutionResult,
)
from .equivalence import (
    AdjustmentStatus,
    CreateEquivalenceRequest,
    EquivalenceAdjustment,
    EquivalenceResult,
    IngredientAdjustment,
    MealSlot,
    RecipeKind,
    RecipeRef,
    ScheduledRecipe,
    SourceItemRef,
    UndoResult,
)
from .balance import (
    BalanceIngredient,
    BalanceRequest,
    BalanceResponse,
    BalanceTargets,
    BalancedIngredient,
)

__all__ = [
    # Nutrition
    "Food",
    "FoodCatalog",
    "FoodKey",
    "FoodUnit",
    "Ingredient",
    "MacroTotals",
    "index_foods",
    # Restrictions
    "ConflictType",
    "ConflictVerdict",
    "RestrictionProfile",
    "SubstitutionMapping",
    "SubstitutionResult",
    # Equivalence
    "AdjustmentStatus",
    "CreateEquivalenceRequest",
    "EquivalenceAdjustment",
    "EquivalenceResult",
    "IngredientAdjustment",
    "MealSlot",
    "RecipeKind",
    "RecipeRef",
    "ScheduledRecipe",
    "SourceItemRef",
    "UndoResult",
    # Balance
    "BalanceIngredient",
    "BalanceRequest",
    "BalanceResponse",
    "BalanceTargets",
    "BalancedIngredient",
]
