"""Equivalence ledger Pydantic models."""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from .nutrition import Ingredient, MacroTotals


class AdjustmentStatus(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    FAILED = "failed"


ACTIVE_STATUSES = (AdjustmentStatus.PENDING, AdjustmentStatus.APPLIED)


# ============================================================================
# Source item reference (exactly one kind)
# ============================================================================


class _SourceBase(BaseModel):
    id: str

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v):
        return str(v)


class FreeMealSource(_SourceBase):
    """A free-form meal occurrence."""

    kind: Literal["free_meal"] = "free_meal"


class SnackSource(_SourceBase):
    """A daily snack log."""

    kind: Literal["snack"] = "snack"


class PlanRecipeSource(_SourceBase):
    kind: Literal["plan_recipe"] = "plan_recipe"


class PrivateRecipeSource(_SourceBase):
    kind: Literal["private_recipe"] = "private_recipe"


SourceItemRef = Annotated[
    Union[FreeMealSource, SnackSource, PlanRecipeSource, PrivateRecipeSource],
    Field(discriminator="kind"),
]


# ============================================================================
# Recipes and meal slots
# ============================================================================


class RecipeKind(str, Enum):
    PLAN = "plan"
    PRIVATE = "private"


class RecipeRef(BaseModel):
    kind: RecipeKind
    id: str

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v):
        return str(v)

    @property
    def key(self) -> tuple[str, str]:
        return (self.kind.value, self.id)


class ScheduledRecipe(BaseModel):
    """A recipe planned in a meal slot, with its base ingredients."""

    ref: RecipeRef
    name: Optional[str] = None
    ingredients: list[Ingredient] = Field(default_factory=list)


class MealSlot(BaseModel):
    """A user's named meal (e.g. Breakfast) within a diet plan."""

    id: str
    user_id: str
    diet_plan_id: Optional[str] = None
    day_meal_id: Optional[str] = None
    name: str = ""
    display_order: int = 0
    targets: MacroTotals = Field(default_factory=MacroTotals)

    @field_validator("id", "diet_plan_id", "day_meal_id", mode="before")
    @classmethod
    def _coerce_ids(cls, v):
        return None if v is None else str(v)


# ============================================================================
# Ledger entries
# ============================================================================


class EquivalenceAdjustment(BaseModel):
    """One ledger entry: a source item's macros moved onto a meal slot."""

    id: Optional[str] = None
    user_id: str
    log_date: date
    target_meal_slot_id: str
    source: SourceItemRef
    adjustment_macros: MacroTotals
    target_macros: Optional[MacroTotals] = None  # Reduced target sent to the solver
    status: AdjustmentStatus = AdjustmentStatus.PENDING
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("id", "target_meal_slot_id", mode="before")
    @classmethod
    def _coerce_ids(cls, v):
        return None if v is None else str(v)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class IngredientAdjustment(BaseModel):
    """A solver-changed quantity for one (recipe, food) under an adjustment."""

    equivalence_adjustment_id: str
    recipe: RecipeRef
    food_id: str
    is_user_created: bool = False
    original_quantity: float = 0
    adjusted_quantity: float

    @field_validator("equivalence_adjustment_id", "food_id", mode="before")
    @classmethod
    def _coerce_ids(cls, v):
        return str(v)

    @property
    def index_key(self) -> tuple[str, str, str, str, bool]:
        return (
            self.equivalence_adjustment_id,
            self.recipe.kind.value,
            self.recipe.id,
            self.food_id,
            self.is_user_created,
        )


# ============================================================================
# API payloads
# ============================================================================


class CreateEquivalenceRequest(BaseModel):
    user_id: str
    source: SourceItemRef
    target_meal_slot_id: str
    log_date: date


class EquivalenceResult(BaseModel):
    """Returned after create so the caller can update without a reload."""

    adjustment: EquivalenceAdjustment
    ingredient_adjustments: list[IngredientAdjustment] = Field(default_factory=list)


class UndoResult(BaseModel):
    adjustment_id: str
    removed: bool
    ingredient_rows_removed: int = 0


class TargetCandidate(BaseModel):
    meal_slot: MealSlot
    log_date: date
    day_label: Literal["today", "tomorrow"]
    active_adjustment: Optional[EquivalenceAdjustment] = None


class DayAdjustments(BaseModel):
    log_date: date
    adjustments: list[EquivalenceAdjustment] = Field(default_factory=list)
    ingredient_adjustments: list[IngredientAdjustment] = Field(default_factory=list)


class AdjustedRecipe(BaseModel):
    """A recipe as displayed: adjusted quantities substituted in."""

    ref: RecipeRef
    ingredients: list[Ingredient]
    macros: MacroTotals
    adjusted_by: Optional[str] = None  # Equivalence adjustment id
