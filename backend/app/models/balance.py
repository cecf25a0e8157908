"""Wire models for the quantity balancing service."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .nutrition import safe_float


class BalanceIngredient(BaseModel):
    """`{foodId, quantity}` with optional lookup/locking hints."""

    model_config = ConfigDict(populate_by_name=True)

    food_id: str = Field(alias="foodId")
    quantity: float = 0
    is_user_created: bool = Field(default=False, alias="isUserCreated")
    locked: bool = False

    @field_validator("food_id", mode="before")
    @classmethod
    def _coerce_food_id(cls, v: Any) -> str:
        return str(v)

    @field_validator("quantity", mode="before")
    @classmethod
    def _coerce_quantity(cls, v: Any) -> float:
        return max(0.0, safe_float(v))


class BalanceTargets(BaseModel):
    proteins: float = 0
    carbs: float = 0
    fats: float = 0

    @field_validator("proteins", "carbs", "fats", mode="before")
    @classmethod
    def _non_negative(cls, v: Any) -> float:
        return max(0.0, safe_float(v))


class BalanceRequest(BaseModel):
    ingredients: list[BalanceIngredient]
    targets: BalanceTargets


class BalancedIngredient(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    food_id: str = Field(alias="foodId")
    quantity: float


class BalanceResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    balanced_ingredients: list[BalancedIngredient] = Field(alias="balancedIngredients")


class BalanceErrorResponse(BaseModel):
    error: str
    code: Optional[str] = None
