"""
Ledger persistence.

The ledger talks to the store through LedgerStore only. SupabaseLedgerStore
maps the models onto the tables shared with the web app: the source
reference becomes one of four nullable columns, recipe refs become
diet_plan_recipe_id / private_recipe_id.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Optional

import httpx
from postgrest.exceptions import APIError

from app.errors import ConflictError, PersistenceError
from app.models.equivalence import (
    ACTIVE_STATUSES,
    AdjustmentStatus,
    EquivalenceAdjustment,
    FreeMealSource,
    IngredientAdjustment,
    MealSlot,
    PlanRecipeSource,
    PrivateRecipeSource,
    RecipeKind,
    RecipeRef,
    ScheduledRecipe,
    SnackSource,
    SourceItemRef,
)
from app.models.nutrition import Ingredient, MacroTotals, safe_float
from app.services.macros import derive_calories
from app.services.supabase import TABLES, execute_query, get_supabase_client

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"

# Source kind -> equivalence_adjustments column
SOURCE_COLUMNS = {
    "free_meal": "source_free_recipe_occurrence_id",
    "snack": "source_daily_snack_log_id",
    "plan_recipe": "source_diet_plan_recipe_id",
    "private_recipe": "source_private_recipe_id",
}

_SOURCE_TYPES = {
    "free_meal": FreeMealSource,
    "snack": SnackSource,
    "plan_recipe": PlanRecipeSource,
    "private_recipe": PrivateRecipeSource,
}

RECIPE_COLUMNS = {
    RecipeKind.PLAN: "diet_plan_recipe_id",
    RecipeKind.PRIVATE: "private_recipe_id",
}

INGREDIENT_FIELDS = "food_id, user_created_food_id, grams"

MEAL_SLOT_SELECT = (
    "id, user_id, diet_plan_id, day_meal_id, "
    "target_calories, target_proteins, target_carbs, target_fats, "
    "day_meal:day_meal_id(name, display_order)"
)


class LedgerStore:
    """Storage operations the ledger needs. All methods may raise PersistenceError."""

    # Adjustments
    async def get_adjustment(self, adjustment_id: str) -> Optional[EquivalenceAdjustment]:
        raise NotImplementedError

    async def find_active_adjustment(
        self, meal_slot_id: str, log_date: date
    ) -> Optional[EquivalenceAdjustment]:
        raise NotImplementedError

    async def list_adjustments(self, user_id: str, log_date: date) -> list[EquivalenceAdjustment]:
        raise NotImplementedError

    async def list_adjustments_for_source(
        self, user_id: str, source: SourceItemRef
    ) -> list[EquivalenceAdjustment]:
        raise NotImplementedError

    async def list_stale_adjustments(self, pending_before: datetime) -> list[EquivalenceAdjustment]:
        """Pending rows created before the cutoff, plus every failed row."""
        raise NotImplementedError

    async def insert_adjustment(self, adjustment: EquivalenceAdjustment) -> EquivalenceAdjustment:
        """Insert and return the stored row. Raises ConflictError if the slot is taken."""
        raise NotImplementedError

    async def update_adjustment_status(
        self, adjustment_id: str, status: AdjustmentStatus, error_message: Optional[str] = None
    ) -> None:
        raise NotImplementedError

    async def delete_adjustment(self, adjustment_id: str) -> bool:
        raise NotImplementedError

    # Ingredient adjustments
    async def insert_ingredient_adjustments(
        self, rows: list[IngredientAdjustment]
    ) -> list[IngredientAdjustment]:
        raise NotImplementedError

    async def delete_ingredient_adjustments(self, adjustment_id: str) -> int:
        raise NotImplementedError

    async def list_ingredient_adjustments(
        self, adjustment_ids: list[str]
    ) -> list[IngredientAdjustment]:
        raise NotImplementedError

    # Meal slots, recipes and sources (read-only)
    async def get_meal_slot(self, meal_slot_id: str) -> Optional[MealSlot]:
        raise NotImplementedError

    async def list_meal_slots(self, user_id: str, diet_plan_id: Optional[str]) -> list[MealSlot]:
        raise NotImplementedError

    async def list_scheduled_recipes(self, slot: MealSlot, log_date: date) -> list[ScheduledRecipe]:
        raise NotImplementedError

    async def get_source_ingredients(
        self, source: SourceItemRef, user_id: str
    ) -> Optional[list[Ingredient]]:
        """Ingredients of the source item, or None if it does not exist or belongs to someone else."""
        raise NotImplementedError


# ============================================================================
# Row mapping
# ============================================================================


def adjustment_to_row(adjustment: EquivalenceAdjustment) -> dict:
    row = {
        "user_id": adjustment.user_id,
        "log_date": adjustment.log_date.isoformat(),
        "target_user_day_meal_id": adjustment.target_meal_slot_id,
        "adjustment_calories": adjustment.adjustment_macros.calories,
        "adjustment_proteins": adjustment.adjustment_macros.proteins,
        "adjustment_carbs": adjustment.adjustment_macros.carbs,
        "adjustment_fats": adjustment.adjustment_macros.fats,
        "status": adjustment.status.value,
        "error_message": adjustment.error_message,
    }
    for column in SOURCE_COLUMNS.values():
        row[column] = None
    row[SOURCE_COLUMNS[adjustment.source.kind]] = adjustment.source.id

    if adjustment.target_macros is not None:
        row.update({
            "target_calories": adjustment.target_macros.calories,
            "target_proteins": adjustment.target_macros.proteins,
            "target_carbs": adjustment.target_macros.carbs,
            "target_fats": adjustment.target_macros.fats,
        })
    return row


def adjustment_from_row(row: dict) -> EquivalenceAdjustment:
    set_sources = [kind for kind, column in SOURCE_COLUMNS.items() if row.get(column) is not None]
    if len(set_sources) != 1:
        raise PersistenceError(
            f"Adjustment {row.get('id')} has {len(set_sources)} source references",
            step="read_adjustment",
        )
    kind = set_sources[0]
    source = _SOURCE_TYPES[kind](id=row[SOURCE_COLUMNS[kind]])

    target = None
    if row.get("target_proteins") is not None:
        target = MacroTotals(
            calories=safe_float(row.get("target_calories")),
            proteins=safe_float(row.get("target_proteins")),
            carbs=safe_float(row.get("target_carbs")),
            fats=safe_float(row.get("target_fats")),
        )

    return EquivalenceAdjustment(
        id=row["id"],
        user_id=str(row["user_id"]),
        log_date=row["log_date"],
        target_meal_slot_id=row["target_user_day_meal_id"],
        source=source,
        adjustment_macros=MacroTotals(
            calories=safe_float(row.get("adjustment_calories")),
            proteins=safe_float(row.get("adjustment_proteins")),
            carbs=safe_float(row.get("adjustment_carbs")),
            fats=safe_float(row.get("adjustment_fats")),
        ),
        target_macros=target,
        status=AdjustmentStatus(row.get("status") or AdjustmentStatus.PENDING.value),
        error_message=row.get("error_message"),
        created_at=row.get("created_at"),
    )


def ingredient_adjustment_to_row(item: IngredientAdjustment) -> dict:
    row = {
        "equivalence_adjustment_id": item.equivalence_adjustment_id,
        "diet_plan_recipe_id": None,
        "private_recipe_id": None,
        "food_id": item.food_id,
        "is_user_created": item.is_user_created,
        "original_grams": item.original_quantity,
        "adjusted_grams": item.adjusted_quantity,
    }
    row[RECIPE_COLUMNS[item.recipe.kind]] = item.recipe.id
    return row


def ingredient_adjustment_from_row(row: dict) -> IngredientAdjustment:
    if row.get("private_recipe_id") is not None:
        recipe = RecipeRef(kind=RecipeKind.PRIVATE, id=row["private_recipe_id"])
    else:
        recipe = RecipeRef(kind=RecipeKind.PLAN, id=row["diet_plan_recipe_id"])
    return IngredientAdjustment(
        equivalence_adjustment_id=row["equivalence_adjustment_id"],
        recipe=recipe,
        food_id=row["food_id"],
        is_user_created=bool(row.get("is_user_created")),
        original_quantity=safe_float(row.get("original_grams")),
        adjusted_quantity=safe_float(row.get("adjusted_grams")),
    )


def ingredient_from_row(row: dict) -> Optional[Ingredient]:
    """Recipe ingredient rows reference either a global or a user food."""
    quantity = row.get("grams", row.get("quantity"))
    if row.get("food_id") is not None:
        return Ingredient(food_id=row["food_id"], is_user_created=False, quantity=quantity)
    if row.get("user_created_food_id") is not None:
        return Ingredient(food_id=row["user_created_food_id"], is_user_created=True, quantity=quantity)
    return None


def _ingredients(rows: Optional[list[dict]]) -> list[Ingredient]:
    parsed = (ingredient_from_row(r) for r in rows or [])
    return [i for i in parsed if i is not None]


def meal_slot_from_row(row: dict) -> MealSlot:
    day_meal = row.get("day_meal") or {}
    proteins = safe_float(row.get("target_proteins"))
    carbs = safe_float(row.get("target_carbs"))
    fats = safe_float(row.get("target_fats"))
    calories = row.get("target_calories")
    return MealSlot(
        id=row["id"],
        user_id=str(row["user_id"]),
        diet_plan_id=row.get("diet_plan_id"),
        day_meal_id=row.get("day_meal_id"),
        name=day_meal.get("name") or "",
        display_order=int(safe_float(day_meal.get("display_order"))),
        targets=MacroTotals(
            calories=derive_calories(proteins, carbs, fats) if calories is None else safe_float(calories),
            proteins=proteins,
            carbs=carbs,
            fats=fats,
        ),
    )


def _owned_by(row: Optional[dict], user_id: str) -> bool:
    return row is not None and str(row.get("user_id")) == str(user_id)


def _plan_recipe_ingredients(row: dict) -> list[Ingredient]:
    """Plan customizations replace the base recipe's ingredients when present."""
    custom = row.get("custom_ingredients") or []
    if custom:
        return _ingredients(custom)
    recipe = row.get("recipe") or {}
    return _ingredients(recipe.get("recipe_ingredients"))


# ============================================================================
# Supabase implementation
# ============================================================================


class SupabaseLedgerStore(LedgerStore):
    """LedgerStore on top of the Supabase tables."""

    def __init__(self, client=None):
        self.client = client or get_supabase_client()

    def _execute(self, step: str, query):
        return execute_query(step, query)

    def _first(self, step: str, query) -> Optional[dict]:
        result = self._execute(step, query.limit(1))
        return result.data[0] if result.data else None

    # =========================================================================
    # Adjustments
    # =========================================================================

    async def get_adjustment(self, adjustment_id: str) -> Optional[EquivalenceAdjustment]:
        row = self._first(
            "get_adjustment",
            self.client.table(TABLES["adjustments"]).select("*").eq("id", adjustment_id),
        )
        return adjustment_from_row(row) if row else None

    async def find_active_adjustment(
        self, meal_slot_id: str, log_date: date
    ) -> Optional[EquivalenceAdjustment]:
        row = self._first(
            "find_active_adjustment",
            self.client.table(TABLES["adjustments"])
            .select("*")
            .eq("target_user_day_meal_id", meal_slot_id)
            .eq("log_date", log_date.isoformat())
            .in_("status", [s.value for s in ACTIVE_STATUSES]),
        )
        return adjustment_from_row(row) if row else None

    async def list_adjustments(self, user_id: str, log_date: date) -> list[EquivalenceAdjustment]:
        result = self._execute(
            "list_adjustments",
            self.client.table(TABLES["adjustments"])
            .select("*")
            .eq("user_id", user_id)
            .eq("log_date", log_date.isoformat())
            .order("created_at"),
        )
        return [adjustment_from_row(r) for r in result.data or []]

    async def list_adjustments_for_source(
        self, user_id: str, source: SourceItemRef
    ) -> list[EquivalenceAdjustment]:
        result = self._execute(
            "list_adjustments_for_source",
            self.client.table(TABLES["adjustments"])
            .select("*")
            .eq("user_id", user_id)
            .eq(SOURCE_COLUMNS[source.kind], source.id),
        )
        return [adjustment_from_row(r) for r in result.data or []]

    async def list_stale_adjustments(self, pending_before: datetime) -> list[EquivalenceAdjustment]:
        table = TABLES["adjustments"]
        pending = self._execute(
            "list_stale_pending",
            self.client.table(table)
            .select("*")
            .eq("status", AdjustmentStatus.PENDING.value)
            .lt("created_at", pending_before.isoformat()),
        )
        failed = self._execute(
            "list_failed",
            self.client.table(table).select("*").eq("status", AdjustmentStatus.FAILED.value),
        )
        return [adjustment_from_row(r) for r in (pending.data or []) + (failed.data or [])]

    async def insert_adjustment(self, adjustment: EquivalenceAdjustment) -> EquivalenceAdjustment:
        query = self.client.table(TABLES["adjustments"]).insert(adjustment_to_row(adjustment))
        try:
            result = query.execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise ConflictError(
                    "This meal already has an equivalence adjustment for that day. Undo it first.",
                    detail=e.message,
                ) from e
            raise PersistenceError("Store write failed at insert_adjustment", step="insert_adjustment", detail=e.message) from e
        except httpx.HTTPError as e:
            raise PersistenceError("Store unreachable at insert_adjustment", step="insert_adjustment", detail=str(e)) from e

        if not result.data:
            raise PersistenceError("Adjustment insert returned no row", step="insert_adjustment")
        return adjustment_from_row(result.data[0])

    async def update_adjustment_status(
        self, adjustment_id: str, status: AdjustmentStatus, error_message: Optional[str] = None
    ) -> None:
        self._execute(
            "update_status",
            self.client.table(TABLES["adjustments"])
            .update({"status": status.value, "error_message": error_message})
            .eq("id", adjustment_id),
        )

    async def delete_adjustment(self, adjustment_id: str) -> bool:
        result = self._execute(
            "delete_adjustment",
            self.client.table(TABLES["adjustments"]).delete().eq("id", adjustment_id),
        )
        return bool(result.data)

    # =========================================================================
    # Ingredient adjustments
    # =========================================================================

    async def insert_ingredient_adjustments(
        self, rows: list[IngredientAdjustment]
    ) -> list[IngredientAdjustment]:
        if not rows:
            return []
        result = self._execute(
            "insert_ingredient_adjustments",
            self.client.table(TABLES["ingredient_adjustments"]).insert(
                [ingredient_adjustment_to_row(r) for r in rows]
            ),
        )
        return [ingredient_adjustment_from_row(r) for r in result.data or []]

    async def delete_ingredient_adjustments(self, adjustment_id: str) -> int:
        result = self._execute(
            "delete_ingredient_adjustments",
            self.client.table(TABLES["ingredient_adjustments"])
            .delete()
            .eq("equivalence_adjustment_id", adjustment_id),
        )
        return len(result.data or [])

    async def list_ingredient_adjustments(
        self, adjustment_ids: list[str]
    ) -> list[IngredientAdjustment]:
        if not adjustment_ids:
            return []
        result = self._execute(
            "list_ingredient_adjustments",
            self.client.table(TABLES["ingredient_adjustments"])
            .select("*")
            .in_("equivalence_adjustment_id", adjustment_ids),
        )
        return [ingredient_adjustment_from_row(r) for r in result.data or []]

    # =========================================================================
    # Meal slots, recipes, sources
    # =========================================================================

    async def get_meal_slot(self, meal_slot_id: str) -> Optional[MealSlot]:
        row = self._first(
            "get_meal_slot",
            self.client.table(TABLES["user_day_meals"]).select(MEAL_SLOT_SELECT).eq("id", meal_slot_id),
        )
        return meal_slot_from_row(row) if row else None

    async def list_meal_slots(self, user_id: str, diet_plan_id: Optional[str]) -> list[MealSlot]:
        query = self.client.table(TABLES["user_day_meals"]).select(MEAL_SLOT_SELECT).eq("user_id", user_id)
        if diet_plan_id is None:
            query = query.is_("diet_plan_id", "null")
        else:
            query = query.eq("diet_plan_id", diet_plan_id)
        result = self._execute("list_meal_slots", query)
        slots = [meal_slot_from_row(r) for r in result.data or []]
        return sorted(slots, key=lambda s: s.display_order)

    async def list_scheduled_recipes(self, slot: MealSlot, log_date: date) -> list[ScheduledRecipe]:
        """Plan recipes of the slot's day meal, plus private recipes planned that day."""
        recipes: list[ScheduledRecipe] = []

        if slot.diet_plan_id and slot.day_meal_id:
            plan_rows = self._execute(
                "list_plan_recipes",
                self.client.table(TABLES["plan_recipes"])
                .select(
                    "id, custom_name, "
                    f"custom_ingredients:diet_plan_recipe_ingredients({INGREDIENT_FIELDS}), "
                    f"recipe:recipe_id(name, recipe_ingredients({INGREDIENT_FIELDS}))"
                )
                .eq("diet_plan_id", slot.diet_plan_id)
                .eq("day_meal_id", slot.day_meal_id),
            )
            for row in plan_rows.data or []:
                recipes.append(ScheduledRecipe(
                    ref=RecipeRef(kind=RecipeKind.PLAN, id=row["id"]),
                    name=row.get("custom_name") or (row.get("recipe") or {}).get("name"),
                    ingredients=_plan_recipe_ingredients(row),
                ))

        planned = self.client.table(TABLES["planned_meals"]).select("private_recipe_id").eq(
            "user_id", slot.user_id
        ).eq("plan_date", log_date.isoformat())
        if slot.day_meal_id:
            planned = planned.eq("day_meal_id", slot.day_meal_id)
        if slot.diet_plan_id:
            planned = planned.eq("diet_plan_id", slot.diet_plan_id)
        planned_rows = self._execute("list_planned_meals", planned)

        private_ids = sorted({
            str(r["private_recipe_id"]) for r in planned_rows.data or [] if r.get("private_recipe_id") is not None
        })
        if private_ids:
            private_rows = self._execute(
                "list_private_recipes",
                self.client.table(TABLES["private_recipes"])
                .select(f"id, name, private_recipe_ingredients({INGREDIENT_FIELDS})")
                .in_("id", private_ids),
            )
            for row in private_rows.data or []:
                recipes.append(ScheduledRecipe(
                    ref=RecipeRef(kind=RecipeKind.PRIVATE, id=row["id"]),
                    name=row.get("name"),
                    ingredients=_ingredients(row.get("private_recipe_ingredients")),
                ))

        return recipes

    async def get_source_ingredients(
        self, source: SourceItemRef, user_id: str
    ) -> Optional[list[Ingredient]]:
        if source.kind == "free_meal":
            row = self._first(
                "get_free_meal",
                self.client.table(TABLES["free_recipe_occurrences"])
                .select(f"id, user_id, free_recipe:free_recipe_id(free_recipe_ingredients({INGREDIENT_FIELDS}))")
                .eq("id", source.id),
            )
            if not _owned_by(row, user_id):
                return None
            return _ingredients((row.get("free_recipe") or {}).get("free_recipe_ingredients"))

        if source.kind == "snack":
            row = self._first(
                "get_snack_log",
                self.client.table(TABLES["snack_logs"])
                .select(
                    "id, user_id, snack_occurrence:snack_occurrence_id("
                    f"snack:snack_id(snack_ingredients({INGREDIENT_FIELDS})))"
                )
                .eq("id", source.id),
            )
            if not _owned_by(row, user_id):
                return None
            snack = (row.get("snack_occurrence") or {}).get("snack") or {}
            return _ingredients(snack.get("snack_ingredients"))

        if source.kind == "plan_recipe":
            row = self._first(
                "get_plan_recipe",
                self.client.table(TABLES["plan_recipes"])
                .select(
                    "id, diet_plan:diet_plan_id(user_id), "
                    f"custom_ingredients:diet_plan_recipe_ingredients({INGREDIENT_FIELDS}), "
                    f"recipe:recipe_id(recipe_ingredients({INGREDIENT_FIELDS}))"
                )
                .eq("id", source.id),
            )
            # Plan recipes are owned through their diet plan
            if row is None or not _owned_by(row.get("diet_plan"), user_id):
                return None
            return _plan_recipe_ingredients(row)

        row = self._first(
            "get_private_recipe",
            self.client.table(TABLES["private_recipes"])
            .select(f"id, user_id, private_recipe_ingredients({INGREDIENT_FIELDS})")
            .eq("id", source.id),
        )
        if not _owned_by(row, user_id):
            return None
        return _ingredients(row.get("private_recipe_ingredients"))

# Singleton
_ledger_store: Optional[SupabaseLedgerStore] = None


def get_ledger_store() -> SupabaseLedgerStore:
    """Get singleton Supabase ledger store."""
    global _ledger_store
    if _ledger_store is None:
        _ledger_store = SupabaseLedgerStore()
    return _ledger_store
