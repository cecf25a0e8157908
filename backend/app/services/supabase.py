"""Supabase client service and catalog reads."""

import logging
from functools import lru_cache
from typing import Iterable

import httpx
from postgrest.exceptions import APIError
from supabase import create_client, Client

from app.config import get_settings
from app.errors import PersistenceError
from app.models.nutrition import (
    ConditionLink,
    Food,
    FoodCatalog,
    FoodKey,
    FoodUnit,
    MacroTotals,
    SensitivityLink,
    index_foods,
    safe_float,
)
from app.models.restrictions import (
    ConflictContext,
    RestrictionProfile,
    SubstitutionMapping,
)
from app.services.macros import derive_calories

logger = logging.getLogger(__name__)
settings = get_settings()


@lru_cache
def get_supabase_client() -> Client:
    """Get Supabase client with service role key (admin access)."""
    return create_client(
        settings.supabase_url,
        settings.supabase_service_role_key,
    )


def execute_query(step: str, query):
    """Run a query, turning client and transport failures into PersistenceError."""
    try:
        return query.execute()
    except APIError as e:
        logger.error(f"Store step {step} failed: {e.message}")
        raise PersistenceError(f"Store query failed at {step}", step=step, detail=e.message) from e
    except httpx.HTTPError as e:
        logger.error(f"Store step {step} unreachable: {e}")
        raise PersistenceError(f"Store unreachable at {step}", step=step, detail=str(e)) from e


# Table names (match the web app)
TABLES = {
    "adjustments": "equivalence_adjustments",
    "ingredient_adjustments": "daily_ingredient_adjustments",
    "user_day_meals": "user_day_meals",
    "day_meals": "day_meals",
    "plan_recipes": "diet_plan_recipes",
    "plan_recipe_ingredients": "diet_plan_recipe_ingredients",
    "planned_meals": "planned_meals",
    "private_recipes": "private_recipes",
    "private_recipe_ingredients": "private_recipe_ingredients",
    "free_recipe_occurrences": "free_recipe_occurrences",
    "free_recipe_ingredients": "free_recipe_ingredients",
    "snack_logs": "daily_snack_logs",
    "snack_occurrences": "snack_occurrences",
    "snack_ingredients": "snack_ingredients",
    "food": "food",
    "user_foods": "user_created_foods",
    "user_sensitivities": "user_sensitivities",
    "user_conditions": "user_medical_conditions",
    "user_food_restrictions": "user_individual_food_restrictions",
    "preferred_foods": "preferred_foods",
    "non_preferred_foods": "non_preferred_foods",
    "substitutions": "food_substitution_mappings",
}

FOOD_SELECT = (
    "id, name, food_unit, calories, proteins, total_carbs, total_fats, "
    "food_to_food_groups(food_group_id), "
    "food_sensitivities(sensitivity_id, sensitivities(id, name)), "
    "food_medical_conditions(condition_id, relation_type, medical_conditions(id, name))"
)

USER_FOOD_SELECT = (
    "id, name, food_unit, calories, proteins, total_carbs, total_fats, "
    "user_created_food_sensitivities(sensitivity_id, sensitivities(id, name))"
)


# ============================================================================
# Food catalog
# ============================================================================


def food_from_row(row: dict, is_user_created: bool = False) -> Food:
    """Build a Food from a catalog row; calories are derived when missing."""
    proteins = safe_float(row.get("proteins"))
    carbs = safe_float(row.get("total_carbs"))
    fats = safe_float(row.get("total_fats"))
    calories = row.get("calories")
    calories = derive_calories(proteins, carbs, fats) if calories is None else safe_float(calories)

    sensitivity_rows = row.get("food_sensitivities") or row.get("user_created_food_sensitivities") or []
    sensitivities = []
    for s in sensitivity_rows:
        nested = s.get("sensitivities") or {}
        sensitivity_id = s.get("sensitivity_id") or nested.get("id")
        if sensitivity_id is not None:
            sensitivities.append(SensitivityLink(sensitivity_id=str(sensitivity_id), name=nested.get("name")))

    conditions = []
    for c in row.get("food_medical_conditions") or []:
        nested = c.get("medical_conditions") or {}
        condition_id = c.get("condition_id") or nested.get("id")
        if condition_id is not None:
            conditions.append(ConditionLink(
                condition_id=str(condition_id),
                relation=c.get("relation_type"),
                name=nested.get("name"),
            ))

    return Food(
        id=row["id"],
        name=row.get("name") or "",
        unit=FoodUnit.parse(row.get("food_unit")),
        macros_per_100=MacroTotals(calories=calories, proteins=proteins, carbs=carbs, fats=fats),
        is_user_created=is_user_created,
        group_ids=[str(g["food_group_id"]) for g in row.get("food_to_food_groups") or [] if g.get("food_group_id")],
        sensitivities=sensitivities,
        conditions=conditions,
    )


async def get_foods_by_keys(keys: Iterable[FoodKey]) -> FoodCatalog:
    """Load global and user-created foods in two queries."""
    keys = list(keys)
    global_ids = sorted({fid for fid, user in keys if not user})
    user_ids = sorted({fid for fid, user in keys if user})
    if not keys:
        return {}

    client = get_supabase_client()
    foods: list[Food] = []

    if global_ids:
        result = execute_query(
            "load_foods", client.table(TABLES["food"]).select(FOOD_SELECT).in_("id", global_ids)
        )
        foods.extend(food_from_row(r) for r in result.data or [])

    if user_ids:
        result = execute_query(
            "load_user_foods", client.table(TABLES["user_foods"]).select(USER_FOOD_SELECT).in_("id", user_ids)
        )
        foods.extend(food_from_row(r, is_user_created=True) for r in result.data or [])

    catalog = index_foods(foods)
    missing = len(set(keys) - set(catalog))
    if missing:
        logger.warning(f"{missing} food(s) not found in catalog")
    return catalog


# ============================================================================
# Restrictions
# ============================================================================


def _opt_str(value) -> str | None:
    return None if value is None else str(value)


def _ids(rows: list[dict] | None, column: str) -> set[str]:
    return {str(r[column]) for r in rows or [] if r.get(column) is not None}


async def get_user_restrictions(user_id: str) -> RestrictionProfile:
    """Load a user's restriction profile.

    Medical conditions feed both avoid and recommend sets; the food side
    of the link decides which relation applies.
    """
    client = get_supabase_client()

    def by_user(table: str, column: str) -> set[str]:
        result = execute_query(f"load_{table}", client.table(TABLES[table]).select(column).eq("user_id", user_id))
        return _ids(result.data, column)

    conditions = by_user("user_conditions", "condition_id")
    return RestrictionProfile(
        user_id=user_id,
        sensitivities=by_user("user_sensitivities", "sensitivity_id"),
        avoided_medical_conditions=conditions,
        recommended_medical_conditions=set(conditions),
        individually_restricted_foods=by_user("user_food_restrictions", "food_id"),
        preferred_foods=by_user("preferred_foods", "food_id"),
        non_preferred_foods=by_user("non_preferred_foods", "food_id"),
    )


async def get_substitution_mappings(source_food_ids: Iterable[str]) -> list[SubstitutionMapping]:
    """Substitution mappings whose source is one of the given foods."""
    ids = sorted({str(i) for i in source_food_ids})
    if not ids:
        return []

    client = get_supabase_client()
    result = execute_query(
        "load_substitutions",
        client.table(TABLES["substitutions"])
        .select("*")
        .in_("source_food_id", ids)
        .order("confidence_score", desc=True),
    )

    mappings = []
    for row in result.data or []:
        metadata = row.get("metadata") or {}
        contexts = [
            ConflictContext(
                type=str(ctx["type"]),
                sensitivity_id=_opt_str(ctx.get("sensitivity_id")),
                condition_id=_opt_str(ctx.get("condition_id")),
                relation_type=ctx.get("relation_type"),
            )
            for ctx in metadata.get("conflict_contexts") or []
            if ctx.get("type")
        ]
        mappings.append(SubstitutionMapping(
            id=str(row["id"]) if row.get("id") is not None else None,
            source_food_id=str(row["source_food_id"]),
            target_food_id=str(row["target_food_id"]),
            target_is_user_created=bool(row.get("target_is_user_created")),
            confidence_score=safe_float(row.get("confidence_score")),
            is_automatic=bool(row.get("is_automatic")),
            conflict_contexts=contexts,
        ))
    return mappings
