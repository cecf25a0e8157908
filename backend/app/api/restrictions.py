"""Restriction verdict endpoints for display."""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from app.errors import EquivalenceError
from app.models.restrictions import ConflictVerdict, SubstitutionResult
from app.services.restrictions import get_restriction_classifier
from app.services.supabase import (
    get_foods_by_keys,
    get_substitution_mappings,
    get_user_restrictions,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/restrictions", tags=["restrictions"])


def _split_ids(raw: Optional[str]) -> list[str]:
    return [part.strip() for part in (raw or "").split(",") if part.strip()]


class FoodVerdict(BaseModel):
    food_id: str
    is_user_created: bool = False
    found: bool = True
    verdict: Optional[ConflictVerdict] = None


@router.get("/{user_id}/classify", response_model=list[FoodVerdict])
async def classify_foods(
    user_id: str,
    food_ids: Optional[str] = Query(None, description="Comma-separated global food ids"),
    user_food_ids: Optional[str] = Query(None, description="Comma-separated user-created food ids"),
) -> list[FoodVerdict]:
    """Highest-priority verdict for each requested food."""
    keys = [(fid, False) for fid in _split_ids(food_ids)] + [(fid, True) for fid in _split_ids(user_food_ids)]
    if not keys:
        return []

    try:
        catalog = await get_foods_by_keys(keys)
        profile = await get_user_restrictions(user_id)
    except EquivalenceError:
        raise
    except Exception as e:
        logger.error(f"Failed to load restrictions for {user_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    classifier = get_restriction_classifier()
    return [
        FoodVerdict(
            food_id=fid,
            is_user_created=user,
            found=(fid, user) in catalog,
            verdict=classifier.classify(catalog.get((fid, user)), profile),
        )
        for fid, user in keys
    ]


@router.get("/{user_id}/substitutions/{food_id}", response_model=SubstitutionResult)
async def substitutions(
    user_id: str,
    food_id: str,
    is_user_created: bool = Query(False),
) -> SubstitutionResult:
    """Safe replacements for a food that conflicts with the user's restrictions."""
    try:
        catalog = await get_foods_by_keys([(food_id, is_user_created)])
        food = catalog.get((food_id, is_user_created))
        if food is None:
            raise HTTPException(status_code=404, detail=f"Food {food_id} not found")

        profile = await get_user_restrictions(user_id)
        mappings = await get_substitution_mappings([food_id])
        catalog.update(await get_foods_by_keys(
            [(m.target_food_id, m.target_is_user_created) for m in mappings]
        ))
    except (HTTPException, EquivalenceError):
        raise
    except Exception as e:
        logger.error(f"Failed to load substitutions for {food_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    return get_restriction_classifier().safe_substitutions(food, profile, mappings, catalog)
