"""
Equivalence adjustment API endpoints.

Create/undo adjustments and read them back for display. Ledger errors
propagate to the app-level handler, which renders them with their status
code and retryable flag.
"""

import logging
from datetime import date
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from app.api.deps import get_ledger
from app.errors import EquivalenceError
from app.models.equivalence import (
    AdjustedRecipe,
    CreateEquivalenceRequest,
    DayAdjustments,
    EquivalenceAdjustment,
    EquivalenceResult,
    FreeMealSource,
    PlanRecipeSource,
    PrivateRecipeSource,
    ScheduledRecipe,
    SnackSource,
    TargetCandidate,
    UndoResult,
)
from app.services.equivalence import EquivalenceLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/equivalence", tags=["equivalence"])

SourceKind = Literal["free_meal", "snack", "plan_recipe", "private_recipe"]

_SOURCES = {
    "free_meal": FreeMealSource,
    "snack": SnackSource,
    "plan_recipe": PlanRecipeSource,
    "private_recipe": PrivateRecipeSource,
}


def _unexpected(action: str, e: Exception) -> HTTPException:
    logger.exception(f"Unexpected error during {action}")
    return HTTPException(status_code=500, detail=str(e))


# ============================================================================
# Create / Undo
# ============================================================================

@router.post("", response_model=EquivalenceResult, status_code=201)
async def create_adjustment(
    request: CreateEquivalenceRequest,
    ledger: EquivalenceLedger = Depends(get_ledger),
) -> EquivalenceResult:
    """Move a logged item's macros onto a meal slot and rebalance its recipes.

    409 if the slot already has an adjustment for that day (undo it first).
    502/503 are retryable; nothing is left behind in either case.
    """
    try:
        return await ledger.create(request)
    except EquivalenceError:
        raise
    except Exception as e:
        raise _unexpected("create", e)


class UndoBySourceResponse(BaseModel):
    undone: list[UndoResult]


@router.delete("/by-source", response_model=UndoBySourceResponse)
async def undo_by_source(
    user_id: str = Query(...),
    source_kind: SourceKind = Query(...),
    source_id: str = Query(...),
    ledger: EquivalenceLedger = Depends(get_ledger),
) -> UndoBySourceResponse:
    """Undo whatever adjustment was created from a source item."""
    source = _SOURCES[source_kind](id=source_id)
    try:
        return UndoBySourceResponse(undone=await ledger.undo_for_source(user_id, source))
    except EquivalenceError:
        raise
    except Exception as e:
        raise _unexpected("undo by source", e)


@router.delete("/{adjustment_id}", response_model=UndoResult)
async def undo_adjustment(
    adjustment_id: str,
    user_id: Optional[str] = Query(None),
    ledger: EquivalenceLedger = Depends(get_ledger),
) -> UndoResult:
    """Undo an adjustment. Calling it again is a no-op."""
    try:
        return await ledger.undo(adjustment_id, user_id)
    except EquivalenceError:
        raise
    except Exception as e:
        raise _unexpected("undo", e)


# ============================================================================
# Reads
# ============================================================================

class ActiveAdjustmentResponse(BaseModel):
    adjustment: Optional[EquivalenceAdjustment] = None


@router.get("/active", response_model=ActiveAdjustmentResponse)
async def get_active_adjustment(
    user_id: str = Query(...),
    meal_slot_id: str = Query(...),
    log_date: date = Query(...),
    ledger: EquivalenceLedger = Depends(get_ledger),
) -> ActiveAdjustmentResponse:
    """The adjustment covering a meal slot on a date, if any."""
    adjustment = await ledger.get_active_adjustment(meal_slot_id, log_date)
    if adjustment is not None and adjustment.user_id != user_id:
        adjustment = None
    return ActiveAdjustmentResponse(adjustment=adjustment)


class SlotStatusResponse(BaseModel):
    writable: bool = True


@router.get("/slot-status", response_model=SlotStatusResponse)
async def get_slot_status(
    user_id: str = Query(...),
    meal_slot_id: str = Query(...),
    log_date: date = Query(...),
    ledger: EquivalenceLedger = Depends(get_ledger),
) -> SlotStatusResponse:
    """Check before editing a slot's recipes. 423 while an adjustment is being applied."""
    await ledger.assert_slot_writable(meal_slot_id, log_date, user_id=user_id)
    return SlotStatusResponse()


@router.get("/day", response_model=DayAdjustments)
async def get_day_adjustments(
    user_id: str = Query(...),
    log_date: date = Query(...),
    ledger: EquivalenceLedger = Depends(get_ledger),
) -> DayAdjustments:
    """Applied adjustments for a day with their ingredient deltas."""
    return await ledger.get_day_adjustments(user_id, log_date)


@router.get("/candidates", response_model=list[TargetCandidate])
async def list_candidates(
    user_id: str = Query(...),
    source_date: date = Query(...),
    source_meal_slot_id: Optional[str] = Query(None),
    diet_plan_id: Optional[str] = Query(None),
    ledger: EquivalenceLedger = Depends(get_ledger),
) -> list[TargetCandidate]:
    """Meal slots today (from the source slot on) and tomorrow."""
    return await ledger.list_target_candidates(user_id, source_meal_slot_id, source_date, diet_plan_id)


class AdjustedRecipesRequest(BaseModel):
    user_id: str
    meal_slot_id: str
    log_date: date
    recipes: Optional[list[ScheduledRecipe]] = None  # Defaults to the slot's scheduled recipes


@router.post("/recipes/adjusted", response_model=list[AdjustedRecipe])
async def adjusted_recipes(
    request: AdjustedRecipesRequest,
    ledger: EquivalenceLedger = Depends(get_ledger),
) -> list[AdjustedRecipe]:
    """Recipes with adjusted quantities substituted in and macros recomputed."""
    return await ledger.adjusted_recipes(
        request.user_id, request.meal_slot_id, request.log_date, request.recipes
    )
