"""
Equivalence ledger.

Moves the macro cost of a logged item (free meal, snack, recipe) onto a
reduced target for a later meal slot, then rebalances every recipe planned
in that slot against the reduced target.

Create runs as a saga over a store with no multi-row transactions:

    insert adjustment (pending)
      -> load recipes + solve
      -> insert ingredient adjustments
      -> flip to applied

Any failure after the insert runs the compensating path (mark failed,
delete ingredient rows, delete the adjustment) before the error surfaces.
If compensation itself fails, the row is left failed or pending and the
sweeper removes it later.

Undo never re-solves: deleting the ingredient rows restores the base
quantities because the read path only overlays rows that exist.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, Sequence

from app.config import get_settings
from app.errors import (
    BusyError,
    ConflictError,
    EquivalenceError,
    NotFoundError,
    PersistenceError,
    SolverError,
    ValidationError,
)
from app.models.balance import BalanceIngredient, BalanceTargets
from app.models.equivalence import (
    AdjustedRecipe,
    AdjustmentStatus,
    CreateEquivalenceRequest,
    DayAdjustments,
    EquivalenceAdjustment,
    EquivalenceResult,
    IngredientAdjustment,
    MealSlot,
    RecipeRef,
    ScheduledRecipe,
    SourceItemRef,
    TargetCandidate,
    UndoResult,
)
from app.models.nutrition import FoodCatalog, FoodKey, Ingredient, MacroTotals
from app.models.restrictions import RestrictionProfile
from app.services.ledger_store import LedgerStore
from app.services.macros import MacroAggregator, get_macro_aggregator
from app.services.restrictions import RestrictionClassifier, get_restriction_classifier
from app.services.solver import QuantitySolver, split_by_eligibility

logger = logging.getLogger(__name__)

# Solver output is stored to 0.1 g; smaller changes are not worth a row
QUANTITY_EPSILON = 0.05

FoodLoader = Callable[[list[FoodKey]], Awaitable[FoodCatalog]]
RestrictionLoader = Callable[[str], Awaitable[RestrictionProfile]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# ============================================================================
# Read-path overlay
# ============================================================================


class AdjustmentIndex:
    """O(1) lookup of adjusted quantities for display.

    Rows are keyed by (adjustment id, recipe kind, recipe id, food key);
    adjustments by the (meal slot, date) they cover. Only applied
    adjustments are indexed.
    """

    def __init__(
        self,
        adjustments: Sequence[EquivalenceAdjustment],
        ingredient_adjustments: Sequence[IngredientAdjustment],
    ):
        self.by_slot: dict[tuple[str, date], EquivalenceAdjustment] = {
            (a.target_meal_slot_id, a.log_date): a
            for a in adjustments
            if a.status == AdjustmentStatus.APPLIED and a.id is not None
        }
        self.rows: dict[tuple[str, str, str, str, bool], IngredientAdjustment] = {
            r.index_key: r for r in ingredient_adjustments
        }

    def adjustment_for(self, meal_slot_id: str, log_date: date) -> Optional[EquivalenceAdjustment]:
        return self.by_slot.get((meal_slot_id, log_date))

    def lookup(self, adjustment_id: str, recipe: RecipeRef, food_key: FoodKey) -> Optional[IngredientAdjustment]:
        food_id, is_user_created = food_key
        return self.rows.get((adjustment_id, recipe.kind.value, recipe.id, food_id, is_user_created))

    def overlay(
        self, recipe: ScheduledRecipe, meal_slot_id: str, log_date: date
    ) -> tuple[list[Ingredient], Optional[str]]:
        """Recipe ingredients with adjusted quantities substituted in.

        A row covers every line of its food in the recipe (lines are merged
        before solving), so repeated lines share the adjusted total in
        proportion to their base quantities.
        """
        adjustment = self.adjustment_for(meal_slot_id, log_date)
        if adjustment is None:
            return list(recipe.ingredients), None

        base_totals: dict[FoodKey, float] = {}
        for ingredient in recipe.ingredients:
            base_totals[ingredient.food_key] = base_totals.get(ingredient.food_key, 0.0) + ingredient.quantity

        ingredients = []
        seen: set[FoodKey] = set()
        for ingredient in recipe.ingredients:
            key = ingredient.food_key
            row = self.lookup(adjustment.id, recipe.ref, key)
            if row is not None:
                total = base_totals[key]
                if total > 0:
                    quantity = row.adjusted_quantity * ingredient.quantity / total
                else:
                    # All lines at zero: the first one carries the adjusted total
                    quantity = 0.0 if key in seen else row.adjusted_quantity
                ingredient = ingredient.model_copy(update={"quantity": quantity})
            seen.add(key)
            ingredients.append(ingredient)
        return ingredients, adjustment.id


def _merge_positions(recipes: Sequence[ScheduledRecipe]) -> list[tuple[RecipeRef, Ingredient]]:
    """Flatten recipes into (recipe, ingredient), merging repeated foods per recipe."""
    merged: dict[tuple, tuple[RecipeRef, Ingredient]] = {}
    for recipe in recipes:
        for ingredient in recipe.ingredients:
            key = (recipe.ref.key, ingredient.food_key)
            if key in merged:
                ref, existing = merged[key]
                merged[key] = (ref, existing.model_copy(
                    update={"quantity": existing.quantity + ingredient.quantity}
                ))
            else:
                merged[key] = (recipe.ref, ingredient)
    return list(merged.values())


# ============================================================================
# Ledger
# ============================================================================


class EquivalenceLedger:
    """Creates, applies and undoes equivalence adjustments."""

    def __init__(
        self,
        store: LedgerStore,
        solver: QuantitySolver,
        load_foods: FoodLoader,
        load_restrictions: RestrictionLoader,
        classifier: Optional[RestrictionClassifier] = None,
        aggregator: Optional[MacroAggregator] = None,
        pending_timeout: Optional[timedelta] = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.solver = solver
        self.load_foods = load_foods
        self.load_restrictions = load_restrictions
        self.classifier = classifier or get_restriction_classifier()
        self.aggregator = aggregator or get_macro_aggregator()
        self.pending_timeout = pending_timeout or timedelta(minutes=get_settings().pending_timeout_minutes)
        self.now = now

    def is_stale(self, adjustment: EquivalenceAdjustment) -> bool:
        """A pending row older than the timeout is treated as failed."""
        if adjustment.status != AdjustmentStatus.PENDING or adjustment.created_at is None:
            return False
        return _as_utc(adjustment.created_at) < self.now() - self.pending_timeout

    # =========================================================================
    # Create
    # =========================================================================

    async def create(self, request: CreateEquivalenceRequest) -> EquivalenceResult:
        """Record an adjustment and rebalance the target slot's recipes."""
        slot = await self.store.get_meal_slot(request.target_meal_slot_id)
        if slot is None or slot.user_id != request.user_id:
            raise ValidationError(f"Target meal slot {request.target_meal_slot_id} not found")

        existing = await self.store.find_active_adjustment(slot.id, request.log_date)
        if existing is not None:
            if self.is_stale(existing):
                logger.warning(f"Clearing stale pending adjustment {existing.id} before create")
                if not await self._compensate(existing.id, "Pending adjustment timed out"):
                    raise BusyError("A previous adjustment for this meal is still being cleaned up")
            else:
                raise ConflictError(
                    "This meal already has an equivalence adjustment for that day. Undo it first."
                )

        snapshot = await self._source_macros(request.source, request.user_id)
        reduced = slot.targets.minus_clamped(snapshot)

        adjustment = await self.store.insert_adjustment(EquivalenceAdjustment(
            user_id=request.user_id,
            log_date=request.log_date,
            target_meal_slot_id=slot.id,
            source=request.source,
            adjustment_macros=snapshot,
            target_macros=reduced,
            status=AdjustmentStatus.PENDING,
        ))
        logger.info(
            f"Adjustment {adjustment.id} pending: slot={slot.id} date={request.log_date} "
            f"source={request.source.kind}:{request.source.id}"
        )

        try:
            rows = await self._apply(adjustment, slot, request.log_date, reduced)
        except asyncio.CancelledError:
            logger.warning(f"Adjustment {adjustment.id} cancelled, compensating")
            await asyncio.shield(self._compensate(adjustment.id, "Cancelled"))
            raise
        except EquivalenceError as e:
            await self._compensate(adjustment.id, e.message)
            raise
        except Exception as e:
            logger.exception(f"Unexpected failure applying adjustment {adjustment.id}")
            await self._compensate(adjustment.id, str(e))
            raise PersistenceError("Adjustment could not be applied", step="apply", detail=str(e)) from e

        logger.info(f"Adjustment {adjustment.id} applied with {len(rows)} ingredient change(s)")
        applied = adjustment.model_copy(update={"status": AdjustmentStatus.APPLIED, "error_message": None})
        return EquivalenceResult(adjustment=applied, ingredient_adjustments=rows)

    async def _source_macros(self, source: SourceItemRef, user_id: str) -> MacroTotals:
        ingredients = await self.store.get_source_ingredients(source, user_id)
        if ingredients is None:
            raise ValidationError(f"Source {source.kind} {source.id} not found")

        catalog = await self.load_foods(list({i.food_key for i in ingredients}))
        snapshot = self.aggregator.aggregate(ingredients, catalog)
        if snapshot.is_zero():
            raise ValidationError("Source item has no resolvable macros; nothing to compensate")
        return snapshot

    async def _apply(
        self,
        adjustment: EquivalenceAdjustment,
        slot: MealSlot,
        log_date: date,
        reduced: MacroTotals,
    ) -> list[IngredientAdjustment]:
        """Forward steps after the pending insert."""
        recipes = await self.store.list_scheduled_recipes(slot, log_date)
        positions = _merge_positions(recipes)

        rows: list[IngredientAdjustment] = []
        if positions:
            ingredients = [ingredient for _, ingredient in positions]
            catalog = await self.load_foods(list({i.food_key for i in ingredients}))
            profile = await self.load_restrictions(adjustment.user_id)

            eligible, held = split_by_eligibility(ingredients, catalog, profile, self.classifier)
            held_macros = self.aggregator.aggregate([ingredients[i] for i in held], catalog)
            target = reduced.minus_clamped(held_macros)

            if held:
                logger.info(f"Adjustment {adjustment.id}: holding {len(held)} restricted ingredient(s)")

            if eligible:
                request = [
                    BalanceIngredient(
                        food_id=ingredients[i].food_id,
                        quantity=ingredients[i].quantity,
                        is_user_created=ingredients[i].is_user_created,
                    )
                    for i in eligible
                ]
                balanced = await self.solver.solve(
                    request,
                    BalanceTargets(proteins=target.proteins, carbs=target.carbs, fats=target.fats),
                )
                if len(balanced) != len(request):
                    raise SolverError(
                        f"Solver returned {len(balanced)} ingredients for {len(request)} requested",
                        reason="mismatch",
                    )
                rows = self._changed_rows(adjustment.id, [positions[i] for i in eligible], balanced)

        if rows:
            await self.store.insert_ingredient_adjustments(rows)
        await self.store.update_adjustment_status(adjustment.id, AdjustmentStatus.APPLIED)
        return rows

    @staticmethod
    def _changed_rows(adjustment_id, positions, balanced) -> list[IngredientAdjustment]:
        rows = []
        for (recipe, ingredient), result in zip(positions, balanced):
            if result.food_id != ingredient.food_id:
                raise SolverError(
                    f"Solver returned food {result.food_id} where {ingredient.food_id} was expected",
                    reason="mismatch",
                )
            adjusted = round(max(0.0, result.quantity), 1)
            if abs(adjusted - ingredient.quantity) < QUANTITY_EPSILON:
                continue
            rows.append(IngredientAdjustment(
                equivalence_adjustment_id=adjustment_id,
                recipe=recipe,
                food_id=ingredient.food_id,
                is_user_created=ingredient.is_user_created,
                original_quantity=ingredient.quantity,
                adjusted_quantity=adjusted,
            ))
        return rows

    async def _compensate(self, adjustment_id: str, reason: str) -> bool:
        """Undo every write made for an adjustment. Returns False if cleanup failed."""
        logger.warning(f"Compensating adjustment {adjustment_id}: {reason}")
        step = "mark_failed"
        try:
            await self.store.update_adjustment_status(adjustment_id, AdjustmentStatus.FAILED, reason[:500])
            step = "delete_ingredient_adjustments"
            await self.store.delete_ingredient_adjustments(adjustment_id)
            step = "delete_adjustment"
            await self.store.delete_adjustment(adjustment_id)
        except EquivalenceError as e:
            logger.error(
                f"Cleanup of adjustment {adjustment_id} failed at {step}, left for the sweeper: {e.message}"
            )
            return False
        return True

    # =========================================================================
    # Undo
    # =========================================================================

    async def undo(self, adjustment_id: str, user_id: Optional[str] = None) -> UndoResult:
        """Delete an adjustment and its ingredient rows. Safe to call twice."""
        adjustment = await self.store.get_adjustment(adjustment_id)
        if adjustment is None:
            return UndoResult(adjustment_id=adjustment_id, removed=False)
        if user_id is not None and adjustment.user_id != user_id:
            raise NotFoundError(f"Adjustment {adjustment_id} not found")
        if adjustment.status == AdjustmentStatus.PENDING and not self.is_stale(adjustment):
            raise BusyError("This adjustment is still being applied. Try again shortly.")

        removed_rows = await self.store.delete_ingredient_adjustments(adjustment_id)
        removed = await self.store.delete_adjustment(adjustment_id)
        logger.info(f"Adjustment {adjustment_id} undone ({removed_rows} ingredient row(s))")
        return UndoResult(adjustment_id=adjustment_id, removed=removed, ingredient_rows_removed=removed_rows)

    async def undo_for_source(self, user_id: str, source: SourceItemRef) -> list[UndoResult]:
        """Undo every adjustment created from a source item."""
        adjustments = await self.store.list_adjustments_for_source(user_id, source)
        return [await self.undo(a.id, user_id) for a in adjustments]

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_active_adjustment(self, meal_slot_id: str, log_date: date) -> Optional[EquivalenceAdjustment]:
        """The adjustment covering a slot on a date, if any. Stale pending rows do not count."""
        adjustment = await self.store.find_active_adjustment(meal_slot_id, log_date)
        if adjustment is None or self.is_stale(adjustment):
            return None
        return adjustment

    async def get_day_adjustments(self, user_id: str, log_date: date) -> DayAdjustments:
        """Applied adjustments for a day and their ingredient rows."""
        adjustments = [
            a for a in await self.store.list_adjustments(user_id, log_date)
            if a.status == AdjustmentStatus.APPLIED
        ]
        rows = await self.store.list_ingredient_adjustments([a.id for a in adjustments])
        return DayAdjustments(log_date=log_date, adjustments=adjustments, ingredient_adjustments=rows)

    async def build_index(self, user_id: str, log_dates: Sequence[date]) -> AdjustmentIndex:
        adjustments: list[EquivalenceAdjustment] = []
        rows: list[IngredientAdjustment] = []
        for log_date in dict.fromkeys(log_dates):
            day = await self.get_day_adjustments(user_id, log_date)
            adjustments.extend(day.adjustments)
            rows.extend(day.ingredient_adjustments)
        return AdjustmentIndex(adjustments, rows)

    async def adjusted_recipes(
        self,
        user_id: str,
        meal_slot_id: str,
        log_date: date,
        recipes: Optional[list[ScheduledRecipe]] = None,
    ) -> list[AdjustedRecipe]:
        """Recipes of a slot as displayed, with macros recomputed."""
        slot = await self.store.get_meal_slot(meal_slot_id)
        if slot is None or slot.user_id != user_id:
            raise NotFoundError(f"Meal slot {meal_slot_id} not found")
        if recipes is None:
            recipes = await self.store.list_scheduled_recipes(slot, log_date)

        index = await self.build_index(user_id, [log_date])
        catalog = await self.load_foods(list({i.food_key for r in recipes for i in r.ingredients}))

        adjusted = []
        for recipe in recipes:
            ingredients, adjusted_by = index.overlay(recipe, slot.id, log_date)
            adjusted.append(AdjustedRecipe(
                ref=recipe.ref,
                ingredients=ingredients,
                macros=self.aggregator.aggregate(ingredients, catalog),
                adjusted_by=adjusted_by,
            ))
        return adjusted

    async def list_target_candidates(
        self,
        user_id: str,
        source_meal_slot_id: Optional[str],
        source_date: date,
        diet_plan_id: Optional[str] = None,
    ) -> list[TargetCandidate]:
        """Slots an item logged in the source slot may be compensated against.

        Today: the source slot and every later one. Tomorrow: every slot.
        """
        source = await self.store.get_meal_slot(source_meal_slot_id) if source_meal_slot_id else None
        if source is not None and source.user_id != user_id:
            source = None
        plan_id = source.diet_plan_id if source is not None else diet_plan_id

        slots = await self.store.list_meal_slots(user_id, plan_id)
        tomorrow = source_date + timedelta(days=1)

        active: dict[tuple[str, date], EquivalenceAdjustment] = {}
        for log_date in (source_date, tomorrow):
            for adjustment in await self.store.list_adjustments(user_id, log_date):
                if adjustment.is_active and not self.is_stale(adjustment):
                    active[(adjustment.target_meal_slot_id, adjustment.log_date)] = adjustment

        candidates = []
        for slot in slots:
            if source is None or slot.display_order >= source.display_order:
                candidates.append(TargetCandidate(
                    meal_slot=slot,
                    log_date=source_date,
                    day_label="today",
                    active_adjustment=active.get((slot.id, source_date)),
                ))
        for slot in slots:
            candidates.append(TargetCandidate(
                meal_slot=slot,
                log_date=tomorrow,
                day_label="tomorrow",
                active_adjustment=active.get((slot.id, tomorrow)),
            ))
        return candidates

    # =========================================================================
    # Guards and maintenance
    # =========================================================================

    async def assert_slot_writable(
        self, meal_slot_id: str, log_date: date, user_id: Optional[str] = None
    ) -> None:
        """Reject recipe writes for a slot while its adjustment is being applied."""
        adjustment = await self.store.find_active_adjustment(meal_slot_id, log_date)
        if (
            adjustment is not None
            and (user_id is None or adjustment.user_id == user_id)
            and adjustment.status == AdjustmentStatus.PENDING
            and not self.is_stale(adjustment)
        ):
            raise BusyError("An equivalence adjustment for this meal is being applied. Try again shortly.")

    async def sweep_stale_pending(self) -> dict:
        """Clean up pending rows past the timeout and failed rows."""
        cutoff = self.now() - self.pending_timeout
        stale = await self.store.list_stale_adjustments(cutoff)

        cleaned = 0
        for adjustment in stale:
            if await self._compensate(adjustment.id, f"Swept ({adjustment.status.value})"):
                cleaned += 1

        if stale:
            logger.info(f"Swept {cleaned}/{len(stale)} stale adjustment(s)")
        return {"found": len(stale), "cleaned": cleaned}


# Singleton
_ledger: Optional[EquivalenceLedger] = None


def get_equivalence_ledger() -> EquivalenceLedger:
    """Get singleton ledger wired to Supabase and the remote solver."""
    global _ledger
    if _ledger is None:
        from app.services.ledger_store import get_ledger_store
        from app.services.solver import RemoteQuantitySolver
        from app.services.supabase import get_foods_by_keys, get_user_restrictions

        _ledger = EquivalenceLedger(
            store=get_ledger_store(),
            solver=RemoteQuantitySolver(),
            load_foods=get_foods_by_keys,
            load_restrictions=get_user_restrictions,
        )
    return _ledger
