"""
Pytest configuration and shared fixtures.

Fixtures defined here are available to all tests.
"""

import asyncio
import os
import sys
import pytest
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Optional
from unittest.mock import MagicMock

# Add backend to path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

# Set test environment
os.environ["TESTING"] = "true"

from app.errors import ConflictError, PersistenceError  # noqa: E402
from app.models.equivalence import (  # noqa: E402
    ACTIVE_STATUSES,
    AdjustmentStatus,
    EquivalenceAdjustment,
    IngredientAdjustment,
    MealSlot,
    RecipeKind,
    RecipeRef,
    ScheduledRecipe,
)
from app.models.nutrition import (  # noqa: E402
    ConditionLink,
    Food,
    FoodUnit,
    Ingredient,
    MacroTotals,
    SensitivityLink,
    index_foods,
)
from app.models.restrictions import RestrictionProfile  # noqa: E402
from app.services.ledger_store import LedgerStore  # noqa: E402


USER_ID = "user-1"
LOG_DATE = date(2026, 10, 19)


# =============================================================================
# Test doubles
# =============================================================================


class FakeClock:
    """Mutable clock for pending-timeout tests."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class InMemoryLedgerStore(LedgerStore):
    """LedgerStore kept in dicts, with the database's uniqueness rules.

    Add a method name to `fail_on` to make that step raise PersistenceError.
    """

    def __init__(self, now):
        self.now = now
        self.adjustments: dict[str, EquivalenceAdjustment] = {}
        self.ingredient_rows: dict[tuple, IngredientAdjustment] = {}
        self.slots: dict[str, MealSlot] = {}
        self.recipes_by_slot: dict[str, list[ScheduledRecipe]] = {}
        self.sources: dict[tuple[str, str], list[Ingredient]] = {}
        # Sources not listed here belong to USER_ID
        self.source_owners: dict[tuple[str, str], str] = {}
        self.fail_on: set[str] = set()
        self._next_id = 1

    def _maybe_fail(self, step: str) -> None:
        if step in self.fail_on:
            raise PersistenceError(f"Injected failure at {step}", step=step)

    async def get_adjustment(self, adjustment_id):
        self._maybe_fail("get_adjustment")
        return self.adjustments.get(adjustment_id)

    async def find_active_adjustment(self, meal_slot_id, log_date):
        for a in self.adjustments.values():
            if a.target_meal_slot_id == meal_slot_id and a.log_date == log_date and a.status in ACTIVE_STATUSES:
                return a
        return None

    async def list_adjustments(self, user_id, log_date):
        return [a for a in self.adjustments.values() if a.user_id == user_id and a.log_date == log_date]

    async def list_adjustments_for_source(self, user_id, source):
        return [
            a for a in self.adjustments.values()
            if a.user_id == user_id and a.source.kind == source.kind and a.source.id == source.id
        ]

    async def list_stale_adjustments(self, pending_before):
        return [
            a for a in self.adjustments.values()
            if a.status == AdjustmentStatus.FAILED
            or (a.status == AdjustmentStatus.PENDING and a.created_at < pending_before)
        ]

    async def insert_adjustment(self, adjustment):
        self._maybe_fail("insert_adjustment")
        if await self.find_active_adjustment(adjustment.target_meal_slot_id, adjustment.log_date):
            raise ConflictError("duplicate key value violates unique constraint")
        stored = adjustment.model_copy(update={"id": str(self._next_id), "created_at": self.now()})
        self._next_id += 1
        self.adjustments[stored.id] = stored
        return stored

    async def update_adjustment_status(self, adjustment_id, status, error_message=None):
        self._maybe_fail("update_adjustment_status")
        if adjustment_id in self.adjustments:
            self.adjustments[adjustment_id] = self.adjustments[adjustment_id].model_copy(
                update={"status": status, "error_message": error_message}
            )

    async def delete_adjustment(self, adjustment_id):
        self._maybe_fail("delete_adjustment")
        removed = self.adjustments.pop(adjustment_id, None) is not None
        # ON DELETE CASCADE
        for key in [k for k in self.ingredient_rows if k[0] == adjustment_id]:
            del self.ingredient_rows[key]
        return removed

    async def insert_ingredient_adjustments(self, rows):
        self._maybe_fail("insert_ingredient_adjustments")
        for row in rows:
            if row.index_key in self.ingredient_rows:
                raise PersistenceError("duplicate ingredient adjustment", step="insert_ingredient_adjustments")
            self.ingredient_rows[row.index_key] = row
        return list(rows)

    async def delete_ingredient_adjustments(self, adjustment_id):
        self._maybe_fail("delete_ingredient_adjustments")
        keys = [k for k in self.ingredient_rows if k[0] == adjustment_id]
        for key in keys:
            del self.ingredient_rows[key]
        return len(keys)

    async def list_ingredient_adjustments(self, adjustment_ids):
        ids = set(adjustment_ids)
        return [r for r in self.ingredient_rows.values() if r.equivalence_adjustment_id in ids]

    async def get_meal_slot(self, meal_slot_id):
        return self.slots.get(meal_slot_id)

    async def list_meal_slots(self, user_id, diet_plan_id):
        slots = [s for s in self.slots.values() if s.user_id == user_id and s.diet_plan_id == diet_plan_id]
        return sorted(slots, key=lambda s: s.display_order)

    async def list_scheduled_recipes(self, slot, log_date):
        return [r.model_copy(deep=True) for r in self.recipes_by_slot.get(slot.id, [])]

    async def get_source_ingredients(self, source, user_id):
        key = (source.kind, source.id)
        if self.source_owners.get(key, USER_ID) != user_id:
            return None
        return self.sources.get(key)


class ScriptedSolver:
    """QuantitySolver double that raises or delegates."""

    def __init__(self, error: Optional[Exception] = None, delegate=None, delay: float = 0):
        self.error = error
        self.delegate = delegate
        self.delay = delay
        self.calls = []

    async def solve(self, ingredients, targets):
        self.calls.append((list(ingredients), targets))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.delegate is not None:
            return await self.delegate.solve(ingredients, targets)
        return []

    async def close(self):
        return None


# =============================================================================
# App Fixtures
# =============================================================================


@pytest.fixture
def app():
    """FastAPI test application."""
    from app.main import app
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    """Sync test client for API tests."""
    from fastapi.testclient import TestClient
    return TestClient(app)


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def mock_supabase():
    """Mock Supabase client for unit tests."""
    mock = MagicMock()
    mock.table.return_value.select.return_value.execute.return_value.data = []
    mock.table.return_value.insert.return_value.execute.return_value.data = [{"id": "test-uuid"}]
    mock.table.return_value.update.return_value.execute.return_value.data = [{}]
    mock.table.return_value.delete.return_value.execute.return_value.data = [{}]
    return mock


@pytest.fixture
def test_user_id():
    return USER_ID


# =============================================================================
# Sample Data Fixtures
# =============================================================================


@pytest.fixture
def foods():
    """Small catalog: per 100 g unless the food is unit-based."""
    return [
        Food(id="1", name="Chicken breast", macros_per_100=MacroTotals(calories=165, proteins=31, carbs=0, fats=3.6)),
        Food(id="2", name="White rice", macros_per_100=MacroTotals(calories=130, proteins=2.7, carbs=28, fats=0.3)),
        Food(id="3", name="Olive oil", macros_per_100=MacroTotals(calories=884, proteins=0, carbs=0, fats=100)),
        Food(
            id="4", name="Egg", unit=FoodUnit.UNITS,
            macros_per_100=MacroTotals(calories=78, proteins=6.3, carbs=0.6, fats=5),
        ),
        Food(
            id="5", name="Peanuts",
            macros_per_100=MacroTotals(calories=567, proteins=26, carbs=16, fats=49),
            sensitivities=[SensitivityLink(sensitivity_id="s-nuts", name="Nuts")],
        ),
        Food(
            id="6", name="Whole bread",
            macros_per_100=MacroTotals(calories=247, proteins=13, carbs=41, fats=3.4),
            conditions=[ConditionLink(condition_id="c-diabetes", relation="to_avoid", name="Diabetes")],
        ),
        Food(
            id="10", name="Protein bar", unit=FoodUnit.UNITS,
            macros_per_100=MacroTotals(calories=300, proteins=20, carbs=10, fats=15),
        ),
        Food(
            id="1", name="My granola", is_user_created=True,
            macros_per_100=MacroTotals(calories=450, proteins=10, carbs=60, fats=18),
        ),
    ]


@pytest.fixture
def catalog(foods):
    return index_foods(foods)


@pytest.fixture
def load_foods(catalog):
    """Async catalog loader; unknown keys are simply absent."""
    async def _load(keys):
        return {k: catalog[k] for k in keys if k in catalog}
    return _load


@pytest.fixture
def profile():
    return RestrictionProfile(user_id=USER_ID)


@pytest.fixture
def load_restrictions(profile):
    async def _load(user_id):
        return profile
    return _load


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(clock):
    """Store seeded with three meal slots and a lunch made of two recipes."""
    store = InMemoryLedgerStore(clock)
    for slot_id, name, order, targets in [
        ("slot-b", "Breakfast", 1, MacroTotals(calories=400, proteins=25, carbs=45, fats=12)),
        ("slot-l", "Lunch", 2, MacroTotals(calories=600, proteins=40, carbs=50, fats=20)),
        ("slot-d", "Dinner", 3, MacroTotals(calories=700, proteins=45, carbs=60, fats=25)),
    ]:
        store.slots[slot_id] = MealSlot(
            id=slot_id, user_id=USER_ID, diet_plan_id="plan-1", day_meal_id=f"dm-{order}",
            name=name, display_order=order, targets=targets,
        )

    store.recipes_by_slot["slot-l"] = [
        ScheduledRecipe(
            ref=RecipeRef(kind=RecipeKind.PLAN, id="pr-1"),
            name="Chicken and rice",
            ingredients=[Ingredient(food_id="1", quantity=100), Ingredient(food_id="2", quantity=150)],
        ),
        ScheduledRecipe(
            ref=RecipeRef(kind=RecipeKind.PRIVATE, id="pv-1"),
            name="Dressing",
            ingredients=[Ingredient(food_id="3", quantity=10)],
        ),
    ]

    store.sources[("snack", "snack-1")] = [Ingredient(food_id="10", quantity=1)]
    store.sources[("free_meal", "free-1")] = [Ingredient(food_id="2", quantity=100)]
    store.sources[("snack", "empty")] = [Ingredient(food_id="missing", quantity=50)]
    return store


@pytest.fixture
def local_solver(load_foods):
    from app.services.solver import LocalQuantitySolver
    return LocalQuantitySolver(load_foods, max_scale=4.0, zero_floor=0.1, anchor_weight=0.05)


@pytest.fixture
def make_ledger(store, load_foods, load_restrictions, clock, local_solver):
    """Build a ledger over the in-memory store; pass `solver=` to swap the solver."""
    from app.services.equivalence import EquivalenceLedger
    from app.services.restrictions import RestrictionClassifier

    def _make(solver=None, restrictions=None):
        return EquivalenceLedger(
            store=store,
            solver=solver or local_solver,
            load_foods=load_foods,
            load_restrictions=restrictions or load_restrictions,
            classifier=RestrictionClassifier(),
            pending_timeout=timedelta(minutes=5),
            now=clock,
        )
    return _make


@pytest.fixture
def ledger(make_ledger):
    return make_ledger()
