"""
Ingredient quantity rebalancing.

Given a fixed ingredient set and protein/carb/fat targets, find non-negative
quantities whose macros approximate the targets:

    minimize ||A x - b||^2   subject to   0 <= x <= max_scale * base

Each column of A is an ingredient's macro vector per gram (or per unit).
The system is rarely square, so the solver returns the least-squares
optimum instead of demanding an exact solution. A small relative anchor
toward the base quantities picks, among equally good fits, the one
closest to the recipe as written.

Two front-ends share the same contract:
- LocalQuantitySolver runs the numeric core in-process (used by the
  /api/balance endpoint)
- RemoteQuantitySolver calls a balancing service over HTTP and validates
  the answer strictly
"""

from __future__ import annotations

import asyncio
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from typing import Awaitable, Callable, Optional, Sequence

import httpx
import numpy as np
from scipy.optimize import lsq_linear

from app.config import get_settings
from app.errors import SolverError
from app.models.balance import (
    BalancedIngredient,
    BalanceIngredient,
    BalanceRequest,
    BalanceTargets,
)
from app.models.nutrition import Food, FoodCatalog, FoodKey, Ingredient
from app.models.restrictions import RestrictionProfile
from app.services.restrictions import RestrictionClassifier

logger = logging.getLogger(__name__)

# Thread pool for the numeric solve
_executor = ThreadPoolExecutor(max_workers=2)

MACRO_FIELDS = ("proteins", "carbs", "fats")


# ============================================================================
# Numeric core
# ============================================================================


def balance_quantities(
    ingredients: Sequence[BalanceIngredient],
    foods: Sequence[Optional[Food]],
    targets: BalanceTargets,
    max_scale: Optional[float] = None,
    zero_floor: float = 0.1,
    anchor_weight: float = 0.05,
) -> list[float]:
    """Solve for new quantities, aligned with `ingredients`.

    Locked ingredients, ingredients whose food is unknown and ingredients
    that carry no protein/carb/fat are held at their current quantity.
    A macro no free ingredient contributes to is dropped from the system.
    """
    n = len(ingredients)
    if n != len(foods):
        raise ValueError("ingredients and foods must be aligned")

    base = np.array([ing.quantity for ing in ingredients], dtype=float)
    if n == 0:
        return []

    A = np.zeros((3, n), dtype=float)
    for j, food in enumerate(foods):
        if food is None:
            continue
        per = food.macros_per_quantity()
        A[:, j] = [max(0.0, getattr(per, f)) for f in MACRO_FIELDS]

    b = np.array([getattr(targets, f) for f in MACRO_FIELDS], dtype=float)

    upper = np.full(n, np.inf)
    if max_scale is not None:
        upper = np.where(base > 0, base * max_scale, 0.0)

    free = np.array([
        not ing.locked and foods[j] is not None and A[:, j].any() and upper[j] > 0
        for j, ing in enumerate(ingredients)
    ], dtype=bool)

    result = base.copy()
    if not free.any():
        logger.debug("Nothing to rebalance: no free ingredients")
        return result.tolist()

    # Fixed ingredients still count toward the targets
    residual_target = b - A[:, ~free] @ base[~free]

    A_free = A[:, free]
    live_rows = A_free.any(axis=1)
    if not live_rows.any():
        return result.tolist()
    dropped = [MACRO_FIELDS[i] for i in range(3) if not live_rows[i]]
    if dropped:
        logger.info(f"Dropping macro constraint(s) with no contributing ingredient: {dropped}")

    A_fit = A_free[live_rows]
    b_fit = residual_target[live_rows]

    x0 = base[free]
    if anchor_weight > 0:
        weights = anchor_weight / np.maximum(x0, 1.0)
        A_fit = np.vstack([A_fit, np.diag(weights)])
        b_fit = np.concatenate([b_fit, weights * x0])

    lb = np.zeros(x0.shape)
    ub = upper[free]

    solution = lsq_linear(A_fit, b_fit, bounds=(lb, ub), method="trf", tol=1e-10)
    if solution.status == -1:
        raise SolverError("Least-squares solve failed", reason="solver", detail=solution.message)
    if solution.status == 0:
        logger.warning(f"Solver hit its iteration limit: {solution.message}")

    x = np.nan_to_num(solution.x, nan=0.0, posinf=0.0, neginf=0.0)
    x = np.clip(x, lb, ub)
    x[x < zero_floor] = 0.0

    result[free] = x
    return result.tolist()


# ============================================================================
# Eligibility
# ============================================================================


def split_by_eligibility(
    ingredients: Sequence[Ingredient],
    catalog: FoodCatalog,
    profile: Optional[RestrictionProfile],
    classifier: RestrictionClassifier,
) -> tuple[list[int], list[int]]:
    """Indices of ingredients the solver may change, and of those it may not.

    Foods with an avoid-class verdict are never touched, so a macro gap is
    never closed by adding more of a restricted food.
    """
    eligible: list[int] = []
    held: list[int] = []
    for i, ingredient in enumerate(ingredients):
        food = catalog.get(ingredient.food_key)
        if food is not None and classifier.is_avoid(food, profile):
            held.append(i)
        else:
            eligible.append(i)
    return eligible, held


# ============================================================================
# Solver front-ends
# ============================================================================


class QuantitySolver:
    """Contract: same ingredients in, same ingredients out, new quantities."""

    async def solve(
        self,
        ingredients: list[BalanceIngredient],
        targets: BalanceTargets,
    ) -> list[BalancedIngredient]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


FoodLoader = Callable[[list[FoodKey]], Awaitable[FoodCatalog]]


class LocalQuantitySolver(QuantitySolver):
    """Runs the numeric core in-process."""

    def __init__(
        self,
        load_foods: FoodLoader,
        max_scale: Optional[float] = None,
        zero_floor: Optional[float] = None,
        anchor_weight: Optional[float] = None,
    ):
        settings = get_settings()
        self.load_foods = load_foods
        self.max_scale = max_scale if max_scale is not None else settings.solver_max_scale
        self.zero_floor = zero_floor if zero_floor is not None else settings.solver_zero_floor
        self.anchor_weight = anchor_weight if anchor_weight is not None else settings.solver_anchor_weight

    async def solve(
        self,
        ingredients: list[BalanceIngredient],
        targets: BalanceTargets,
    ) -> list[BalancedIngredient]:
        if not ingredients:
            return []

        keys = list({(i.food_id, i.is_user_created) for i in ingredients})
        catalog = await self.load_foods(keys)
        foods = [catalog.get((i.food_id, i.is_user_created)) for i in ingredients]

        loop = asyncio.get_running_loop()
        quantities = await loop.run_in_executor(
            _executor,
            lambda: balance_quantities(
                ingredients,
                foods,
                targets,
                max_scale=self.max_scale,
                zero_floor=self.zero_floor,
                anchor_weight=self.anchor_weight,
            ),
        )

        return [
            BalancedIngredient(food_id=ing.food_id, quantity=q)
            for ing, q in zip(ingredients, quantities)
        ]


class RemoteQuantitySolver(QuantitySolver):
    """Calls a balancing service implementing the /api/balance contract."""

    def __init__(
        self,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        api_key: Optional[str] = None,
    ):
        settings = get_settings()
        self.url = url or settings.solver_url
        # The bundled /api/balance sits behind the same key as the rest of the API
        self.api_key = api_key or settings.solver_api_key or settings.pi_api_key
        self.timeout = timeout if timeout is not None else settings.solver_timeout_seconds
        self.zero_floor = settings.solver_zero_floor
        self._owns_client = client is None
        self.http = client or httpx.AsyncClient(timeout=self.timeout)

    def _headers(self) -> dict[str, str]:
        return {"X-API-Key": self.api_key} if self.api_key else {}

    async def close(self) -> None:
        if self._owns_client:
            await self.http.aclose()

    async def solve(
        self,
        ingredients: list[BalanceIngredient],
        targets: BalanceTargets,
    ) -> list[BalancedIngredient]:
        if not ingredients:
            return []

        request = BalanceRequest(ingredients=ingredients, targets=targets)
        body = request.model_dump(by_alias=True)

        try:
            response = await self.http.post(self.url, json=body, headers=self._headers(), timeout=self.timeout)
        except httpx.TimeoutException as e:
            logger.warning(f"Solver timed out after {self.timeout}s")
            raise SolverError("Quantity solver timed out", reason="timeout", detail=str(e)) from e
        except httpx.HTTPError as e:
            logger.warning(f"Solver request failed: {e}")
            raise SolverError("Quantity solver unreachable", reason="transport", detail=str(e)) from e

        if not response.is_success:
            raise SolverError(
                f"Quantity solver returned HTTP {response.status_code}",
                reason="http_status",
                detail=response.text[:500],
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise SolverError("Quantity solver returned invalid JSON", reason="protocol", detail=str(e)) from e

        return parse_balance_payload(payload, ingredients, zero_floor=self.zero_floor)


def parse_balance_payload(
    payload: object,
    requested: Sequence[BalanceIngredient],
    zero_floor: float = 0.1,
) -> list[BalancedIngredient]:
    """Accept `{balancedIngredients}` matching the request one-to-one, or fail."""
    if not isinstance(payload, dict):
        raise SolverError("Solver response is not an object", reason="protocol")

    has_result = "balancedIngredients" in payload
    has_error = "error" in payload
    if has_error and not has_result:
        raise SolverError("Quantity solver reported an error", reason="solver", detail=str(payload["error"]))
    if has_error == has_result:
        raise SolverError("Solver response has an unexpected shape", reason="protocol", detail=str(payload)[:500])

    raw = payload["balancedIngredients"]
    if not isinstance(raw, list):
        raise SolverError("balancedIngredients is not a list", reason="protocol")
    if len(raw) != len(requested):
        raise SolverError(
            f"Solver returned {len(raw)} ingredients for {len(requested)} requested",
            reason="mismatch",
        )

    balanced = []
    for req, item in zip(requested, raw):
        if not isinstance(item, dict) or "foodId" not in item or "quantity" not in item:
            raise SolverError("Malformed balanced ingredient", reason="protocol", detail=str(item)[:200])
        if str(item["foodId"]) != req.food_id:
            raise SolverError(
                f"Solver returned food {item['foodId']} where {req.food_id} was expected",
                reason="mismatch",
            )

        quantity = item["quantity"]
        if isinstance(quantity, bool) or not isinstance(quantity, (int, float)) or not math.isfinite(quantity):
            raise SolverError("Non-numeric quantity from solver", reason="protocol", detail=str(item)[:200])
        if quantity < -zero_floor:
            raise SolverError("Negative quantity from solver", reason="protocol", detail=str(item)[:200])

        balanced.append(BalancedIngredient(
            food_id=req.food_id,
            quantity=0.0 if quantity < zero_floor else float(quantity),
        ))

    return balanced
