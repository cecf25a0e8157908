"""
Quantity balancing endpoint.

Wire contract:
    request  {ingredients: [{foodId, quantity}], targets: {proteins, carbs, fats}}
    response {balancedIngredients: [{foodId, quantity}]} | {error}
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from app.api.deps import get_balance_solver
from app.errors import EquivalenceError
from app.models.balance import BalanceErrorResponse, BalanceRequest, BalanceResponse
from app.services.solver import QuantitySolver

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/balance", tags=["balance"])


@router.post("", response_model=BalanceResponse, response_model_by_alias=True)
async def balance(
    request: BalanceRequest,
    solver: QuantitySolver = Depends(get_balance_solver),
):
    """Rebalance ingredient quantities toward macro targets."""
    try:
        balanced = await solver.solve(request.ingredients, request.targets)
    except EquivalenceError as e:
        logger.warning(f"Balance failed: {e.message}")
        return JSONResponse(
            status_code=e.status_code,
            content=BalanceErrorResponse(error=e.message, code=e.code).model_dump(),
        )
    except Exception as e:
        logger.exception("Unexpected balance failure")
        return JSONResponse(
            status_code=500,
            content=BalanceErrorResponse(error=str(e), code="internal_error").model_dump(),
        )

    return BalanceResponse(balanced_ingredients=balanced)
