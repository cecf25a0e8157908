"""
Common dependencies for API endpoints.
"""

import logging

from fastapi import Query, HTTPException, Request
from fastapi.responses import JSONResponse

from app.errors import EquivalenceError
from app.services.equivalence import EquivalenceLedger, get_equivalence_ledger
from app.services.solver import LocalQuantitySolver, QuantitySolver
from app.services.supabase import get_foods_by_keys

logger = logging.getLogger(__name__)


async def get_current_user_id(user_id: str = Query(..., description="User ID")) -> str:
    """
    Extract user_id from query parameter.

    In this architecture, the frontend authenticates via Supabase
    and passes the authenticated user_id directly to API calls.
    """
    if not user_id:
        raise HTTPException(status_code=400, detail="user_id is required")
    return user_id


def get_ledger() -> EquivalenceLedger:
    return get_equivalence_ledger()


def get_balance_solver() -> QuantitySolver:
    """In-process solver backing /api/balance."""
    return LocalQuantitySolver(get_foods_by_keys)


async def equivalence_error_handler(request: Request, exc: EquivalenceError) -> JSONResponse:
    """Render ledger errors as {detail, code, retryable[, diagnostics]}."""
    if exc.retryable:
        logger.warning(f"{request.method} {request.url.path} failed ({exc.code}): {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
