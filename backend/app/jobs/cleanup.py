"""
Sweep stale equivalence adjustments.

A pending row that outlives the timeout belongs to a create that was
abandoned (client gone, worker restarted). Failed rows are ones whose own
compensation could not finish. Both are removed here so the slot can be
adjusted again.

Idempotent - safe to run multiple times.
"""

import logging

from app.errors import EquivalenceError
from app.services.equivalence import get_equivalence_ledger

logger = logging.getLogger(__name__)


async def sweep_stale_pending() -> dict:
    """Run one sweep. Returns {"found", "cleaned"}."""
    ledger = get_equivalence_ledger()
    try:
        result = await ledger.sweep_stale_pending()
    except EquivalenceError as e:
        logger.error(f"Stale adjustment sweep failed: {e.message}")
        return {"found": 0, "cleaned": 0, "error": e.message}

    if result["found"]:
        logger.info(f"Sweep cleaned {result['cleaned']} of {result['found']} stale adjustment(s)")
    return result
