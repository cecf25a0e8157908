"""
Equivalence ledger service: FastAPI backend for macro rebalancing.

Run with: uvicorn app.main:app --reload

Architecture:
- Records equivalence adjustments (a logged item's macros moved onto a later meal)
- Rebalances the target meal's recipes with a bounded least-squares solver
- Serves the read-path overlay so every screen shows adjusted quantities
- Sweeps abandoned pending adjustments in the background
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import get_settings
from app.api import health, cron
from app.api import balance as balance_api
from app.api import equivalence as equivalence_api
from app.api import restrictions as restrictions_api
from app.api.deps import equivalence_error_handler
from app.errors import EquivalenceError
from app.jobs.scheduler import start_scheduler, shutdown_scheduler

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    logger.info("Starting equivalence ledger service...")

    # Start background scheduler
    start_scheduler()
    logger.info("Scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down equivalence ledger service...")
    shutdown_scheduler()

    from app.services import equivalence as equivalence_service
    if equivalence_service._ledger is not None:
        await equivalence_service._ledger.solver.close()


app = FastAPI(
    title="equivalence-ledger",
    description="Equivalence adjustments & macro rebalancing API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_exception_handler(EquivalenceError, equivalence_error_handler)

# CORS - allow frontend access
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def verify_api_key(request: Request, call_next):
    """Verify API key for protected endpoints."""
    public_paths = ["/", "/health", "/health/detailed", "/docs", "/openapi.json", "/redoc"]

    # Secured by user_id in payload, like the rest of the app
    user_prefixes = ["/api/equivalence", "/api/restrictions/"]
    if any(request.url.path.startswith(prefix) for prefix in user_prefixes):
        return await call_next(request)

    if request.url.path in public_paths:
        return await call_next(request)

    api_key = request.headers.get("X-API-Key")
    expected_key = settings.pi_api_key

    # If no key configured, allow all (dev mode)
    if not expected_key:
        return await call_next(request)

    if api_key != expected_key:
        client_host = request.client.host if request.client else "unknown"
        logger.warning(f"Invalid API key attempt from {client_host}")
        return JSONResponse(
            status_code=401,
            content={"detail": "Invalid or missing API key"}
        )

    return await call_next(request)


# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(cron.router, prefix="/api/cron", tags=["cron"])
app.include_router(balance_api.router)  # /api/balance
app.include_router(equivalence_api.router)  # /api/equivalence
app.include_router(restrictions_api.router)  # /api/restrictions


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "equivalence-ledger",
        "version": "1.0.0",
        "description": "Equivalence adjustments & macro rebalancing API",
        "docs": "/docs",
        "endpoints": {
            "health": "/health",
            "balance": "/api/balance",
            "equivalence": "/api/equivalence",
            "restrictions": "/api/restrictions",
            "cron": "/api/cron",
        },
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=not settings.is_production,
    )
