"""
Health checks for the equivalence service.

Checks:
- API responsiveness
- Ledger tables reachable (Supabase)
- Numeric solver sanity (a tiny known system solved in-process)
- Remote solver endpoint reachable
- Background sweep scheduled
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

import httpx

from app.config import get_settings

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    """Health check status levels."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class CheckResult:
    """Result of a single health check."""
    name: str
    status: HealthStatus
    message: str = ""
    latency_ms: float = 0
    details: dict = field(default_factory=dict)


@dataclass
class HealthReport:
    """Complete health report."""
    status: HealthStatus
    checks: list[CheckResult]
    timestamp: datetime = field(default_factory=datetime.utcnow)
    version: str = "1.0.0"

    @property
    def healthy_count(self) -> int:
        return sum(1 for c in self.checks if c.status == HealthStatus.HEALTHY)

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "version": self.version,
            "timestamp": self.timestamp.isoformat(),
            "summary": f"{self.healthy_count}/{len(self.checks)} checks passing",
            "checks": [
                {
                    "name": c.name,
                    "status": c.status.value,
                    "message": c.message,
                    "latency_ms": round(c.latency_ms, 2),
                    "details": c.details,
                }
                for c in self.checks
            ],
        }


def _elapsed_ms(start: float) -> float:
    return (time.time() - start) * 1000


class HealthChecker:
    """Runs health checks against the ledger's dependencies."""

    # A failing critical check makes the whole service unhealthy
    CRITICAL = ("api", "supabase", "solver_core")

    async def run_all_checks(self) -> HealthReport:
        names = ["api", "supabase", "solver_core", "solver_remote", "scheduler"]
        checks = await asyncio.gather(
            self.check_api(),
            self.check_supabase(),
            self.check_solver_core(),
            self.check_solver_remote(),
            self.check_scheduler(),
            return_exceptions=True,
        )

        results = []
        for name, check in zip(names, checks):
            if isinstance(check, Exception):
                results.append(CheckResult(name=name, status=HealthStatus.UNHEALTHY, message=str(check)))
            else:
                results.append(check)

        if all(c.status == HealthStatus.HEALTHY for c in results):
            overall = HealthStatus.HEALTHY
        elif any(c.status == HealthStatus.UNHEALTHY and c.name in self.CRITICAL for c in results):
            overall = HealthStatus.UNHEALTHY
        else:
            overall = HealthStatus.DEGRADED

        return HealthReport(status=overall, checks=results)

    async def check_api(self) -> CheckResult:
        return CheckResult(name="api", status=HealthStatus.HEALTHY, message="API is responsive")

    async def check_supabase(self) -> CheckResult:
        """Ledger table is queryable."""
        start = time.time()
        try:
            from app.services.supabase import TABLES, get_supabase_client

            client = get_supabase_client()
            client.table(TABLES["adjustments"]).select("id").limit(1).execute()
            return CheckResult(
                name="supabase",
                status=HealthStatus.HEALTHY,
                message="Database connected",
                latency_ms=_elapsed_ms(start),
            )
        except Exception as e:
            return CheckResult(
                name="supabase",
                status=HealthStatus.UNHEALTHY,
                message=f"Database error: {e}",
                latency_ms=_elapsed_ms(start),
            )

    async def check_solver_core(self) -> CheckResult:
        """Solve 100 g of a 20/0/0 protein food toward 10 g protein; expect ~50 g."""
        start = time.time()
        try:
            from app.models.balance import BalanceIngredient, BalanceTargets
            from app.models.nutrition import Food, MacroTotals
            from app.services.solver import balance_quantities

            food = Food(id="health-sample", macros_per_100=MacroTotals(proteins=20))
            quantities = balance_quantities(
                [BalanceIngredient(food_id="health-sample", quantity=100)],
                [food],
                BalanceTargets(proteins=10),
                anchor_weight=0,
            )
            ok = abs(quantities[0] - 50) < 0.5
            return CheckResult(
                name="solver_core",
                status=HealthStatus.HEALTHY if ok else HealthStatus.UNHEALTHY,
                message="Solver converges" if ok else f"Unexpected solution {quantities}",
                latency_ms=_elapsed_ms(start),
            )
        except Exception as e:
            return CheckResult(name="solver_core", status=HealthStatus.UNHEALTHY, message=str(e))

    async def check_solver_remote(self) -> CheckResult:
        """Remote solver answers an empty request."""
        settings = get_settings()
        start = time.time()
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.post(
                    settings.solver_url,
                    json={"ingredients": [], "targets": {"proteins": 0, "carbs": 0, "fats": 0}},
                )
            status = HealthStatus.HEALTHY if response.is_success else HealthStatus.DEGRADED
            return CheckResult(
                name="solver_remote",
                status=status,
                message=f"Solver returned {response.status_code}",
                latency_ms=_elapsed_ms(start),
                details={"url": settings.solver_url},
            )
        except httpx.HTTPError as e:
            return CheckResult(
                name="solver_remote",
                status=HealthStatus.DEGRADED,
                message=f"Solver unreachable: {e}",
                latency_ms=_elapsed_ms(start),
                details={"url": settings.solver_url},
            )

    async def check_scheduler(self) -> CheckResult:
        from app.jobs.scheduler import get_scheduler

        scheduler = get_scheduler()
        job = scheduler.get_job("sweep_stale_pending") if scheduler.running else None
        if job is None:
            return CheckResult(name="scheduler", status=HealthStatus.DEGRADED, message="Sweep not scheduled")
        return CheckResult(
            name="scheduler",
            status=HealthStatus.HEALTHY,
            message="Sweep scheduled",
            details={"next_run": job.next_run_time.isoformat() if job.next_run_time else None},
        )


# Singleton
_health_checker: Optional[HealthChecker] = None


def get_health_checker() -> HealthChecker:
    """Get health checker singleton."""
    global _health_checker
    if _health_checker is None:
        _health_checker = HealthChecker()
    return _health_checker
