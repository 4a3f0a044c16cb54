from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from tortoise import connections

from app.api.presale_endpoints.common import get_oracle
from app.services.settlement import SettlementOracle

router = APIRouter(tags=["health"])


@router.get("/health", summary="Health check")
async def health_check():
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/ready", summary="Readiness check")
async def readiness_check(oracle: SettlementOracle = Depends(get_oracle)):
    """
    Readiness check - verifies all dependencies are available.

    Checks the database connection and the GNF RPC behind the settlement oracle.
    """
    checks = {}

    try:
        await connections.get("default").execute_query("SELECT 1")
        checks["database"] = True
    except Exception:
        checks["database"] = False

    try:
        checks["gnf_rpc"] = await oracle.is_connected()
    except Exception:
        checks["gnf_rpc"] = False

    all_healthy = all(checks.values())

    return {
        "status": "ready" if all_healthy else "degraded",
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
