import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from tortoise.contrib.fastapi import register_tortoise

from app.core.config import settings
from app.core.errors import PresaleError
from app.api import health, presale_router
from app.services.settlement import settlement_oracle
from app.workers.reconciliation import reconciliation_loop

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Start background workers
    worker_task = asyncio.create_task(reconciliation_loop())
    logger.info("Started settlement reconciliation worker")
    yield
    # Shutdown - cancel worker and close connections
    worker_task.cancel()
    try:
        await worker_task
    except asyncio.CancelledError:
        pass
    await settlement_oracle.close()


def register_error_handlers(app: FastAPI) -> None:
    """Return every presale failure as {"success": false, "error": CODE, ...}."""

    @app.exception_handler(PresaleError)
    async def presale_error_handler(request: Request, exc: PresaleError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path}: {exc.code} {exc.message}")
        headers = None
        if "retry_after_seconds" in exc.details:
            headers = {"Retry-After": str(exc.details["retry_after_seconds"])}
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in e["loc"] if p != "body"), "message": e["msg"]}
            for e in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "VALIDATION_ERROR",
                "message": "Invalid request",
                "errors": errors,
            },
        )


app = FastAPI(
    title=settings.app_name,
    description="""
    GNF Presale API

    This API provides endpoints for:
    - Recording token purchases settled through the GNF presale contract
    - Checking the per-wallet GNF10 purchase limit
    - Claiming vested tokens (wallet signature required)
    - Recording referrals and querying referral earnings

    ## Purchase Flow

    1. The buyer pays in stablecoins and the frontend calls `POST /api/v1/tokens/purchase`
    2. Backend dry-runs `verifyPayment` on the presale contract, then submits it
    3. Once the transaction is confirmed the purchase is recorded
    4. After the token's vesting period the buyer calls `POST /api/v1/tokens/claim`
    """,
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

# Include routers
app.include_router(health.router)
app.include_router(presale_router.router, prefix=settings.api_v1_prefix)


@app.get("/", tags=["root"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.app_name,
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "api": f"{settings.api_v1_prefix}/tokens",
    }


# Register Tortoise ORM with FastAPI
register_tortoise(
    app,
    config=settings.tortoise_config,
    generate_schemas=False,  # Use aerich for migrations
    add_exception_handlers=True,
)
