import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from config import settings
from api import arbitrage_router, fee_payers_router
from models.database import AsyncSessionLocal, init_database
from services.chain import close_quote_sources
from services.jupiter_client import jupiter_client
from services.refill_dispatcher import refill_dispatcher
from services.system_state import read_settings_snapshot
from utils.logger import get_logger, setup_logging
from utils.rate_limiter import rate_limiter
from utils.utcnow import utcnow

# Setup logging
setup_logging(level=settings.LOG_LEVEL)
logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting arbitrage service...")
    try:
        await init_database()
        logger.info("Database initialized")

        async with AsyncSessionLocal() as session:
            snapshot = await read_settings_snapshot(session)
        if snapshot.safe_mode_enabled:
            logger.warning("Safe mode is enabled", reason=snapshot.safe_mode_reason)
        logger.info(
            "Service ready",
            network=snapshot.network,
            auto_arbitrage_enabled=snapshot.auto_arbitrage_enabled,
        )

        yield

    except Exception as e:
        logger.critical("Startup failed", error=str(e), traceback=traceback.format_exc())
        raise

    finally:
        logger.info("Shutting down...")
        await refill_dispatcher.drain(timeout=settings.SETTLEMENT_CONFIRM_TIMEOUT_SECONDS)
        await jupiter_client.close()
        await close_quote_sources()
        logger.info("Shutdown complete")


app = FastAPI(
    title="Arbitrage Pipeline",
    description="Round-trip DEX arbitrage scanning, risk decisions and atomic execution",
    version="1.0.0",
    lifespan=lifespan,
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        traceback=traceback.format_exc(),
    )
    return JSONResponse(status_code=500, content={"detail": "Internal server error", "error": str(exc)})


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# API routes
app.include_router(arbitrage_router, prefix="/api")
app.include_router(fee_payers_router, prefix="/api")


@app.get("/health")
async def health_check():
    """Basic health check - for load balancers"""
    return {"status": "ok"}


@app.get("/health/live")
async def liveness_check():
    """Liveness check - is the service running?"""
    return {"status": "alive", "timestamp": utcnow().isoformat()}


@app.get("/health/ready")
async def readiness_check():
    """Readiness check - database reachable and settings readable."""
    checks = {"database": False}
    snapshot = None
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
            snapshot = await read_settings_snapshot(session)
        checks["database"] = True
    except Exception as e:
        logger.warning("Readiness check failed", error=str(e))

    return {
        "status": "ready" if all(checks.values()) else "not_ready",
        "checks": checks,
        "safe_mode_enabled": snapshot.safe_mode_enabled if snapshot else None,
        "pending_refills": refill_dispatcher.pending,
        "rate_limits": rate_limiter.get_status(),
        "timestamp": utcnow().isoformat(),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=settings.HOST,
        port=settings.PORT,
        # Single worker: safe-mode and ledger locks are in-process.
        timeout_keep_alive=30,
    )
