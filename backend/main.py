import os
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from api import router
from config import settings
from models.database import AsyncSessionLocal, init_database
from services.engine import build_engine
from utils.logger import get_logger, setup_logging
from utils.utcnow import utcnow

setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON, log_file=settings.LOG_FILE)
logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting strategy engine backend...")

    await init_database()
    logger.info("Database initialized")

    engine = build_engine()
    app.state.engine = engine
    await engine.start()

    try:
        yield
    finally:
        logger.info("Shutting down...")
        await engine.shutdown()
        app.state.engine = None
        logger.info("Shutdown complete")


app = FastAPI(
    title="Strategy Engine",
    description="Yield, arbitrage and delta-neutral strategies with auto-arb sessions",
    version="1.0.0",
    lifespan=lifespan,
)


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


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api")


# Health checks
@app.get("/health")
async def health_check():
    """Basic health check - for load balancers"""
    return {"status": "ok"}


@app.get("/health/live")
async def liveness_check():
    return {"status": "alive", "timestamp": utcnow().isoformat()}


@app.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check - database reachable and engine running"""
    database_ok = True
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("Readiness database check failed", error=str(exc))
        database_ok = False

    checks = {
        "database": database_ok,
        "engine": getattr(request.app.state, "engine", None) is not None,
    }
    return {
        "status": "ready" if all(checks.values()) else "not_ready",
        "checks": checks,
        "timestamp": utcnow().isoformat(),
    }


if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("PORT", 8000))
    # Single worker: sessions and signer contexts live in-process.
    uvicorn.run(app, host="0.0.0.0", port=port, timeout_keep_alive=30)
