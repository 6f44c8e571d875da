"""
FastAPI Server for the Payment Reconciliation Service
Hosts the payment recovery API and health checks; the lifespan handler
starts the background scheduler and verification workers.
"""
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from config import Config
from database import check_connection, create_tables
from handlers.payment_recovery import router as payment_recovery_router
from jobs.consolidated_scheduler import ConsolidatedScheduler

logger = logging.getLogger(__name__)

_startup_timestamp = None
_scheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: create tables, validate configuration, start the scheduler
    Shutdown: stop the scheduler and drop delayed verification retries
    """
    global _startup_timestamp, _scheduler

    Config.log_environment_config()
    if not Config.validate():
        logger.warning("⚠️ Configuration problems detected - see errors above")
    create_tables()

    if Config.SCHEDULER_ENABLED:
        _scheduler = ConsolidatedScheduler()
        await _scheduler.start()
    else:
        logger.info("🚫 SCHEDULER: Disabled (set SCHEDULER_ENABLED=true to enable)")

    _startup_timestamp = time.time()
    logger.info("🚀 Payment reconciliation server ready")

    yield

    if _scheduler is not None:
        await _scheduler.stop()
        _scheduler = None
    logger.info("🔄 Payment reconciliation server shutting down...")


app = FastAPI(
    title="Payment Reconciliation Service",
    description="Payment recovery API and background reconciliation",
    lifespan=lifespan
)

app.include_router(payment_recovery_router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {"message": "Payment reconciliation service is running"}


@app.get("/health")
async def health_check():
    """Health check endpoint with database readiness"""
    database_ok = check_connection()
    uptime = time.time() - _startup_timestamp if _startup_timestamp else 0
    content = {
        "status": "healthy" if database_ok else "degraded",
        "service": "payment-reconciliation",
        "database": "ok" if database_ok else "unavailable",
        "scheduler": "running" if _scheduler is not None else "disabled",
        "uptime_seconds": round(uptime, 2),
    }
    return JSONResponse(content=content, status_code=200 if database_ok else 503)


def main():
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(app, host=Config.SERVER_HOST, port=Config.SERVER_PORT, log_level=Config.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
