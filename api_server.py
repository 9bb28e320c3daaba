"""
FastAPI Server for the Civic Cleanup Escrow Service
Job lifecycle, wallet and dispute endpoints plus the background review sweep
"""
from contextlib import asynccontextmanager
import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from config import Config

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

import database
from database import create_tables, managed_session
from jobs.scheduler import get_scheduler_instance
from routes import applications, contributions, disputes, jobs, proofs, wallet
from services.legacy_status_mapper import LegacyStatusMapper
from utils.exception_handler import ServiceError


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: schema, one-off legacy status normalization, review sweep scheduler.
    Shutdown: stop the scheduler.
    """
    logger.info(f"🔧 Worker {os.getpid()} starting...")
    Config.log_environment_config()

    if not create_tables():
        logger.error("❌ Database schema could not be verified; requests will fail until it is")

    if Config.NORMALIZE_LEGACY_STATUSES:
        try:
            with managed_session() as session:
                LegacyStatusMapper.normalize_legacy_job_statuses(session)
        except SQLAlchemyError as e:
            logger.error(f"❌ Legacy status normalization failed: {e}")

    scheduler = None
    if Config.ENABLE_REVIEW_SWEEPER:
        scheduler = get_scheduler_instance()
        scheduler.start()
    else:
        logger.info("🚫 REVIEW_SWEEPER: Disabled (set ENABLE_REVIEW_SWEEPER=true to enable)")

    yield

    if scheduler is not None:
        scheduler.stop()
    logger.info(f"🔄 Worker {os.getpid()} shutting down...")


app = FastAPI(
    title="Civic Cleanup Escrow API",
    description="Crowdfunded cleanup jobs with escrowed payouts, refunds and disputes",
    lifespan=lifespan
)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error(f"❌ {exc.error_code.upper()}: {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"⚠️ REQUEST_REJECTED: {request.method} {request.url.path} -> {exc.status_code} {exc.message}")
    return JSONResponse(content=exc.to_payload(), status_code=exc.status_code)


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"❌ DATABASE_ERROR: {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        content={"error": "database_error", "message": "A database error occurred"},
        status_code=500
    )


app.include_router(jobs.router)
app.include_router(contributions.router)
app.include_router(applications.router)
app.include_router(proofs.router)
app.include_router(disputes.router)
app.include_router(wallet.router)


@app.get("/health")
def health_check():
    """Health check endpoint reporting database connectivity"""
    if not database.test_connection():
        return JSONResponse(
            content={"status": "unhealthy", "service": "civic-cleanup-api", "database": False},
            status_code=503
        )
    return {"status": "healthy", "service": "civic-cleanup-api", "database": True}
