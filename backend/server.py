from fastapi import FastAPI, APIRouter
from starlette.middleware.cors import CORSMiddleware
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from dotenv import load_dotenv
from pathlib import Path
import os
import logging

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from database import client, create_engine, check_db_connection
from services.scheduler_setup import setup_scheduler
from settlement import __version__
from settlement.errors import SettlementError
from settlement.routes import settlement_router, settlement_error_handler
from utils.environment import ENVIRONMENT, background_jobs_enabled

app = FastAPI(title="Z-Ai Settlement API", version=__version__)
api_router = APIRouter(prefix="/api")

app.state.engine = create_engine()
scheduler = AsyncIOScheduler()


@api_router.get("/health")
async def health():
    db_ok, db_error = await check_db_connection()
    return {
        "status": "ok" if db_ok else "degraded",
        "environment": ENVIRONMENT,
        "database": db_error or "connected",
        "scheduler_running": scheduler.running,
    }


# Include all routers
api_router.include_router(settlement_router)
app.include_router(api_router)

app.add_exception_handler(SettlementError, settlement_error_handler)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=[origin.strip() for origin in os.environ.get(
        'CORS_ORIGINS', 'http://localhost:3000').split(',')],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@app.on_event("startup")
async def startup():
    # Check database connection first - fail fast if database is unavailable
    db_ok, db_error = await check_db_connection()
    if not db_ok:
        logger.critical(f"Database connection failed on startup: {db_error}")
        raise RuntimeError(
            f"Cannot start application - database connection failed: {db_error}")

    # Seeds default payment methods on first run
    methods = await app.state.engine.list_payment_methods()
    logger.info(f"Payment methods available: {[m.id for m in methods]}")

    if not background_jobs_enabled():
        logger.info(f"Environment '{ENVIRONMENT}': background scheduler disabled")
        return

    setup_scheduler(scheduler, app.state.engine)
    scheduler.start()
    logger.info("Scheduler started - bank reconciliation and crypto rate refresh")


@app.on_event("shutdown")
async def shutdown_db_client():
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Settlement scheduler shut down")

    # Close MongoDB client
    client.close()
