from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import auth, billing, webhooks
from services.billing_providers.registry import build_provider_adapters, log_provider_configuration
from services.entitlements import EntitlementService
from services.plan_catalog import build_plan_catalog
from utils.errors import BillingError

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.jobstores.mongodb import MongoDBJobStore

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
db_name = os.environ.get('DB_NAME', 'clinify')

# Scheduler with MongoDB job store so jobs survive restarts
try:
    from pymongo import MongoClient
    jobstores = {
        'default': MongoDBJobStore(
            database=db_name,
            collection='scheduled_jobs',
            client=MongoClient(mongo_url)
        )
    }
    logger.info(f"MongoDB job store configured: {db_name}.scheduled_jobs")
except Exception as e:
    logger.warning(f"Failed to configure MongoDB job store, using memory store: {e}")
    jobstores = {}

scheduler = AsyncIOScheduler(jobstores=jobstores)

from job_runner import run_expired_data_retention, run_scheduled_cancellations


def _is_test_run() -> bool:
    return os.environ.get("PYTEST_RUNNING") == "1"


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    if _is_test_run():
        yield
        return

    # Startup
    logger.info("Starting Clinify API")
    await database.connect()
    log_provider_configuration(app.state.billing_providers)

    # Expired data retention daily at 2:00 AM UTC
    scheduler.add_job(
        run_expired_data_retention,
        CronTrigger(hour=2, minute=0),
        id="expired_data_retention",
        name="Expired Data Retention",
        replace_existing=True
    )

    # MercadoPago end-of-period cancellations at 2:30 AM UTC
    scheduler.add_job(
        run_scheduled_cancellations,
        CronTrigger(hour=2, minute=30),
        id="scheduled_cancellation_finalizer",
        name="Scheduled Cancellation Finalizer",
        replace_existing=True
    )

    scheduler.start()
    logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down Clinify API")
    scheduler.shutdown(wait=False)
    logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Clinify API",
    description="Clinic management - billing and entitlements",
    version="1.0.0",
    lifespan=lifespan
)

# Built once per process; read-only afterwards
app.state.plan_catalog = build_plan_catalog()
app.state.entitlements = EntitlementService(app.state.plan_catalog)
app.state.billing_providers = build_provider_adapters()

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth.router)
app.include_router(billing.router)
app.include_router(webhooks.router)

# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": "Clinify",
        "version": "1.0.0",
        "status": "operational"
    }

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }


@app.exception_handler(BillingError)
async def billing_exception_handler(request: Request, exc: BillingError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Request validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=400,
        content={
            "error": "Invalid request",
            "code": "VALIDATION_ERROR",
            "details": jsonable_encoder(errors),
            "request_id": request_id,
        },
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "code": "INTERNAL_ERROR"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
