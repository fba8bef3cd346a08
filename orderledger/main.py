"""
Order Ledger application entry point.

Startup loads configuration, connects to MongoDB, wires the ledger services
onto app.state and, when enabled, starts the periodic expiry sweep.
"""

from fastapi import FastAPI, Request, Depends
from contextlib import asynccontextmanager
from dotenv import load_dotenv
from orderledger.core.config import load_config
from orderledger.core.handlers import setup_exception_handlers
from orderledger.core.middleware import RequestLoggingMiddleware
from orderledger.core.monitoring import setup_monitoring, error_monitor, monitor_errors
from orderledger.database import init_db, close_database, health_check as database_health
from orderledger.dependencies import build_services
from orderledger.routes.jobs import router as jobs_router
from orderledger.routes.notifications import router as notifications_router
from orderledger.routes.orders import router as orders_router
from orderledger.routes.payments import router as payments_router
from orderledger.routes.reports import router as reports_router
from orderledger.security import verify_monitoring_key
from orderledger.services.expiry_service import ExpirySweepRunner
import logging

load_dotenv()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle events"""
    runner = None
    try:
        config = load_config()
        setup_monitoring(config.logging.level)

        database = await init_db(config.database)
        app.state.services = build_services(database, config)

        if config.ledger.expiry_sweep_enabled:
            runner = ExpirySweepRunner(app.state.services.sweep, config.ledger.expiry_interval_seconds)
            runner.start()

        logger.info(f"Order ledger started ({config.environment})")

    except Exception as e:
        error_monitor.log_error(e, {"context": "application_startup"})
        logger.error(f"Failed to start order ledger: {str(e)}")
        raise

    yield

    logger.info("Order ledger shutting down")
    if runner is not None:
        await runner.stop()
    await close_database()

    final_summary = error_monitor.get_error_summary()
    logger.info(f"Shutdown - Total errors handled: {final_summary['total_errors']}")


app = FastAPI(
    title="Order Ledger",
    description="Transaction ledger engine for deposit and withdrawal orders",
    lifespan=lifespan,
)

setup_exception_handlers(app)

app.add_middleware(RequestLoggingMiddleware)

app.include_router(orders_router, prefix="/orders")
app.include_router(payments_router)
app.include_router(reports_router, prefix="/reports")
app.include_router(jobs_router, prefix="/jobs")
app.include_router(notifications_router, prefix="/notifications")


@app.get("/")
async def health(request: Request):
    return {
        "status": "active",
        "service": "Order Ledger",
        "description": "Transaction ledger engine is running",
    }


@app.get("/health/db")
async def health_db():
    return await database_health()


@app.get("/monitoring/errors", dependencies=[Depends(verify_monitoring_key)])
@monitor_errors("monitoring_endpoint")
async def get_monitoring_info(request: Request):
    """Internal endpoint for monitoring error statistics (authenticated)."""
    return error_monitor.get_error_summary()
