import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Import database layer to ensure models are registered and engine is created.
from hft_fleet.common.env import env_bool, init_env
init_env()
from hft_fleet.common import database  # noqa: F401
from hft_fleet.common.log_buffer import get_log_buffer
from hft_fleet.api.benchmark import router as benchmark_router
from hft_fleet.api.bot import router as bot_router
from hft_fleet.api.dashboard import router as dashboard_router
from hft_fleet.api.failover import router as failover_router
from hft_fleet.api.fleet import router as fleet_router
from hft_fleet.api.orders import paper_router, router as orders_router
from hft_fleet.api.risk import router as risk_router
from hft_fleet.api.system import router as system_router
from hft_fleet.services.failover.runner import FailoverMonitorRunner
from hft_fleet.services.rate_limit import get_rate_limit_coordinator
from hft_fleet.services.recovery.runner import RecoveryRunner

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:
    get_log_buffer()
    coordinator = get_rate_limit_coordinator()
    coordinator.start()
    failover_runner = FailoverMonitorRunner.instance()
    recovery_runner = RecoveryRunner.instance()
    if env_bool("FAILOVER_MONITOR_ENABLED"):
        await failover_runner.start()
        logger.info("Failover monitor started", extra={"interval_seconds": failover_runner.interval_seconds})
    if env_bool("RATE_LIMIT_RECOVERY_ENABLED"):
        await recovery_runner.start()
        logger.info("Rate-limit recovery started", extra={"interval_seconds": recovery_runner.interval_seconds})
    try:
        yield
    finally:
        await failover_runner.stop()
        await recovery_runner.stop()
        await coordinator.stop()


def create_application() -> FastAPI:
    """
    Build the FastAPI application, wiring routers and background runners.
    """
    application = FastAPI(
        title="HFT Fleet Control Plane",
        version="0.1.0",
        description="Provisioning, bot lifecycle, failover and order routing for a fleet of trading VPSes.",
        lifespan=lifespan,
    )

    origins = [
        "http://127.0.0.1:5173",
        "http://localhost:5173",
    ]

    application.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(system_router, prefix="/api")
    application.include_router(fleet_router, prefix="/api")
    application.include_router(bot_router, prefix="/api")
    application.include_router(failover_router, prefix="/api")
    application.include_router(benchmark_router, prefix="/api")
    application.include_router(orders_router, prefix="/api")
    application.include_router(paper_router, prefix="/api")
    application.include_router(risk_router, prefix="/api")
    application.include_router(dashboard_router, prefix="/api")
    application.add_api_route("/health", lambda: {"status": "ok"}, methods=["GET"], tags=["system"])
    return application


app = create_application()
