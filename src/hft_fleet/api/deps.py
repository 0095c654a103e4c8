"""
Process-wide service instances handed to routers through ``Depends``.

Tests swap any of them with ``app.dependency_overrides``.
"""

from functools import lru_cache

from hft_fleet.services.benchmark import Benchmarker
from hft_fleet.services.bot_lifecycle import BotLifecycleController
from hft_fleet.services.dashboard import DashboardAggregator
from hft_fleet.services.failover import FailoverController
from hft_fleet.services.failover.runner import FailoverMonitorRunner
from hft_fleet.services.orders import (
    OrderRouter,
    PaperOrderRouter,
    RiskManager,
    get_order_router,
    get_paper_router,
    get_risk_manager,
)
from hft_fleet.services.provisioning import FleetProvisioner
from hft_fleet.services.rate_limit import RateLimitCoordinator, get_rate_limit_coordinator
from hft_fleet.services.recovery.sweeper import RecoverySweeper, get_recovery_sweeper


@lru_cache(maxsize=1)
def get_provisioner() -> FleetProvisioner:
    return FleetProvisioner()


@lru_cache(maxsize=1)
def get_bot_controller() -> BotLifecycleController:
    return BotLifecycleController.from_env()


def get_failover_controller() -> FailoverController:
    # same instance the background health monitor uses
    return FailoverMonitorRunner.instance().controller


@lru_cache(maxsize=1)
def get_benchmarker() -> Benchmarker:
    return Benchmarker.from_env()


@lru_cache(maxsize=1)
def get_dashboard() -> DashboardAggregator:
    return DashboardAggregator.from_env()


def get_live_router() -> OrderRouter:
    return get_order_router()


def get_paper() -> PaperOrderRouter:
    return get_paper_router()


def get_risk() -> RiskManager:
    return get_risk_manager()


def get_rate_limiter() -> RateLimitCoordinator:
    return get_rate_limit_coordinator()


def get_sweeper() -> RecoverySweeper:
    return get_recovery_sweeper()
