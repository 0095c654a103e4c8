from hft_fleet.services.orders.base import OrderRequest
from hft_fleet.services.orders.paper import PaperOrderRouter, get_paper_router
from hft_fleet.services.orders.risk import RiskManager, get_risk_manager
from hft_fleet.services.orders.router import OrderRouter, get_order_router

__all__ = [
    "OrderRequest",
    "OrderRouter",
    "PaperOrderRouter",
    "RiskManager",
    "get_order_router",
    "get_paper_router",
    "get_risk_manager",
]
