from hft_fleet.services.dashboard.state import DashboardAggregator

__all__ = ["DashboardAggregator"]
