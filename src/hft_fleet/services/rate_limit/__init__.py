from hft_fleet.services.rate_limit.coordinator import (
    ExchangeLimits,
    RateLimitCoordinator,
    get_rate_limit_coordinator,
)

__all__ = ["ExchangeLimits", "RateLimitCoordinator", "get_rate_limit_coordinator"]
