from hft_fleet.services.failover.controller import FailoverController

__all__ = ["FailoverController"]
