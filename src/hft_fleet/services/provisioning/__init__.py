from hft_fleet.services.provisioning.fleet import FleetProvisioner

__all__ = ["FleetProvisioner"]
