from hft_fleet.providers.base import (
    CreatedInstance,
    CreateInstanceRequest,
    InstanceStatus,
    ProviderAdapter,
    ValidationResult,
)
from hft_fleet.providers.registry import (
    PROVIDER_ADAPTERS,
    get_provider_adapter,
    list_providers,
    pricing_summary,
)

__all__ = [
    "CreatedInstance",
    "CreateInstanceRequest",
    "InstanceStatus",
    "ProviderAdapter",
    "ValidationResult",
    "PROVIDER_ADAPTERS",
    "get_provider_adapter",
    "list_providers",
    "pricing_summary",
]
