from __future__ import annotations

import hashlib
import json
from typing import Any

import httpx

from hft_fleet.common.errors import Permanent
from hft_fleet.providers.alibaba import AlibabaAdapter
from hft_fleet.providers.aws import AwsAdapter
from hft_fleet.providers.azure import AzureAdapter
from hft_fleet.providers.base import INSTANCE_SPECS, HttpProviderAdapter
from hft_fleet.providers.contabo import ContaboAdapter
from hft_fleet.providers.digitalocean import DigitalOceanAdapter
from hft_fleet.providers.gcp import GcpAdapter
from hft_fleet.providers.oracle import OracleAdapter
from hft_fleet.providers.vultr import VultrAdapter

PROVIDER_ADAPTERS: dict[str, type[HttpProviderAdapter]] = {
    adapter.name: adapter
    for adapter in (
        VultrAdapter,
        DigitalOceanAdapter,
        AwsAdapter,
        ContaboAdapter,
        OracleAdapter,
        GcpAdapter,
        AlibabaAdapter,
        AzureAdapter,
    )
}

_adapter_cache: dict[tuple[str, str], HttpProviderAdapter] = {}


def normalize_provider(provider: str) -> str:
    key = (provider or "").strip().lower()
    if key not in PROVIDER_ADAPTERS:
        raise Permanent(f"Unsupported provider: {provider}", details={"providers": sorted(PROVIDER_ADAPTERS)})
    return key


def adapter_class(provider: str) -> type[HttpProviderAdapter]:
    return PROVIDER_ADAPTERS[normalize_provider(provider)]


def _fingerprint(credentials: dict[str, str]) -> str:
    raw = json.dumps(credentials, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def get_provider_adapter(
    provider: str,
    credentials: dict[str, str],
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> HttpProviderAdapter:
    """
    Build (or reuse) the adapter for ``provider``.

    Adapters are cached per credential set so OAuth tokens survive between
    calls; a custom transport always gets a fresh, uncached instance.
    """
    key = normalize_provider(provider)
    cls = PROVIDER_ADAPTERS[key]
    if transport is not None:
        return cls(credentials=dict(credentials), transport=transport)
    cache_key = (key, _fingerprint(credentials))
    cached = _adapter_cache.get(cache_key)
    if cached is not None:
        return cached
    adapter = cls(credentials=dict(credentials))
    _adapter_cache[cache_key] = adapter
    return adapter


def clear_adapter_cache() -> None:
    _adapter_cache.clear()


def list_providers() -> list[dict[str, Any]]:
    providers = []
    for name, cls in PROVIDER_ADAPTERS.items():
        catalog = cls.catalog
        providers.append(
            {
                "provider": name,
                "display_name": catalog.display_name,
                "default_region": catalog.default_region,
                "credential_fields": [
                    {
                        "field_name": f.field_name,
                        "display_name": f.display_name,
                        "is_textarea": f.is_textarea,
                        "required": f.required,
                    }
                    for f in cls.credential_fields
                ],
                "regions": [
                    {
                        "id": r.id,
                        "name": r.name,
                        "country": r.country,
                        "latency_estimate_ms": r.latency_estimate_ms,
                    }
                    for r in catalog.regions
                ],
            }
        )
    return providers


def pricing_summary(provider: str | None = None) -> list[dict[str, Any]]:
    names = [normalize_provider(provider)] if provider else list(PROVIDER_ADAPTERS)
    rows = []
    for name in names:
        catalog = PROVIDER_ADAPTERS[name].catalog
        for size, tier in catalog.pricing.items():
            spec = INSTANCE_SPECS[size]
            rows.append(
                {
                    "provider": name,
                    "size": size,
                    "plan": tier.plan,
                    "hourly": str(tier.hourly),
                    "monthly": str(tier.monthly),
                    "is_free": tier.is_free,
                    "vcpus": spec.vcpus,
                    "ram_gb": spec.ram_gb,
                    "disk_gb": spec.disk_gb,
                }
            )
    return rows
