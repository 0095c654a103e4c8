from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from hft_fleet.common.models import Machine
from hft_fleet.providers.registry import PROVIDER_ADAPTERS, adapter_class
from hft_fleet.store.failover import list_failover_configs
from hft_fleet.store.timeline import append_timeline_event
from hft_fleet.utils.json_safe import json_safe

logger = logging.getLogger(__name__)

# a region without a published estimate never counts as equal-or-better
_UNKNOWN_LATENCY_MS = 10_000


@dataclass(frozen=True)
class CostSuggestion:
    machine_id: str
    current_provider: str
    current_region: str
    current_monthly: Decimal
    suggested_provider: str
    suggested_region: str
    suggested_plan: str
    suggested_monthly: Decimal
    latency_estimate_ms: Optional[int]

    @property
    def monthly_savings(self) -> Decimal:
        return self.current_monthly - self.suggested_monthly

    def as_dict(self) -> Dict[str, Any]:
        return json_safe(
            {
                "machine_id": self.machine_id,
                "current_provider": self.current_provider,
                "current_region": self.current_region,
                "current_monthly": self.current_monthly,
                "suggested_provider": self.suggested_provider,
                "suggested_region": self.suggested_region,
                "suggested_plan": self.suggested_plan,
                "suggested_monthly": self.suggested_monthly,
                "monthly_savings": self.monthly_savings,
                "latency_estimate_ms": self.latency_estimate_ms,
            }
        )


def _region_latency(provider: str, region_id: str) -> int:
    region = adapter_class(provider).catalog.region(region_id)
    if region is None or region.latency_estimate_ms is None:
        return _UNKNOWN_LATENCY_MS
    return region.latency_estimate_ms


def cheapest_alternative(machine: Machine) -> Optional[CostSuggestion]:
    """Cheapest same-size tier, on any provider, in a region at least as close to the exchanges."""
    current_latency = _region_latency(machine.provider, machine.region)
    current_monthly = Decimal(machine.monthly_cost or 0)
    best: Optional[CostSuggestion] = None
    for name, cls in PROVIDER_ADAPTERS.items():
        tier = cls.catalog.pricing.get(machine.size)
        if tier is None or tier.monthly >= current_monthly:
            continue
        for region in cls.catalog.regions:
            latency = region.latency_estimate_ms
            if latency is None or latency > current_latency:
                continue
            if name == machine.provider and region.id == machine.region:
                continue
            candidate = CostSuggestion(
                machine_id=str(machine.id),
                current_provider=machine.provider,
                current_region=machine.region,
                current_monthly=current_monthly,
                suggested_provider=name,
                suggested_region=region.id,
                suggested_plan=tier.plan,
                suggested_monthly=tier.monthly,
                latency_estimate_ms=latency,
            )
            if best is None or (candidate.suggested_monthly, latency) < (
                best.suggested_monthly,
                best.latency_estimate_ms or 0,
            ):
                best = candidate
    return best


async def analyze_costs(session: AsyncSession) -> Dict[str, Any]:
    configs = await list_failover_configs(session, enabled_only=True)
    suggestions: List[CostSuggestion] = []
    analyzed = 0
    current_total = Decimal("0")
    for config in configs:
        if config.machine_id is None:
            continue
        machine = await session.get(Machine, config.machine_id)
        if machine is None or machine.status == "destroyed":
            continue
        analyzed += 1
        current_total += Decimal(machine.monthly_cost or 0)
        suggestion = cheapest_alternative(machine)
        if suggestion is None:
            continue
        suggestions.append(suggestion)
        await append_timeline_event(
            session,
            provider=machine.provider,
            event_type="cost_optimization",
            event_subtype="suggestion",
            title=(
                f"Move {machine.size} from {machine.provider}/{machine.region} to "
                f"{suggestion.suggested_provider}/{suggestion.suggested_region}"
            ),
            description=f"Saves {suggestion.monthly_savings} per month at equal or better latency",
            metadata=suggestion.as_dict(),
        )
    await session.commit()
    potential = sum((s.monthly_savings for s in suggestions), Decimal("0"))
    logger.info(
        "Cost analysis complete",
        extra={"machines": analyzed, "suggestions": len(suggestions)},
    )
    return json_safe(
        {
            "success": True,
            "machines_analyzed": analyzed,
            "current_monthly_total": current_total,
            "potential_monthly_savings": potential,
            "suggestions": [s.as_dict() for s in suggestions],
        }
    )
