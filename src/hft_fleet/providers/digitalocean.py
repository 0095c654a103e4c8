from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from hft_fleet.providers.base import (
    CreatedInstance,
    CreateInstanceRequest,
    CredentialField,
    HttpProviderAdapter,
    InstanceStatus,
    PriceTier,
    ProviderCatalog,
    Region,
    ValidationResult,
    normalize_state,
)

DEFAULT_IMAGE = "ubuntu-24-04-x64"

DIGITALOCEAN_CATALOG = ProviderCatalog(
    display_name="DigitalOcean",
    default_region="sgp1",
    regions=(
        Region("nyc1", "New York 1", "US"),
        Region("nyc3", "New York 3", "US"),
        Region("sfo3", "San Francisco 3", "US"),
        Region("ams3", "Amsterdam 3", "NL"),
        Region("sgp1", "Singapore 1", "SG", 10),
        Region("lon1", "London 1", "UK"),
        Region("fra1", "Frankfurt 1", "DE"),
        Region("tor1", "Toronto 1", "CA"),
        Region("blr1", "Bangalore 1", "IN"),
        Region("syd1", "Sydney 1", "AU"),
    ),
    pricing={
        "small": PriceTier(Decimal("0.00595"), Decimal("4.00"), "s-1vcpu-1gb"),
        "medium": PriceTier(Decimal("0.02976"), Decimal("20.00"), "s-2vcpu-4gb"),
        "large": PriceTier(Decimal("0.05952"), Decimal("40.00"), "s-4vcpu-8gb"),
    },
)

_STATES = {
    "new": "creating",
    "active": "running",
    "off": "stopped",
    "archive": "destroyed",
}


@dataclass
class DigitalOceanAdapter(HttpProviderAdapter):
    name = "digitalocean"
    base_url = "https://api.digitalocean.com/v2"
    credential_fields = (CredentialField("personal_access_token", "Personal Access Token"),)
    catalog = DIGITALOCEAN_CATALOG
    boot_seconds = 60

    async def _sign_request(self, method, url, params, headers, body):
        headers["Authorization"] = f"Bearer {self._credential('personal_access_token')}"
        return params, headers

    async def validate_credentials(self) -> ValidationResult:
        async def _check() -> dict[str, Any]:
            response = await self._send("GET", f"{self.base_url}/account", context="validate")
            account = self._json(response).get("account") or {}
            return {"status": account.get("status"), "droplet_limit": account.get("droplet_limit")}

        return await self._probe(_check)

    async def _find_by_tag(self, tag: str) -> dict[str, Any] | None:
        response = await self._send("GET", f"{self.base_url}/droplets", params={"tag_name": tag}, context="list")
        droplets = self._json(response).get("droplets") or []
        return droplets[0] if droplets else None

    async def _ensure_ssh_key(self, request: CreateInstanceRequest) -> int | None:
        if not request.ssh_public_key:
            return None
        response = await self._send(
            "POST",
            f"{self.base_url}/account/keys",
            json_body={"name": self._label(request), "public_key": request.ssh_public_key},
            ok_statuses=(422,),
            context="ssh key",
        )
        if response.status_code == 422:
            # already registered under another name
            return None
        return (self._json(response).get("ssh_key") or {}).get("id")

    async def _adopt_tagged(self, tag: str) -> CreatedInstance | None:
        existing = await self._find_by_tag(tag)
        if existing is None:
            return None
        return CreatedInstance(
            provider_instance_id=str(existing["id"]),
            expected_ready_time=self._expected_ready_time(),
            ip_address=_public_ip(existing),
            already_existed=True,
            raw=existing,
        )

    async def create_instance(self, request: CreateInstanceRequest) -> CreatedInstance:
        # droplet tags only allow letters, numbers, colons, dashes and underscores
        tag = request.client_request_id
        existing = await self._adopt_tagged(tag)
        if existing is not None:
            return existing

        tier = self.catalog.tier(request.size)
        body: dict[str, Any] = {
            "name": self._label(request),
            "region": request.region or self.catalog.default_region,
            "size": tier.plan,
            "image": request.image or DEFAULT_IMAGE,
            "tags": [tag, "hft-bot"],
            "backups": False,
            "monitoring": True,
        }
        ssh_key_id = await self._ensure_ssh_key(request)
        if ssh_key_id:
            body["ssh_keys"] = [ssh_key_id]
        if request.user_data:
            body["user_data"] = request.user_data

        async def _post() -> CreatedInstance:
            response = await self._send(
                "POST", f"{self.base_url}/droplets", json_body=body, context="create", retry=False
            )
            droplet = self._json(response).get("droplet") or {}
            return CreatedInstance(
                provider_instance_id=str(droplet.get("id")),
                expected_ready_time=self._expected_ready_time(),
                ip_address=_public_ip(droplet),
                raw=droplet,
            )

        return await self._create_without_replay(_post, lambda: self._adopt_tagged(tag))

    async def get_instance_status(self, provider_instance_id: str) -> InstanceStatus:
        response = await self._send(
            "GET",
            f"{self.base_url}/droplets/{provider_instance_id}",
            ok_statuses=(404,),
            context="status",
        )
        if response.status_code == 404:
            return InstanceStatus(state="destroyed")
        droplet = self._json(response).get("droplet") or {}
        return InstanceStatus(
            state=normalize_state(droplet.get("status"), _STATES),
            ip_address=_public_ip(droplet),
            raw=droplet,
        )

    async def _action(self, provider_instance_id: str, action_type: str) -> None:
        await self._send(
            "POST",
            f"{self.base_url}/droplets/{provider_instance_id}/actions",
            json_body={"type": action_type},
            context=action_type,
        )

    async def reboot_instance(self, provider_instance_id: str) -> None:
        await self._action(provider_instance_id, "reboot")

    async def stop_instance(self, provider_instance_id: str) -> None:
        await self._action(provider_instance_id, "shutdown")

    async def start_instance(self, provider_instance_id: str) -> None:
        await self._action(provider_instance_id, "power_on")

    async def destroy_instance(self, provider_instance_id: str) -> None:
        await self._send(
            "DELETE",
            f"{self.base_url}/droplets/{provider_instance_id}",
            ok_statuses=(404,),
            context="destroy",
        )


def _public_ip(droplet: dict[str, Any]) -> str | None:
    networks = (droplet.get("networks") or {}).get("v4") or []
    for network in networks:
        if network.get("type") == "public" and network.get("ip_address"):
            return str(network["ip_address"])
    return None
