from __future__ import annotations

import base64
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

UBUNTU_24_04_OS_ID = 2136

VULTR_CATALOG = ProviderCatalog(
    display_name="Vultr",
    default_region="nrt",
    regions=(
        Region("ewr", "New Jersey", "US"),
        Region("ord", "Chicago", "US"),
        Region("dfw", "Dallas", "US"),
        Region("lax", "Los Angeles", "US"),
        Region("atl", "Atlanta", "US"),
        Region("mia", "Miami", "US"),
        Region("sea", "Seattle", "US"),
        Region("ams", "Amsterdam", "NL"),
        Region("lhr", "London", "UK"),
        Region("fra", "Frankfurt", "DE"),
        Region("cdg", "Paris", "FR"),
        Region("nrt", "Tokyo", "JP", 5),
        Region("sgp", "Singapore", "SG", 15),
        Region("syd", "Sydney", "AU"),
        Region("icn", "Seoul", "KR", 8),
    ),
    pricing={
        "small": PriceTier(Decimal("0.00744"), Decimal("5.00"), "vc2-1c-1gb"),
        "medium": PriceTier(Decimal("0.02976"), Decimal("20.00"), "vc2-2c-4gb"),
        "large": PriceTier(Decimal("0.05952"), Decimal("40.00"), "vc2-4c-8gb"),
    },
)

_STATES = {
    "pending": "creating",
    "installing": "creating",
    "booting": "creating",
    "active": "running",
    "running": "running",
    "ok": "running",
    "rebooting": "rebooting",
    "reinstalling": "rebooting",
    "stopped": "stopped",
    "halted": "stopped",
    "suspended": "stopped",
    "locked": "error",
    "error": "error",
    "destroyed": "destroyed",
}


@dataclass
class VultrAdapter(HttpProviderAdapter):
    name = "vultr"
    base_url = "https://api.vultr.com/v2"
    credential_fields = (CredentialField("api_key", "API Key"),)
    catalog = VULTR_CATALOG
    boot_seconds = 60

    async def _sign_request(self, method, url, params, headers, body):
        headers["Authorization"] = f"Bearer {self._credential('api_key')}"
        return params, headers

    async def validate_credentials(self) -> ValidationResult:
        async def _check() -> dict[str, Any]:
            response = await self._send("GET", f"{self.base_url}/account", context="validate")
            account = self._json(response).get("account") or {}
            return {"balance": account.get("balance"), "email": account.get("email")}

        return await self._probe(_check)

    async def _find_by_tag(self, tag: str) -> dict[str, Any] | None:
        response = await self._send("GET", f"{self.base_url}/instances", params={"tag": tag}, context="list")
        instances = self._json(response).get("instances") or []
        return instances[0] if instances else None

    async def _ensure_ssh_key(self, request: CreateInstanceRequest) -> str | None:
        if not request.ssh_public_key:
            return None
        response = await self._send(
            "POST",
            f"{self.base_url}/ssh-keys",
            json_body={"name": self._label(request), "ssh_key": request.ssh_public_key},
            context="ssh key",
        )
        return (self._json(response).get("ssh_key") or {}).get("id")

    async def _adopt_tagged(self, request: CreateInstanceRequest) -> CreatedInstance | None:
        existing = await self._find_by_tag(request.client_request_id)
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
        existing = await self._adopt_tagged(request)
        if existing is not None:
            return existing

        tier = self.catalog.tier(request.size)
        body: dict[str, Any] = {
            "region": request.region or self.catalog.default_region,
            "plan": tier.plan,
            "os_id": int(request.image) if request.image and request.image.isdigit() else UBUNTU_24_04_OS_ID,
            "label": self._label(request),
            "hostname": self._label(request),
            "tags": [request.client_request_id],
            "backups": "disabled",
            "ddos_protection": False,
            "activation_email": False,
        }
        ssh_key_id = await self._ensure_ssh_key(request)
        if ssh_key_id:
            body["sshkey_id"] = [ssh_key_id]
        if request.user_data:
            body["user_data"] = base64.b64encode(request.user_data.encode("utf-8")).decode("ascii")

        async def _post() -> CreatedInstance:
            response = await self._send(
                "POST", f"{self.base_url}/instances", json_body=body, context="create", retry=False
            )
            instance = self._json(response).get("instance") or {}
            return CreatedInstance(
                provider_instance_id=str(instance.get("id")),
                expected_ready_time=self._expected_ready_time(),
                ip_address=_public_ip(instance),
                raw=instance,
            )

        return await self._create_without_replay(_post, lambda: self._adopt_tagged(request))

    async def get_instance_status(self, provider_instance_id: str) -> InstanceStatus:
        response = await self._send(
            "GET",
            f"{self.base_url}/instances/{provider_instance_id}",
            ok_statuses=(404,),
            context="status",
        )
        if response.status_code == 404:
            return InstanceStatus(state="destroyed")
        instance = self._json(response).get("instance") or {}
        raw_state = instance.get("status")
        if raw_state == "active" and instance.get("power_status") == "stopped":
            raw_state = "stopped"
        elif raw_state == "active" and instance.get("server_status") not in (None, "ok"):
            raw_state = "booting"
        return InstanceStatus(
            state=normalize_state(raw_state, _STATES),
            ip_address=_public_ip(instance),
            raw=instance,
        )

    async def reboot_instance(self, provider_instance_id: str) -> None:
        await self._send("POST", f"{self.base_url}/instances/{provider_instance_id}/reboot", context="reboot")

    async def stop_instance(self, provider_instance_id: str) -> None:
        await self._send("POST", f"{self.base_url}/instances/{provider_instance_id}/halt", context="stop")

    async def start_instance(self, provider_instance_id: str) -> None:
        await self._send("POST", f"{self.base_url}/instances/{provider_instance_id}/start", context="start")

    async def destroy_instance(self, provider_instance_id: str) -> None:
        await self._send(
            "DELETE",
            f"{self.base_url}/instances/{provider_instance_id}",
            ok_statuses=(404,),
            context="destroy",
        )


def _public_ip(instance: dict[str, Any]) -> str | None:
    ip = instance.get("main_ip")
    if not ip or ip == "0.0.0.0":
        return None
    return str(ip)
