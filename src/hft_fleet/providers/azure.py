from __future__ import annotations

import asyncio
import base64
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import httpx

from hft_fleet.common.errors import AuthError, Transient
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
    join_instance_ref,
    normalize_state,
    split_instance_ref,
)

MANAGEMENT_URL = "https://management.azure.com"
MANAGEMENT_SCOPE = "https://management.azure.com/.default"
COMPUTE_API_VERSION = "2023-09-01"
NETWORK_API_VERSION = "2023-09-01"
RESOURCES_API_VERSION = "2022-09-01"
SUBSCRIPTION_API_VERSION = "2022-12-01"

UBUNTU_IMAGE = {
    "publisher": "Canonical",
    "offer": "ubuntu-24_04-lts",
    "sku": "server",
    "version": "latest",
}

AZURE_CATALOG = ProviderCatalog(
    display_name="Microsoft Azure",
    default_region="japaneast",
    regions=(
        Region("eastus", "East US", "US"),
        Region("westus", "West US", "US"),
        Region("centralus", "Central US", "US"),
        Region("westeurope", "West Europe", "NL"),
        Region("northeurope", "North Europe", "IE"),
        Region("uksouth", "UK South", "UK"),
        Region("germanywestcentral", "Germany West Central", "DE"),
        Region("japaneast", "Japan East", "JP", 5),
        Region("japanwest", "Japan West", "JP", 8),
        Region("southeastasia", "Southeast Asia", "SG", 15),
        Region("australiaeast", "Australia East", "AU"),
        Region("koreacentral", "Korea Central", "KR", 10),
    ),
    pricing={
        "small": PriceTier(Decimal("0"), Decimal("0"), "Standard_B1s", is_free=True),
        "medium": PriceTier(Decimal("0.0416"), Decimal("29.95"), "Standard_B2s"),
        "large": PriceTier(Decimal("0.0832"), Decimal("59.90"), "Standard_B4ms"),
    },
)

_POWER_STATES = {
    "starting": "creating",
    "running": "running",
    "stopping": "stopped",
    "stopped": "stopped",
    "deallocating": "stopped",
    "deallocated": "stopped",
}


def resource_group_for(region: str) -> str:
    return f"hft-fleet-{region}"


@dataclass
class AzureAdapter(HttpProviderAdapter):
    """
    Azure Resource Manager adapter.

    Every resource is created with an idempotent PUT whose name derives from
    the client request id, so replays converge on the same VM. Instance
    references are ``resource-group/vm-name``.
    """

    name = "azure"
    base_url = MANAGEMENT_URL
    credential_fields = (
        CredentialField("application_client_id", "Application (client) ID"),
        CredentialField("directory_tenant_id", "Directory (tenant) ID"),
        CredentialField("client_secret", "Client Secret"),
        CredentialField("subscription_id", "Subscription ID"),
    )
    catalog = AZURE_CATALOG
    boot_seconds = 120

    _token: str | None = field(default=None, init=False, repr=False)
    _token_expires_at: float = field(default=0.0, init=False, repr=False)
    _token_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    async def _access_token(self) -> str:
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token
            url = f"https://login.microsoftonline.com/{self._credential('directory_tenant_id')}/oauth2/v2.0/token"
            form = {
                "grant_type": "client_credentials",
                "client_id": self._credential("application_client_id"),
                "client_secret": self._credential("client_secret"),
                "scope": MANAGEMENT_SCOPE,
            }
            try:
                async with httpx.AsyncClient(timeout=self._build_timeout(), transport=self.transport) as client:
                    response = await client.post(url, data=form)
            except httpx.HTTPError as exc:
                raise Transient(f"azure token request failed: {exc}") from exc
            if response.status_code >= 300:
                raise AuthError(
                    f"azure token request rejected: {self._error_message(response)}",
                    status_code=response.status_code,
                )
            payload = self._json(response)
            token = payload.get("access_token")
            if not token:
                raise AuthError("azure token response missing access_token")
            self._token = str(token)
            self._token_expires_at = time.monotonic() + max(float(payload.get("expires_in") or 3600) - 60.0, 60.0)
            return self._token

    async def _sign_request(self, method, url, params, headers, body):
        headers["Authorization"] = f"Bearer {await self._access_token()}"
        return params, headers

    def _subscription_url(self) -> str:
        return f"{self.base_url}/subscriptions/{self._credential('subscription_id')}"

    def _group_url(self, group: str) -> str:
        return f"{self._subscription_url()}/resourceGroups/{group}"

    async def _put(self, url: str, api_version: str, body: dict[str, Any], *, context: str) -> dict[str, Any]:
        response = await self._send("PUT", url, params={"api-version": api_version}, json_body=body, context=context)
        return self._json(response)

    async def validate_credentials(self) -> ValidationResult:
        async def _check() -> dict[str, Any]:
            response = await self._send(
                "GET",
                self._subscription_url(),
                params={"api-version": SUBSCRIPTION_API_VERSION},
                context="validate",
            )
            subscription = self._json(response)
            return {"subscription": subscription.get("displayName"), "state": subscription.get("state")}

        return await self._probe(_check)

    async def create_instance(self, request: CreateInstanceRequest) -> CreatedInstance:
        region = request.region or self.catalog.default_region
        tier = self.catalog.tier(request.size)
        group = resource_group_for(region)
        vm_name = f"hft-{request.client_request_id[:18]}".lower()
        group_url = self._group_url(group)
        network_url = f"{group_url}/providers/Microsoft.Network"

        existing = await self._send(
            "GET",
            f"{group_url}/providers/Microsoft.Compute/virtualMachines/{vm_name}",
            params={"api-version": COMPUTE_API_VERSION},
            ok_statuses=(404,),
            context="lookup",
        )
        if existing.status_code != 404:
            return CreatedInstance(
                provider_instance_id=join_instance_ref(group, vm_name),
                expected_ready_time=self._expected_ready_time(),
                already_existed=True,
                raw=self._json(existing),
            )

        await self._put(group_url, RESOURCES_API_VERSION, {"location": region}, context="resource group")
        vnet = await self._put(
            f"{network_url}/virtualNetworks/hft-fleet-vnet",
            NETWORK_API_VERSION,
            {
                "location": region,
                "properties": {
                    "addressSpace": {"addressPrefixes": ["10.20.0.0/16"]},
                    "subnets": [{"name": "default", "properties": {"addressPrefix": "10.20.0.0/24"}}],
                },
            },
            context="virtual network",
        )
        subnet_id = vnet.get("properties", {}).get("subnets", [{}])[0].get("id") or (
            f"{network_url}/virtualNetworks/hft-fleet-vnet/subnets/default".replace(self.base_url, "")
        )
        public_ip = await self._put(
            f"{network_url}/publicIPAddresses/{vm_name}-ip",
            NETWORK_API_VERSION,
            {"location": region, "sku": {"name": "Standard"}, "properties": {"publicIPAllocationMethod": "Static"}},
            context="public ip",
        )
        nic = await self._put(
            f"{network_url}/networkInterfaces/{vm_name}-nic",
            NETWORK_API_VERSION,
            {
                "location": region,
                "properties": {
                    "ipConfigurations": [
                        {
                            "name": "ipconfig1",
                            "properties": {
                                "subnet": {"id": subnet_id},
                                "publicIPAddress": {"id": public_ip.get("id")},
                            },
                        }
                    ]
                },
            },
            context="network interface",
        )

        os_profile: dict[str, Any] = {"computerName": vm_name, "adminUsername": "hftadmin"}
        if request.ssh_public_key:
            os_profile["linuxConfiguration"] = {
                "disablePasswordAuthentication": True,
                "ssh": {
                    "publicKeys": [{"path": "/home/hftadmin/.ssh/authorized_keys", "keyData": request.ssh_public_key}]
                },
            }
        if request.user_data:
            os_profile["customData"] = base64.b64encode(request.user_data.encode("utf-8")).decode("ascii")
        vm = await self._put(
            f"{group_url}/providers/Microsoft.Compute/virtualMachines/{vm_name}",
            COMPUTE_API_VERSION,
            {
                "location": region,
                "tags": {"hft-client-request-id": request.client_request_id},
                "properties": {
                    "hardwareProfile": {"vmSize": tier.plan},
                    "storageProfile": {
                        "imageReference": UBUNTU_IMAGE,
                        "osDisk": {"createOption": "FromImage", "deleteOption": "Delete"},
                    },
                    "osProfile": os_profile,
                    "networkProfile": {
                        "networkInterfaces": [
                            {"id": nic.get("id"), "properties": {"primary": True, "deleteOption": "Delete"}}
                        ]
                    },
                },
            },
            context="create",
        )
        return CreatedInstance(
            provider_instance_id=join_instance_ref(group, vm_name),
            expected_ready_time=self._expected_ready_time(),
            ip_address=(public_ip.get("properties") or {}).get("ipAddress"),
            raw=vm,
        )

    def _vm_url(self, provider_instance_id: str) -> str:
        group, vm_name = split_instance_ref(provider_instance_id)
        return f"{self._group_url(group)}/providers/Microsoft.Compute/virtualMachines/{vm_name}"

    async def _public_ip(self, provider_instance_id: str) -> str | None:
        group, vm_name = split_instance_ref(provider_instance_id)
        response = await self._send(
            "GET",
            f"{self._group_url(group)}/providers/Microsoft.Network/publicIPAddresses/{vm_name}-ip",
            params={"api-version": NETWORK_API_VERSION},
            ok_statuses=(404,),
            context="public ip",
        )
        if response.status_code == 404:
            return None
        return (self._json(response).get("properties") or {}).get("ipAddress")

    async def get_instance_status(self, provider_instance_id: str) -> InstanceStatus:
        response = await self._send(
            "GET",
            f"{self._vm_url(provider_instance_id)}/instanceView",
            params={"api-version": COMPUTE_API_VERSION},
            ok_statuses=(404,),
            context="status",
        )
        if response.status_code == 404:
            return InstanceStatus(state="destroyed")
        view = self._json(response)
        power_state = None
        provisioning_failed = False
        for status in view.get("statuses") or []:
            code = str(status.get("code") or "")
            if code.startswith("PowerState/"):
                power_state = code.split("/", 1)[1]
            elif code == "ProvisioningState/failed":
                provisioning_failed = True
        if provisioning_failed:
            state = "error"
        elif power_state is None:
            state = "creating"
        else:
            state = normalize_state(power_state, _POWER_STATES)
        ip_address = await self._public_ip(provider_instance_id) if state == "running" else None
        return InstanceStatus(state=state, ip_address=ip_address, raw=view)

    async def _action(self, provider_instance_id: str, action: str) -> None:
        await self._send(
            "POST",
            f"{self._vm_url(provider_instance_id)}/{action}",
            params={"api-version": COMPUTE_API_VERSION},
            context=action,
        )

    async def reboot_instance(self, provider_instance_id: str) -> None:
        await self._action(provider_instance_id, "restart")

    async def stop_instance(self, provider_instance_id: str) -> None:
        await self._action(provider_instance_id, "deallocate")

    async def start_instance(self, provider_instance_id: str) -> None:
        await self._action(provider_instance_id, "start")

    async def destroy_instance(self, provider_instance_id: str) -> None:
        await self._send(
            "DELETE",
            self._vm_url(provider_instance_id),
            params={"api-version": COMPUTE_API_VERSION, "forceDeletion": "true"},
            ok_statuses=(404,),
            context="destroy",
        )
