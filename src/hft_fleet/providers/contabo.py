from __future__ import annotations

import asyncio
import time
import uuid
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
    normalize_state,
)

TOKEN_URL = "https://auth.contabo.com/auth/realms/contabo/protocol/openid-connect/token"
UBUNTU_IMAGE_NAME = "ubuntu-24.04"

CONTABO_CATALOG = ProviderCatalog(
    display_name="Contabo",
    default_region="JPN",
    regions=(
        Region("EU", "European Union", "DE"),
        Region("US-central", "United States (Central)", "US"),
        Region("US-east", "United States (East)", "US"),
        Region("US-west", "United States (West)", "US"),
        Region("SIN", "Singapore", "SG", 15),
        Region("AUS", "Australia", "AU"),
        Region("UK", "United Kingdom", "UK"),
        Region("JPN", "Japan", "JP", 5),
    ),
    pricing={
        "small": PriceTier(Decimal("0.0104"), Decimal("6.99"), "V45"),
        "medium": PriceTier(Decimal("0.0163"), Decimal("10.99"), "V47"),
        "large": PriceTier(Decimal("0.0237"), Decimal("15.99"), "V49"),
    },
)

_STATES = {
    "provisioning": "creating",
    "installing": "creating",
    "pending_payment": "creating",
    "running": "running",
    "stopped": "stopped",
    "error": "error",
    "unknown": "error",
    "uninstalled": "destroyed",
    "cancelled": "destroyed",
}


@dataclass
class ContaboAdapter(HttpProviderAdapter):
    """Contabo compute API. Auth is an OAuth2 password grant; tokens live ~5 minutes."""

    name = "contabo"
    base_url = "https://api.contabo.com/v1"
    credential_fields = (
        CredentialField("client_id", "Client ID"),
        CredentialField("client_secret", "Client Secret"),
        CredentialField("api_user", "API User (email)"),
        CredentialField("api_password", "API Password"),
    )
    catalog = CONTABO_CATALOG
    boot_seconds = 300

    _token: str | None = field(default=None, init=False, repr=False)
    _token_expires_at: float = field(default=0.0, init=False, repr=False)
    _token_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    async def _access_token(self) -> str:
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token
            form = {
                "client_id": self._credential("client_id"),
                "client_secret": self._credential("client_secret"),
                "username": self._credential("api_user"),
                "password": self._credential("api_password"),
                "grant_type": "password",
            }
            try:
                async with httpx.AsyncClient(timeout=self._build_timeout(), transport=self.transport) as client:
                    response = await client.post(TOKEN_URL, data=form)
            except httpx.HTTPError as exc:
                raise Transient(f"contabo token request failed: {exc}") from exc
            if response.status_code in (400, 401, 403):
                raise AuthError(
                    f"contabo token request rejected: {self._error_message(response)}",
                    status_code=response.status_code,
                )
            if response.status_code >= 300:
                self._raise_for_response(response, context="token")
            payload = self._json(response)
            token = payload.get("access_token")
            if not token:
                raise AuthError("contabo token response missing access_token")
            expires_in = float(payload.get("expires_in") or 300)
            self._token = str(token)
            self._token_expires_at = time.monotonic() + max(expires_in - 30.0, 30.0)
            return self._token

    async def _sign_request(self, method, url, params, headers, body):
        headers["Authorization"] = f"Bearer {await self._access_token()}"
        # every call must carry a request id; reuse the caller's when present
        headers.setdefault("x-request-id", str(uuid.uuid4()))
        return params, headers

    async def validate_credentials(self) -> ValidationResult:
        async def _check() -> dict[str, Any]:
            response = await self._send("GET", f"{self.base_url}/compute/instances", params={"size": 1}, context="validate")
            pagination = self._json(response).get("_pagination") or {}
            return {"instances": pagination.get("totalElements")}

        return await self._probe(_check)

    async def _find_by_display_name(self, display_name: str) -> dict[str, Any] | None:
        response = await self._send(
            "GET",
            f"{self.base_url}/compute/instances",
            params={"displayName": display_name},
            context="list",
        )
        for instance in self._json(response).get("data") or []:
            if instance.get("displayName") == display_name and instance.get("status") not in ("cancelled", "uninstalled"):
                return instance
        return None

    async def _resolve_image_id(self, image: str | None) -> str:
        if image and "-" in image and len(image) == 36:
            return image
        response = await self._send(
            "GET",
            f"{self.base_url}/compute/images",
            params={"standardImage": "true", "name": image or UBUNTU_IMAGE_NAME},
            context="images",
        )
        images = self._json(response).get("data") or []
        if not images:
            raise Transient("contabo image lookup returned no images")
        return str(images[0]["imageId"])

    async def _ensure_secret(self, request: CreateInstanceRequest) -> int | None:
        if not request.ssh_public_key:
            return None
        response = await self._send(
            "POST",
            f"{self.base_url}/secrets",
            json_body={"name": self._label(request), "value": request.ssh_public_key, "type": "ssh"},
            context="ssh key",
        )
        data = self._json(response).get("data") or []
        return int(data[0]["secretId"]) if data else None

    async def _adopt_named(self, display_name: str) -> CreatedInstance | None:
        existing = await self._find_by_display_name(display_name)
        if existing is None:
            return None
        return CreatedInstance(
            provider_instance_id=str(existing["instanceId"]),
            expected_ready_time=self._expected_ready_time(),
            ip_address=_public_ip(existing),
            already_existed=True,
            raw=existing,
        )

    async def create_instance(self, request: CreateInstanceRequest) -> CreatedInstance:
        display_name = f"hft-{request.client_request_id}"
        existing = await self._adopt_named(display_name)
        if existing is not None:
            return existing

        tier = self.catalog.tier(request.size)
        body: dict[str, Any] = {
            "imageId": await self._resolve_image_id(request.image),
            "productId": tier.plan,
            "region": request.region or self.catalog.default_region,
            "displayName": display_name,
            "period": 1,
        }
        secret_id = await self._ensure_secret(request)
        if secret_id is not None:
            body["sshKeys"] = [secret_id]
        if request.user_data:
            body["userData"] = request.user_data

        async def _post() -> CreatedInstance:
            response = await self._send(
                "POST",
                f"{self.base_url}/compute/instances",
                json_body=body,
                headers={"x-request-id": request.client_request_id},
                context="create",
                retry=False,
            )
            instance = (self._json(response).get("data") or [{}])[0]
            return CreatedInstance(
                provider_instance_id=str(instance.get("instanceId")),
                expected_ready_time=self._expected_ready_time(),
                ip_address=_public_ip(instance),
                raw=instance,
            )

        return await self._create_without_replay(_post, lambda: self._adopt_named(display_name))

    async def get_instance_status(self, provider_instance_id: str) -> InstanceStatus:
        response = await self._send(
            "GET",
            f"{self.base_url}/compute/instances/{provider_instance_id}",
            ok_statuses=(404,),
            context="status",
        )
        if response.status_code == 404:
            return InstanceStatus(state="destroyed")
        data = self._json(response).get("data") or [{}]
        instance = data[0]
        raw_state = instance.get("status")
        if instance.get("cancelDate"):
            raw_state = "cancelled"
        return InstanceStatus(
            state=normalize_state(raw_state, _STATES),
            ip_address=_public_ip(instance),
            raw=instance,
        )

    async def _action(self, provider_instance_id: str, action: str) -> None:
        await self._send(
            "POST",
            f"{self.base_url}/compute/instances/{provider_instance_id}/actions/{action}",
            context=action,
        )

    async def reboot_instance(self, provider_instance_id: str) -> None:
        await self._action(provider_instance_id, "restart")

    async def stop_instance(self, provider_instance_id: str) -> None:
        await self._action(provider_instance_id, "stop")

    async def start_instance(self, provider_instance_id: str) -> None:
        await self._action(provider_instance_id, "start")

    async def destroy_instance(self, provider_instance_id: str) -> None:
        # Contabo has no hard delete; cancelling ends the contract at period end
        await self._send(
            "POST",
            f"{self.base_url}/compute/instances/{provider_instance_id}/cancel",
            json_body={},
            ok_statuses=(404,),
            context="destroy",
        )


def _public_ip(instance: dict[str, Any]) -> str | None:
    v4 = ((instance.get("ipConfig") or {}).get("v4") or {}).get("ip")
    return str(v4) if v4 else None
