from __future__ import annotations

import asyncio
import base64
import json
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import httpx
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

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

TOKEN_URL = "https://oauth2.googleapis.com/token"
COMPUTE_SCOPE = "https://www.googleapis.com/auth/compute"
DEFAULT_IMAGE = "projects/ubuntu-os-cloud/global/images/family/ubuntu-2404-lts-amd64"

GCP_CATALOG = ProviderCatalog(
    display_name="Google Cloud",
    default_region="asia-northeast1",
    regions=(
        Region("us-central1", "Iowa", "US"),
        Region("us-east1", "South Carolina", "US"),
        Region("us-west1", "Oregon", "US"),
        Region("europe-west1", "Belgium", "BE"),
        Region("europe-west2", "London", "UK"),
        Region("europe-west3", "Frankfurt", "DE"),
        Region("asia-east1", "Taiwan", "TW", 12),
        Region("asia-northeast1", "Tokyo", "JP", 5),
        Region("asia-northeast2", "Osaka", "JP", 8),
        Region("asia-southeast1", "Singapore", "SG", 15),
        Region("australia-southeast1", "Sydney", "AU"),
    ),
    pricing={
        "small": PriceTier(Decimal("0"), Decimal("0"), "e2-micro", is_free=True),
        "medium": PriceTier(Decimal("0.0335"), Decimal("24.12"), "e2-medium"),
        "large": PriceTier(Decimal("0.067"), Decimal("48.24"), "e2-standard-2"),
    },
)

_STATES = {
    "provisioning": "creating",
    "staging": "creating",
    "running": "running",
    "stopping": "stopped",
    "stopped": "stopped",
    "suspending": "stopped",
    "suspended": "stopped",
    "terminated": "stopped",
    "repairing": "error",
}


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def service_account_assertion(account: dict[str, Any], *, scope: str = COMPUTE_SCOPE, now: int | None = None) -> str:
    """Build the RS256 JWT a service account exchanges for an access token."""
    issued_at = int(now if now is not None else time.time())
    header = {"alg": "RS256", "typ": "JWT"}
    if account.get("private_key_id"):
        header["kid"] = account["private_key_id"]
    claims = {
        "iss": account["client_email"],
        "scope": scope,
        "aud": account.get("token_uri") or TOKEN_URL,
        "iat": issued_at,
        "exp": issued_at + 3600,
    }
    signing_input = (
        _b64url(json.dumps(header, separators=(",", ":")).encode("utf-8"))
        + "."
        + _b64url(json.dumps(claims, separators=(",", ":")).encode("utf-8"))
    )
    try:
        key = serialization.load_pem_private_key(account["private_key"].encode("utf-8"), password=None)
    except (ValueError, TypeError) as exc:
        raise AuthError(f"gcp service account private_key is invalid: {exc}") from exc
    signature = key.sign(signing_input.encode("ascii"), padding.PKCS1v15(), hashes.SHA256())
    return f"{signing_input}.{_b64url(signature)}"


def _zone_for(region_or_zone: str) -> str:
    # asia-northeast1 -> asia-northeast1-a; zones pass through unchanged
    if region_or_zone.count("-") >= 2:
        return region_or_zone
    return f"{region_or_zone}-a"


@dataclass
class GcpAdapter(HttpProviderAdapter):
    name = "gcp"
    base_url = "https://compute.googleapis.com/compute/v1"
    credential_fields = (CredentialField("service_account_json", "Service Account JSON", is_textarea=True),)
    catalog = GCP_CATALOG
    boot_seconds = 60

    _token: str | None = field(default=None, init=False, repr=False)
    _token_expires_at: float = field(default=0.0, init=False, repr=False)
    _token_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        super().__post_init__()
        try:
            account = json.loads(self._credential("service_account_json"))
        except ValueError as exc:
            raise AuthError("gcp service_account_json is not valid JSON") from exc
        if not isinstance(account, dict) or not account.get("client_email") or not account.get("private_key"):
            raise AuthError("gcp service_account_json must contain client_email and private_key")
        self._account = account

    @property
    def project_id(self) -> str:
        return str(self._account.get("project_id") or "")

    async def _access_token(self) -> str:
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token
            form = {
                "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                "assertion": service_account_assertion(self._account),
            }
            try:
                async with httpx.AsyncClient(timeout=self._build_timeout(), transport=self.transport) as client:
                    response = await client.post(self._account.get("token_uri") or TOKEN_URL, data=form)
            except httpx.HTTPError as exc:
                raise Transient(f"gcp token request failed: {exc}") from exc
            if response.status_code >= 300:
                raise AuthError(
                    f"gcp token request rejected: {self._error_message(response)}",
                    status_code=response.status_code,
                )
            payload = self._json(response)
            self._token = str(payload.get("access_token") or "")
            if not self._token:
                raise AuthError("gcp token response missing access_token")
            self._token_expires_at = time.monotonic() + max(float(payload.get("expires_in") or 3600) - 60.0, 60.0)
            return self._token

    async def _sign_request(self, method, url, params, headers, body):
        headers["Authorization"] = f"Bearer {await self._access_token()}"
        return params, headers

    def _instances_url(self, zone: str) -> str:
        return f"{self.base_url}/projects/{self.project_id}/zones/{zone}/instances"

    async def validate_credentials(self) -> ValidationResult:
        async def _check() -> dict[str, Any]:
            response = await self._send("GET", f"{self.base_url}/projects/{self.project_id}", context="validate")
            project = self._json(response)
            return {"project": project.get("name"), "client_email": self._account.get("client_email")}

        return await self._probe(_check)

    async def create_instance(self, request: CreateInstanceRequest) -> CreatedInstance:
        zone = _zone_for(request.region or self.catalog.default_region)
        tier = self.catalog.tier(request.size)
        # deterministic name: a replay either hits 409 or the same operation
        instance_name = f"hft-{request.client_request_id}".lower()[:63]
        metadata_items = []
        if request.ssh_public_key:
            metadata_items.append({"key": "ssh-keys", "value": f"root:{request.ssh_public_key}"})
        if request.user_data:
            metadata_items.append({"key": "startup-script", "value": request.user_data})
        body = {
            "name": instance_name,
            "machineType": f"zones/{zone}/machineTypes/{tier.plan}",
            "labels": {"managed-by": "hft-fleet"},
            "disks": [
                {
                    "boot": True,
                    "autoDelete": True,
                    "initializeParams": {"sourceImage": request.image or DEFAULT_IMAGE, "diskSizeGb": "20"},
                }
            ],
            "networkInterfaces": [
                {"network": "global/networks/default", "accessConfigs": [{"type": "ONE_TO_ONE_NAT", "name": "External NAT"}]}
            ],
            "metadata": {"items": metadata_items},
        }
        request_id = str(uuid.uuid5(uuid.NAMESPACE_URL, request.client_request_id))
        response = await self._send(
            "POST",
            self._instances_url(zone),
            params={"requestId": request_id},
            json_body=body,
            ok_statuses=(409,),
            context="create",
        )
        return CreatedInstance(
            provider_instance_id=join_instance_ref(zone, instance_name),
            expected_ready_time=self._expected_ready_time(),
            already_existed=response.status_code == 409,
            raw=self._json(response),
        )

    async def get_instance_status(self, provider_instance_id: str) -> InstanceStatus:
        zone, instance_name = split_instance_ref(provider_instance_id)
        response = await self._send(
            "GET",
            f"{self._instances_url(zone)}/{instance_name}",
            ok_statuses=(404,),
            context="status",
        )
        if response.status_code == 404:
            return InstanceStatus(state="destroyed")
        instance = self._json(response)
        return InstanceStatus(
            state=normalize_state(instance.get("status"), _STATES),
            ip_address=_public_ip(instance),
            raw=instance,
        )

    async def _action(self, provider_instance_id: str, action: str) -> None:
        zone, instance_name = split_instance_ref(provider_instance_id)
        await self._send("POST", f"{self._instances_url(zone)}/{instance_name}/{action}", context=action)

    async def reboot_instance(self, provider_instance_id: str) -> None:
        await self._action(provider_instance_id, "reset")

    async def stop_instance(self, provider_instance_id: str) -> None:
        await self._action(provider_instance_id, "stop")

    async def start_instance(self, provider_instance_id: str) -> None:
        await self._action(provider_instance_id, "start")

    async def destroy_instance(self, provider_instance_id: str) -> None:
        zone, instance_name = split_instance_ref(provider_instance_id)
        await self._send(
            "DELETE",
            f"{self._instances_url(zone)}/{instance_name}",
            ok_statuses=(404,),
            context="destroy",
        )


def _public_ip(instance: dict[str, Any]) -> str | None:
    for interface in instance.get("networkInterfaces") or []:
        for access in interface.get("accessConfigs") or []:
            if access.get("natIP"):
                return str(access["natIP"])
    return None
