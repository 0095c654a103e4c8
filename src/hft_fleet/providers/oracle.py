from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass
from decimal import Decimal
from email.utils import formatdate
from typing import Any
from urllib.parse import urlencode, urlsplit

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from hft_fleet.common.errors import AuthError, Permanent
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

CORE_API_VERSION = "20160918"
IDENTITY_API_VERSION = "20160918"

ORACLE_CATALOG = ProviderCatalog(
    display_name="Oracle Cloud",
    default_region="ap-tokyo-1",
    regions=(
        Region("us-ashburn-1", "US East (Ashburn)", "US"),
        Region("us-phoenix-1", "US West (Phoenix)", "US"),
        Region("us-sanjose-1", "US West (San Jose)", "US"),
        Region("eu-frankfurt-1", "Germany Central (Frankfurt)", "DE"),
        Region("eu-amsterdam-1", "Netherlands Northwest (Amsterdam)", "NL"),
        Region("uk-london-1", "UK South (London)", "UK"),
        Region("ap-tokyo-1", "Japan East (Tokyo)", "JP", 5),
        Region("ap-osaka-1", "Japan Central (Osaka)", "JP", 8),
        Region("ap-singapore-1", "Singapore", "SG", 15),
        Region("ap-sydney-1", "Australia East (Sydney)", "AU"),
        Region("ap-seoul-1", "South Korea Central (Seoul)", "KR", 10),
        Region("ap-mumbai-1", "India West (Mumbai)", "IN"),
    ),
    pricing={
        "small": PriceTier(Decimal("0"), Decimal("0"), "VM.Standard.E2.1.Micro", is_free=True),
        "medium": PriceTier(Decimal("0"), Decimal("0"), "VM.Standard.A1.Flex", is_free=True),
        "large": PriceTier(Decimal("0.0425"), Decimal("30.60"), "VM.Standard.E4.Flex"),
    },
)

_FLEX_SHAPE_CONFIG = {
    "VM.Standard.A1.Flex": {"ocpus": 2, "memoryInGBs": 12},
    "VM.Standard.E4.Flex": {"ocpus": 2, "memoryInGBs": 16},
}

_STATES = {
    "provisioning": "creating",
    "starting": "creating",
    "running": "running",
    "stopping": "stopped",
    "stopped": "stopped",
    "creating_image": "running",
    "terminating": "destroyed",
    "terminated": "destroyed",
}


def oci_signature_headers(
    *,
    method: str,
    url: str,
    body: bytes,
    key_id: str,
    private_key_pem: str,
    date: str | None = None,
) -> dict[str, str]:
    """Sign a request with the OCI HTTP signature scheme (draft-cavage, rsa-sha256)."""
    parts = urlsplit(url)
    target = parts.path + (f"?{parts.query}" if parts.query else "")
    headers = {"date": date or formatdate(usegmt=True), "host": parts.netloc}
    signed = ["date", "(request-target)", "host"]
    lines = [f"date: {headers['date']}", f"(request-target): {method.lower()} {target}", f"host: {headers['host']}"]
    if method.upper() in ("POST", "PUT", "PATCH"):
        headers["x-content-sha256"] = base64.b64encode(hashlib.sha256(body).digest()).decode("ascii")
        headers["content-type"] = "application/json"
        headers["content-length"] = str(len(body))
        for name in ("x-content-sha256", "content-type", "content-length"):
            signed.append(name)
            lines.append(f"{name}: {headers[name]}")

    try:
        key = serialization.load_pem_private_key(private_key_pem.encode("utf-8"), password=None)
    except (ValueError, TypeError) as exc:
        raise AuthError(f"oracle api_private_key is not a valid PEM key: {exc}") from exc
    signature = key.sign("\n".join(lines).encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
    headers["authorization"] = (
        f'Signature version="1",keyId="{key_id}",algorithm="rsa-sha256",'
        f'headers="{" ".join(signed)}",signature="{base64.b64encode(signature).decode("ascii")}"'
    )
    return headers


@dataclass
class OracleAdapter(HttpProviderAdapter):
    name = "oracle"
    credential_fields = (
        CredentialField("user_ocid", "User OCID"),
        CredentialField("tenancy_ocid", "Tenancy OCID"),
        CredentialField("api_private_key", "API Private Key (PEM)", is_textarea=True),
        CredentialField("fingerprint", "Key Fingerprint"),
        CredentialField("compartment_ocid", "Compartment OCID", required=False),
        CredentialField("subnet_ocid", "Subnet OCID", required=False),
        CredentialField("availability_domain", "Availability Domain", required=False),
        CredentialField("image_ocid", "Image OCID", required=False),
    )
    catalog = ORACLE_CATALOG
    boot_seconds = 120

    def _core(self, region: str) -> str:
        return f"https://iaas.{region}.oraclecloud.com/{CORE_API_VERSION}"

    def _compartment(self) -> str:
        return self._credential("compartment_ocid") or self._credential("tenancy_ocid")

    async def _sign_request(self, method, url, params, headers, body):
        if params:
            url = f"{url}?{urlencode(params)}"
        key_id = f"{self._credential('tenancy_ocid')}/{self._credential('user_ocid')}/{self._credential('fingerprint')}"
        headers.update(
            oci_signature_headers(
                method=method,
                url=url,
                body=body,
                key_id=key_id,
                private_key_pem=self.credentials.get("api_private_key") or "",
            )
        )
        return params, headers

    async def validate_credentials(self) -> ValidationResult:
        async def _check() -> dict[str, Any]:
            region = self.catalog.default_region
            url = f"https://identity.{region}.oraclecloud.com/{IDENTITY_API_VERSION}/users/{self._credential('user_ocid')}"
            response = await self._send("GET", url, context="validate")
            user = self._json(response)
            return {"user": user.get("name"), "state": user.get("lifecycleState")}

        return await self._probe(_check)

    async def _availability_domain(self, region: str) -> str:
        configured = self._credential("availability_domain")
        if configured:
            return configured
        url = f"https://identity.{region}.oraclecloud.com/{IDENTITY_API_VERSION}/availabilityDomains"
        response = await self._send("GET", url, params={"compartmentId": self._credential("tenancy_ocid")}, context="availability domains")
        domains = self._json(response).get("items") or []
        if not domains:
            raise Permanent(f"oracle region {region} has no availability domains for this tenancy")
        return str(domains[0]["name"])

    async def _find_by_display_name(self, region: str, display_name: str) -> dict[str, Any] | None:
        response = await self._send(
            "GET",
            f"{self._core(region)}/instances",
            params={"compartmentId": self._compartment(), "displayName": display_name},
            context="list",
        )
        for instance in self._json(response).get("items") or []:
            if instance.get("lifecycleState") not in ("TERMINATING", "TERMINATED"):
                return instance
        return None

    async def create_instance(self, request: CreateInstanceRequest) -> CreatedInstance:
        region = request.region or self.catalog.default_region
        display_name = f"hft-{request.client_request_id}"
        existing = await self._find_by_display_name(region, display_name)
        if existing is not None:
            return CreatedInstance(
                provider_instance_id=join_instance_ref(region, str(existing["id"])),
                expected_ready_time=self._expected_ready_time(),
                already_existed=True,
                raw=existing,
            )

        subnet = self._credential("subnet_ocid")
        image = request.image or self._credential("image_ocid")
        if not subnet or not image:
            raise Permanent(
                "oracle create requires subnet_ocid and image_ocid credentials",
                details={"provider": self.name, "missing_fields": [n for n, v in (("subnet_ocid", subnet), ("image_ocid", image)) if not v]},
            )
        tier = self.catalog.tier(request.size)
        metadata: dict[str, str] = {}
        if request.ssh_public_key:
            metadata["ssh_authorized_keys"] = request.ssh_public_key
        if request.user_data:
            metadata["user_data"] = base64.b64encode(request.user_data.encode("utf-8")).decode("ascii")
        body: dict[str, Any] = {
            "availabilityDomain": await self._availability_domain(region),
            "compartmentId": self._compartment(),
            "displayName": display_name,
            "shape": tier.plan,
            "sourceDetails": {"sourceType": "image", "imageId": image},
            "createVnicDetails": {"subnetId": subnet, "assignPublicIp": True},
            "metadata": metadata,
            "freeformTags": {"hft-client-request-id": request.client_request_id},
        }
        if tier.plan in _FLEX_SHAPE_CONFIG:
            body["shapeConfig"] = _FLEX_SHAPE_CONFIG[tier.plan]

        response = await self._send(
            "POST",
            f"{self._core(region)}/instances",
            json_body=body,
            headers={"opc-retry-token": request.client_request_id.replace("-", "")[:64]},
            context="create",
        )
        instance = self._json(response)
        return CreatedInstance(
            provider_instance_id=join_instance_ref(region, str(instance.get("id"))),
            expected_ready_time=self._expected_ready_time(),
            raw=instance,
        )

    async def _public_ip(self, region: str, instance_id: str) -> str | None:
        response = await self._send(
            "GET",
            f"{self._core(region)}/vnicAttachments",
            params={"compartmentId": self._compartment(), "instanceId": instance_id},
            context="vnic attachments",
        )
        for attachment in self._json(response).get("items") or []:
            vnic_id = attachment.get("vnicId")
            if not vnic_id or attachment.get("lifecycleState") != "ATTACHED":
                continue
            vnic = self._json(await self._send("GET", f"{self._core(region)}/vnics/{vnic_id}", context="vnic"))
            if vnic.get("publicIp"):
                return str(vnic["publicIp"])
        return None

    async def get_instance_status(self, provider_instance_id: str) -> InstanceStatus:
        region, instance_id = split_instance_ref(provider_instance_id)
        response = await self._send(
            "GET",
            f"{self._core(region)}/instances/{instance_id}",
            ok_statuses=(404,),
            context="status",
        )
        if response.status_code == 404:
            return InstanceStatus(state="destroyed")
        instance = self._json(response)
        state = normalize_state(instance.get("lifecycleState"), _STATES)
        ip_address = await self._public_ip(region, instance_id) if state == "running" else None
        return InstanceStatus(state=state, ip_address=ip_address, raw=instance)

    async def _action(self, provider_instance_id: str, action: str) -> None:
        region, instance_id = split_instance_ref(provider_instance_id)
        await self._send(
            "POST",
            f"{self._core(region)}/instances/{instance_id}",
            params={"action": action},
            json_body={},
            context=action.lower(),
        )

    async def reboot_instance(self, provider_instance_id: str) -> None:
        await self._action(provider_instance_id, "SOFTRESET")

    async def stop_instance(self, provider_instance_id: str) -> None:
        await self._action(provider_instance_id, "SOFTSTOP")

    async def start_instance(self, provider_instance_id: str) -> None:
        await self._action(provider_instance_id, "START")

    async def destroy_instance(self, provider_instance_id: str) -> None:
        region, instance_id = split_instance_ref(provider_instance_id)
        await self._send(
            "DELETE",
            f"{self._core(region)}/instances/{instance_id}",
            params={"preserveBootVolume": "false"},
            ok_statuses=(404,),
            context="destroy",
        )
