from __future__ import annotations

import base64
import hashlib
import hmac
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from urllib.parse import quote

import httpx

from hft_fleet.common.errors import Permanent, classify_http_status, parse_retry_after
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

ECS_API_VERSION = "2014-05-26"
DEFAULT_IMAGE = "ubuntu_24_04_x64_20G_alibase_20240812.vhd"

ALIBABA_CATALOG = ProviderCatalog(
    display_name="Alibaba Cloud",
    default_region="ap-northeast-1",
    regions=(
        Region("cn-hangzhou", "China (Hangzhou)", "CN"),
        Region("cn-shanghai", "China (Shanghai)", "CN"),
        Region("cn-beijing", "China (Beijing)", "CN"),
        Region("cn-shenzhen", "China (Shenzhen)", "CN"),
        Region("cn-hongkong", "China (Hong Kong)", "HK", 8),
        Region("ap-southeast-1", "Singapore", "SG", 15),
        Region("ap-northeast-1", "Japan (Tokyo)", "JP", 5),
        Region("ap-south-1", "India (Mumbai)", "IN"),
        Region("eu-central-1", "Germany (Frankfurt)", "DE"),
        Region("us-west-1", "US (Silicon Valley)", "US"),
        Region("us-east-1", "US (Virginia)", "US"),
        Region("eu-west-1", "UK (London)", "UK"),
    ),
    pricing={
        "small": PriceTier(Decimal("0.0044"), Decimal("3.00"), "ecs.t5-lc1m1.small"),
        "medium": PriceTier(Decimal("0.018"), Decimal("13.00"), "ecs.t5-lc1m2.large"),
        "large": PriceTier(Decimal("0.036"), Decimal("26.00"), "ecs.t5-c1m2.xlarge"),
    },
)

_STATES = {
    "pending": "creating",
    "starting": "creating",
    "running": "running",
    "stopping": "stopped",
    "stopped": "stopped",
}

_AUTH_CODES = {"InvalidAccessKeyId.NotFound", "SignatureDoesNotMatch", "Forbidden.RAM", "InvalidAccessKeyId.Inactive"}
_NOT_FOUND_CODES = {"InvalidInstanceId.NotFound", "InvalidInstanceId.MalFormed"}


def _percent_encode(value: str) -> str:
    return quote(str(value), safe="-_.~")


def rpc_signature(params: dict[str, Any], *, method: str, secret: str) -> str:
    """HMAC-SHA1 signature for the Alibaba Cloud RPC API."""
    canonical = "&".join(f"{_percent_encode(k)}={_percent_encode(v)}" for k, v in sorted(params.items()))
    string_to_sign = f"{method.upper()}&{_percent_encode('/')}&{_percent_encode(canonical)}"
    digest = hmac.new(f"{secret}&".encode("utf-8"), string_to_sign.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


@dataclass
class AlibabaAdapter(HttpProviderAdapter):
    name = "alibaba"
    credential_fields = (
        CredentialField("accesskey_id", "AccessKey ID"),
        CredentialField("accesskey_secret", "AccessKey Secret"),
        CredentialField("vswitch_id", "VSwitch ID", required=False),
        CredentialField("security_group_id", "Security Group ID", required=False),
    )
    catalog = ALIBABA_CATALOG
    boot_seconds = 90

    def _endpoint(self, region: str) -> str:
        return f"https://ecs.{region}.aliyuncs.com/"

    async def _sign_request(self, method, url, params, headers, body):
        signed = {
            **(params or {}),
            "Format": "JSON",
            "Version": ECS_API_VERSION,
            "AccessKeyId": self._credential("accesskey_id"),
            "SignatureMethod": "HMAC-SHA1",
            "SignatureVersion": "1.0",
            "SignatureNonce": uuid.uuid4().hex,
            "Timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        }
        signed["Signature"] = rpc_signature(signed, method=method, secret=self._credential("accesskey_secret"))
        return signed, headers

    def _raise_for_response(self, response: httpx.Response, *, context: str) -> None:
        payload = self._json(response)
        code = payload.get("Code")
        status = response.status_code
        if code in _AUTH_CODES:
            status = 403
        elif code in {"Throttling", "Throttling.User", "Throttling.Api"}:
            status = 429
        raise classify_http_status(
            status,
            f"alibaba {context} failed: {code or status}: {payload.get('Message') or response.text[:300]}",
            retry_after_seconds=parse_retry_after(response.headers.get("Retry-After")),
            details={"provider": self.name, "error_code": code, "status_code": response.status_code},
        )

    async def _call(
        self,
        region: str,
        action: str,
        params: dict[str, Any] | None = None,
        *,
        context: str,
        ok_statuses: tuple[int, ...] = (),
    ) -> tuple[int, dict[str, Any]]:
        response = await self._send(
            "GET",
            self._endpoint(region),
            params={"Action": action, "RegionId": region, **(params or {})},
            ok_statuses=ok_statuses,
            context=context,
        )
        return response.status_code, self._json(response)

    async def validate_credentials(self) -> ValidationResult:
        async def _check() -> dict[str, Any]:
            _, payload = await self._call(self.catalog.default_region, "DescribeRegions", context="validate")
            regions = (payload.get("Regions") or {}).get("Region") or []
            return {"regions": [r.get("RegionId") for r in regions]}

        return await self._probe(_check)

    async def create_instance(self, request: CreateInstanceRequest) -> CreatedInstance:
        region = request.region or self.catalog.default_region
        tier = self.catalog.tier(request.size)
        vswitch = self._credential("vswitch_id")
        security_group = self._credential("security_group_id")
        if not vswitch or not security_group:
            raise Permanent(
                "alibaba create requires vswitch_id and security_group_id credentials",
                details={"provider": self.name},
            )
        params: dict[str, Any] = {
            "InstanceType": tier.plan,
            "ImageId": request.image or DEFAULT_IMAGE,
            "VSwitchId": vswitch,
            "SecurityGroupId": security_group,
            "InstanceName": self._label(request),
            "InternetMaxBandwidthOut": "10",
            "InstanceChargeType": "PostPaid",
            "Amount": "1",
            # ECS returns the original instance for a repeated ClientToken
            "ClientToken": request.client_request_id,
            "Tag.1.Key": "hft-client-request-id",
            "Tag.1.Value": request.client_request_id,
        }
        if request.user_data:
            params["UserData"] = base64.b64encode(request.user_data.encode("utf-8")).decode("ascii")
        _, payload = await self._call(region, "RunInstances", params, context="create")
        ids = (payload.get("InstanceIdSets") or {}).get("InstanceIdSet") or []
        if not ids:
            raise classify_http_status(502, "alibaba create failed: RunInstances returned no instance ids")
        return CreatedInstance(
            provider_instance_id=join_instance_ref(region, str(ids[0])),
            expected_ready_time=self._expected_ready_time(),
            raw=payload,
        )

    async def get_instance_status(self, provider_instance_id: str) -> InstanceStatus:
        region, instance_id = split_instance_ref(provider_instance_id)
        _, payload = await self._call(
            region,
            "DescribeInstances",
            {"InstanceIds": f'["{instance_id}"]'},
            context="status",
        )
        instances = (payload.get("Instances") or {}).get("Instance") or []
        if not instances:
            return InstanceStatus(state="destroyed")
        instance = instances[0]
        return InstanceStatus(
            state=normalize_state(instance.get("Status"), _STATES),
            ip_address=_public_ip(instance),
            raw=instance,
        )

    async def reboot_instance(self, provider_instance_id: str) -> None:
        region, instance_id = split_instance_ref(provider_instance_id)
        await self._call(region, "RebootInstance", {"InstanceId": instance_id}, context="reboot")

    async def stop_instance(self, provider_instance_id: str) -> None:
        region, instance_id = split_instance_ref(provider_instance_id)
        await self._call(region, "StopInstance", {"InstanceId": instance_id}, context="stop")

    async def start_instance(self, provider_instance_id: str) -> None:
        region, instance_id = split_instance_ref(provider_instance_id)
        await self._call(region, "StartInstance", {"InstanceId": instance_id}, context="start")

    async def destroy_instance(self, provider_instance_id: str) -> None:
        region, instance_id = split_instance_ref(provider_instance_id)
        status, payload = await self._call(
            region,
            "DeleteInstance",
            {"InstanceId": instance_id, "Force": "true"},
            context="destroy",
            ok_statuses=(403, 404),
        )
        if status in (403, 404) and payload.get("Code") not in _NOT_FOUND_CODES:
            self._raise_for_status_payload(status, payload)

    def _raise_for_status_payload(self, status: int, payload: dict[str, Any]) -> None:
        raise classify_http_status(
            status,
            f"alibaba destroy failed: {payload.get('Code')}: {payload.get('Message')}",
            details={"provider": self.name, "error_code": payload.get("Code")},
        )


def _public_ip(instance: dict[str, Any]) -> str | None:
    addresses = (instance.get("PublicIpAddress") or {}).get("IpAddress") or []
    if addresses:
        return str(addresses[0])
    eip = (instance.get("EipAddress") or {}).get("IpAddress")
    return str(eip) if eip else None
