from __future__ import annotations

import base64
import hashlib
import hmac
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from urllib.parse import quote, urlsplit

import httpx

from hft_fleet.common.errors import classify_http_status, parse_retry_after
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

EC2_API_VERSION = "2016-11-15"
UBUNTU_AMI_PARAMETER = "resolve:ssm:/aws/service/canonical/ubuntu/server/24.04/stable/current/amd64/hvm/ebs-gp3/ami-id"

AWS_CATALOG = ProviderCatalog(
    display_name="AWS",
    default_region="ap-northeast-1",
    regions=(
        Region("us-east-1", "N. Virginia", "US"),
        Region("us-west-2", "Oregon", "US"),
        Region("eu-west-1", "Ireland", "EU"),
        Region("ap-northeast-1", "Tokyo", "JP", 5),
        Region("ap-southeast-1", "Singapore", "SG", 15),
        Region("ap-south-1", "Mumbai", "IN"),
    ),
    pricing={
        "small": PriceTier(Decimal("0.0116"), Decimal("8.35"), "t3.micro", is_free=True),
        "medium": PriceTier(Decimal("0.0464"), Decimal("33.41"), "t3.medium"),
        "large": PriceTier(Decimal("0.0928"), Decimal("66.82"), "t3.large"),
    },
)

_STATES = {
    "pending": "creating",
    "running": "running",
    "stopping": "stopped",
    "stopped": "stopped",
    "shutting-down": "destroyed",
    "terminated": "destroyed",
}

_AUTH_ERROR_CODES = {"AuthFailure", "UnauthorizedOperation", "InvalidClientTokenId", "SignatureDoesNotMatch"}
_NOT_FOUND_CODES = {"InvalidInstanceID.NotFound", "InvalidInstanceID.Malformed"}


def _strip_ns(tag: str) -> str:
    return tag.split("}", 1)[-1]


def _find(element: ET.Element, path: str) -> ET.Element | None:
    current: ET.Element | None = element
    for part in path.split("/"):
        if current is None:
            return None
        current = next((child for child in current if _strip_ns(child.tag) == part), None)
    return current


def _find_text(element: ET.Element, path: str) -> str | None:
    node = _find(element, path)
    if node is None or node.text is None:
        return None
    return node.text.strip()


def _iter_items(element: ET.Element | None) -> list[ET.Element]:
    if element is None:
        return []
    return [child for child in element if _strip_ns(child.tag) == "item"]


def _hmac(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


def sigv4_headers(
    *,
    method: str,
    url: str,
    body: bytes,
    access_key: str,
    secret_key: str,
    region: str,
    service: str,
    now: datetime | None = None,
    content_type: str = "application/x-www-form-urlencoded; charset=utf-8",
) -> dict[str, str]:
    """Return the headers for an AWS Signature Version 4 request with no query string."""
    timestamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%SZ")
    date_stamp = timestamp[:8]
    parts = urlsplit(url)
    host = parts.netloc
    canonical_uri = quote(parts.path or "/", safe="/-_.~")
    payload_hash = hashlib.sha256(body).hexdigest()
    canonical_headers = f"content-type:{content_type}\nhost:{host}\nx-amz-date:{timestamp}\n"
    signed_headers = "content-type;host;x-amz-date"
    canonical_request = "\n".join(
        [method.upper(), canonical_uri, "", canonical_headers, signed_headers, payload_hash]
    )
    scope = f"{date_stamp}/{region}/{service}/aws4_request"
    string_to_sign = "\n".join(
        [
            "AWS4-HMAC-SHA256",
            timestamp,
            scope,
            hashlib.sha256(canonical_request.encode("utf-8")).hexdigest(),
        ]
    )
    signing_key = _hmac(("AWS4" + secret_key).encode("utf-8"), date_stamp)
    signing_key = _hmac(signing_key, region)
    signing_key = _hmac(signing_key, service)
    signing_key = _hmac(signing_key, "aws4_request")
    signature = hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()
    return {
        "Content-Type": content_type,
        "X-Amz-Date": timestamp,
        "Authorization": (
            f"AWS4-HMAC-SHA256 Credential={access_key}/{scope}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        ),
    }


@dataclass
class AwsAdapter(HttpProviderAdapter):
    name = "aws"
    credential_fields = (
        CredentialField("access_key_id", "Access Key ID"),
        CredentialField("secret_access_key", "Secret Access Key"),
    )
    catalog = AWS_CATALOG
    boot_seconds = 90

    def _endpoint(self, region: str) -> str:
        return f"https://ec2.{region}.amazonaws.com/"

    async def _sign_request(self, method, url, params, headers, body):
        region = urlsplit(url).netloc.split(".")[1]
        headers.update(
            sigv4_headers(
                method=method,
                url=url,
                body=body,
                access_key=self._credential("access_key_id"),
                secret_key=self._credential("secret_access_key"),
                region=region,
                service="ec2",
            )
        )
        return params, headers

    def _raise_for_response(self, response: httpx.Response, *, context: str) -> None:
        code, message = _parse_error(response.text)
        status = response.status_code
        if code in _AUTH_ERROR_CODES:
            status = 401
        elif code in {"RequestLimitExceeded", "Throttling"}:
            status = 429
        raise classify_http_status(
            status,
            f"aws {context} failed: {code or status}: {message or response.text[:300]}",
            retry_after_seconds=parse_retry_after(response.headers.get("Retry-After")),
            details={"provider": self.name, "error_code": code, "status_code": response.status_code},
        )

    async def _call(self, region: str, action: str, params: dict[str, Any], *, context: str, ok_statuses=()) -> ET.Element:
        form = {"Action": action, "Version": EC2_API_VERSION, **params}
        response = await self._send(
            "POST",
            self._endpoint(region),
            form=form,
            ok_statuses=ok_statuses,
            context=context,
        )
        return ET.fromstring(response.content or b"<Empty/>")

    async def validate_credentials(self) -> ValidationResult:
        async def _check() -> dict[str, Any]:
            root = await self._call(self.catalog.default_region, "DescribeRegions", {}, context="validate")
            regions = [_find_text(item, "regionName") for item in _iter_items(_find(root, "regionInfo"))]
            return {"regions": [r for r in regions if r]}

        return await self._probe(_check)

    async def _import_key_pair(self, region: str, request: CreateInstanceRequest) -> str | None:
        if not request.ssh_public_key:
            return None
        key_name = self._label(request)
        await self._call(
            region,
            "ImportKeyPair",
            {
                "KeyName": key_name,
                "PublicKeyMaterial": base64.b64encode(request.ssh_public_key.encode("utf-8")).decode("ascii"),
            },
            context="import key",
            ok_statuses=(400,),
        )
        return key_name

    async def create_instance(self, request: CreateInstanceRequest) -> CreatedInstance:
        region = request.region or self.catalog.default_region
        tier = self.catalog.tier(request.size)
        params: dict[str, Any] = {
            "ImageId": request.image or UBUNTU_AMI_PARAMETER,
            "InstanceType": tier.plan,
            "MinCount": "1",
            "MaxCount": "1",
            # EC2 returns the original reservation for a repeated ClientToken
            "ClientToken": request.client_request_id,
            "TagSpecification.1.ResourceType": "instance",
            "TagSpecification.1.Tag.1.Key": "Name",
            "TagSpecification.1.Tag.1.Value": self._label(request),
            "TagSpecification.1.Tag.2.Key": "hft-client-request-id",
            "TagSpecification.1.Tag.2.Value": request.client_request_id,
        }
        key_name = await self._import_key_pair(region, request)
        if key_name:
            params["KeyName"] = key_name
        if request.user_data:
            params["UserData"] = base64.b64encode(request.user_data.encode("utf-8")).decode("ascii")

        root = await self._call(region, "RunInstances", params, context="create")
        items = _iter_items(_find(root, "instancesSet"))
        if not items:
            raise classify_http_status(502, "aws create failed: RunInstances returned no instances")
        instance = items[0]
        instance_id = _find_text(instance, "instanceId") or ""
        return CreatedInstance(
            provider_instance_id=join_instance_ref(region, instance_id),
            expected_ready_time=self._expected_ready_time(),
            ip_address=_find_text(instance, "ipAddress"),
            raw={"instance_id": instance_id, "region": region},
        )

    async def get_instance_status(self, provider_instance_id: str) -> InstanceStatus:
        region, instance_id = split_instance_ref(provider_instance_id)
        root = await self._call(
            region,
            "DescribeInstances",
            {"InstanceId.1": instance_id},
            context="status",
            ok_statuses=(400,),
        )
        code, _ = _parse_error_element(root)
        if code in _NOT_FOUND_CODES:
            return InstanceStatus(state="destroyed")
        if code:
            raise classify_http_status(400, f"aws status failed: {code}")
        for reservation in _iter_items(_find(root, "reservationSet")):
            for instance in _iter_items(_find(reservation, "instancesSet")):
                raw_state = _find_text(instance, "instanceState/name")
                return InstanceStatus(
                    state=normalize_state(raw_state, _STATES),
                    ip_address=_find_text(instance, "ipAddress"),
                    raw={"instance_id": instance_id, "state": raw_state},
                )
        return InstanceStatus(state="destroyed")

    async def _instance_action(self, provider_instance_id: str, action: str, *, tolerate_missing: bool = False) -> None:
        region, instance_id = split_instance_ref(provider_instance_id)
        root = await self._call(
            region,
            action,
            {"InstanceId.1": instance_id},
            context=action,
            ok_statuses=(400,) if tolerate_missing else (),
        )
        code, message = _parse_error_element(root)
        if code and not (tolerate_missing and code in _NOT_FOUND_CODES):
            raise classify_http_status(400, f"aws {action} failed: {code}: {message}")

    async def reboot_instance(self, provider_instance_id: str) -> None:
        await self._instance_action(provider_instance_id, "RebootInstances")

    async def stop_instance(self, provider_instance_id: str) -> None:
        await self._instance_action(provider_instance_id, "StopInstances")

    async def start_instance(self, provider_instance_id: str) -> None:
        await self._instance_action(provider_instance_id, "StartInstances")

    async def destroy_instance(self, provider_instance_id: str) -> None:
        await self._instance_action(provider_instance_id, "TerminateInstances", tolerate_missing=True)


def _parse_error_element(root: ET.Element) -> tuple[str | None, str | None]:
    if _strip_ns(root.tag) != "Response":
        return None, None
    for error in _iter_errors(root):
        return _find_text(error, "Code"), _find_text(error, "Message")
    return None, None


def _iter_errors(root: ET.Element) -> list[ET.Element]:
    errors = _find(root, "Errors")
    if errors is None:
        return []
    return [child for child in errors if _strip_ns(child.tag) == "Error"]


def _parse_error(text: str) -> tuple[str | None, str | None]:
    try:
        root = ET.fromstring(text)
    except ET.ParseError:
        return None, None
    return _parse_error_element(root)
