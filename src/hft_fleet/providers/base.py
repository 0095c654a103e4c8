from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, ClassVar, Protocol
from urllib.parse import urlencode

import httpx

from hft_fleet.common.errors import (
    FleetError,
    NoCredentials,
    Permanent,
    Transient,
    classify_http_status,
    parse_retry_after,
)
from hft_fleet.common.retry import call_with_retries

logger = logging.getLogger(__name__)

MACHINE_STATES = {"creating", "running", "rebooting", "stopped", "error", "destroyed"}
SIZES = ("small", "medium", "large")


@dataclass(frozen=True)
class CredentialField:
    field_name: str
    display_name: str
    is_textarea: bool = False
    required: bool = True


@dataclass(frozen=True)
class Region:
    id: str
    name: str
    country: str
    latency_estimate_ms: int | None = None


@dataclass(frozen=True)
class PriceTier:
    hourly: Decimal
    monthly: Decimal
    plan: str
    is_free: bool = False


@dataclass(frozen=True)
class InstanceSpec:
    vcpus: int
    ram_gb: int
    disk_gb: int


INSTANCE_SPECS: dict[str, InstanceSpec] = {
    "small": InstanceSpec(vcpus=2, ram_gb=4, disk_gb=25),
    "medium": InstanceSpec(vcpus=4, ram_gb=8, disk_gb=50),
    "large": InstanceSpec(vcpus=8, ram_gb=16, disk_gb=100),
}


@dataclass(frozen=True)
class ProviderCatalog:
    display_name: str
    regions: tuple[Region, ...]
    pricing: dict[str, PriceTier]
    default_region: str

    def tier(self, size: str) -> PriceTier:
        tier = self.pricing.get((size or "").strip().lower())
        if tier is None:
            raise Permanent(f"Unsupported instance size: {size}", details={"sizes": list(self.pricing)})
        return tier

    def region(self, region_id: str) -> Region | None:
        for region in self.regions:
            if region.id == region_id:
                return region
        return None

    def monthly_cost(self, size: str = "medium") -> Decimal:
        tier = self.pricing.get(size)
        return tier.monthly if tier else Decimal("0")


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    message: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CreateInstanceRequest:
    region: str
    size: str
    client_request_id: str
    image: str | None = None
    ssh_public_key: str | None = None
    label: str | None = None
    user_data: str | None = None


@dataclass(frozen=True)
class CreatedInstance:
    provider_instance_id: str
    expected_ready_time: datetime
    ip_address: str | None = None
    already_existed: bool = False
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InstanceStatus:
    state: str
    ip_address: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


class ProviderAdapter(Protocol):
    name: ClassVar[str]
    credential_fields: ClassVar[tuple[CredentialField, ...]]
    catalog: ClassVar[ProviderCatalog]

    async def validate_credentials(self) -> ValidationResult:
        ...

    async def create_instance(self, request: CreateInstanceRequest) -> CreatedInstance:
        ...

    async def get_instance_status(self, provider_instance_id: str) -> InstanceStatus:
        ...

    async def reboot_instance(self, provider_instance_id: str) -> None:
        ...

    async def stop_instance(self, provider_instance_id: str) -> None:
        ...

    async def start_instance(self, provider_instance_id: str) -> None:
        ...

    async def destroy_instance(self, provider_instance_id: str) -> None:
        ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def split_instance_ref(ref: str) -> tuple[str, str]:
    """Split a ``scope/id`` instance reference used by providers with regional ids."""
    scope, sep, instance_id = (ref or "").partition("/")
    if not sep or not scope or not instance_id:
        raise Permanent(f"Malformed instance reference: {ref}")
    return scope, instance_id


def join_instance_ref(scope: str, instance_id: str) -> str:
    return f"{scope}/{instance_id}"


def normalize_state(raw_state: str | None, mapping: dict[str, str]) -> str:
    key = (raw_state or "").strip().lower()
    state = mapping.get(key)
    if state is None:
        logger.warning("Unknown provider instance state", extra={"raw_state": raw_state})
        return "error"
    return state


@dataclass
class HttpProviderAdapter:
    """
    Shared plumbing for REST/RPC cloud adapters.

    Subclasses set the class-level catalog and credential schema, implement
    ``_sign_request`` for their auth shape and the seven lifecycle calls.
    Every outbound call goes through ``_send`` which maps HTTP failures to
    AuthError / RateLimited / Transient / Permanent and retries the
    retriable ones with 1s, 2s, 4s backoff. Creates on providers without a
    server-side idempotency token go through ``_create_without_replay``.
    """

    name: ClassVar[str] = ""
    base_url: ClassVar[str] = ""
    credential_fields: ClassVar[tuple[CredentialField, ...]] = ()
    catalog: ClassVar[ProviderCatalog]
    boot_seconds: ClassVar[int] = 90

    credentials: dict[str, str]
    timeout_seconds: float = 30.0
    transport: httpx.AsyncBaseTransport | None = None
    max_attempts: int = 3
    retry_base_seconds: float = 1.0

    def __post_init__(self) -> None:
        missing = [
            f.field_name
            for f in self.credential_fields
            if f.required and not (self.credentials.get(f.field_name) or "").strip()
        ]
        if missing:
            raise NoCredentials(
                f"{self.name} credentials incomplete",
                details={"provider": self.name, "missing_fields": missing},
            )

    def _credential(self, field_name: str, default: str = "") -> str:
        return (self.credentials.get(field_name) or default).strip()

    def _build_timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.timeout_seconds, connect=min(self.timeout_seconds, 10.0))

    def _expected_ready_time(self) -> datetime:
        return _now_utc() + timedelta(seconds=self.boot_seconds)

    def _label(self, request: CreateInstanceRequest) -> str:
        return request.label or f"hft-bot-{request.client_request_id[:8]}"

    async def _sign_request(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        headers: dict[str, str],
        body: bytes,
    ) -> tuple[dict[str, Any] | None, dict[str, str]]:
        return params, headers

    def _error_message(self, response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            for key in ("error", "message", "Message", "error_description"):
                value = payload.get(key)
                if isinstance(value, dict):
                    value = value.get("message") or value.get("code")
                if value:
                    return str(value)
        text = (response.text or "").strip()
        return text[:500] if text else f"HTTP {response.status_code}"

    def _raise_for_response(self, response: httpx.Response, *, context: str) -> None:
        message = f"{self.name} {context} failed: {self._error_message(response)}"
        raise classify_http_status(
            response.status_code,
            message,
            retry_after_seconds=parse_retry_after(response.headers.get("Retry-After")),
            details={"provider": self.name, "status_code": response.status_code},
        )

    async def _send_once(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None,
        headers: dict[str, str],
        body: bytes,
        ok_statuses: tuple[int, ...],
        context: str,
    ) -> httpx.Response:
        signed_params, signed_headers = await self._sign_request(method, url, params, dict(headers), body)
        try:
            async with httpx.AsyncClient(timeout=self._build_timeout(), transport=self.transport) as client:
                response = await client.request(
                    method,
                    url,
                    params=signed_params,
                    headers=signed_headers,
                    content=body or None,
                )
        except httpx.HTTPError as exc:
            raise Transient(
                f"{self.name} {context} request failed: {exc.__class__.__name__}: {exc}",
                details={"provider": self.name},
            ) from exc
        if 200 <= response.status_code < 300 or response.status_code in ok_statuses:
            return response
        self._raise_for_response(response, context=context)
        return response

    async def _send(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        form: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        ok_statuses: tuple[int, ...] = (),
        context: str = "request",
        retry: bool = True,
    ) -> httpx.Response:
        request_headers = dict(headers or {})
        body = b""
        if json_body is not None:
            body = json.dumps(json_body, separators=(",", ":")).encode("utf-8")
            request_headers.setdefault("Content-Type", "application/json")
        elif form is not None:
            body = urlencode(form, doseq=True).encode("utf-8")
            request_headers.setdefault("Content-Type", "application/x-www-form-urlencoded")

        async def _attempt() -> httpx.Response:
            return await self._send_once(
                method,
                url,
                params=params,
                headers=request_headers,
                body=body,
                ok_statuses=ok_statuses,
                context=context,
            )

        if not retry:
            return await _attempt()
        return await call_with_retries(
            _attempt,
            attempts=self.max_attempts,
            base_delay=self.retry_base_seconds,
            label=f"{self.name}:{context}",
        )

    async def _create_without_replay(
        self,
        send_create: Callable[[], Awaitable[CreatedInstance]],
        find_existing: Callable[[], Awaitable[CreatedInstance | None]],
    ) -> CreatedInstance:
        """
        Create for providers that have no server-side idempotency token.

        A timed-out POST may still have been accepted, so before the create is
        sent again the provider is searched for the instance by its
        client_request_id tag and an existing one is adopted instead.
        """
        sent = False

        async def _attempt() -> CreatedInstance:
            nonlocal sent
            if sent:
                found = await find_existing()
                if found is not None:
                    logger.info(
                        "Adopted instance from an earlier create attempt",
                        extra={"provider": self.name, "provider_instance_id": found.provider_instance_id},
                    )
                    return found
            sent = True
            return await send_create()

        return await call_with_retries(
            _attempt,
            attempts=self.max_attempts,
            base_delay=self.retry_base_seconds,
            label=f"{self.name}:create",
        )

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {"items": payload}

    async def _probe(self, operation) -> ValidationResult:
        try:
            details = await operation()
        except FleetError as exc:
            return ValidationResult(valid=False, message=str(exc), details={"error_kind": exc.error_kind})
        return ValidationResult(valid=True, message="Credentials accepted", details=details or {})
