import json

import httpx
import pytest

from hft_fleet.common.errors import AuthError, NoCredentials, Permanent, RateLimited, Transient, classify_http_status
from hft_fleet.providers.base import CreateInstanceRequest
from hft_fleet.providers.registry import PROVIDER_ADAPTERS, get_provider_adapter, list_providers, pricing_summary
from hft_fleet.providers.vultr import VultrAdapter


def _vultr(handler) -> VultrAdapter:
    return VultrAdapter(credentials={"api_key": "vk"}, transport=httpx.MockTransport(handler), retry_base_seconds=0)


def test_classify_http_status():
    assert isinstance(classify_http_status(401, "x"), AuthError)
    assert isinstance(classify_http_status(403, "x"), AuthError)
    limited = classify_http_status(429, "x", retry_after_seconds=7)
    assert isinstance(limited, RateLimited)
    assert limited.retriable is True
    assert limited.retry_after_seconds == 7
    assert isinstance(classify_http_status(502, "x"), Transient)
    assert isinstance(classify_http_status(408, "x"), Transient)
    permanent = classify_http_status(422, "x")
    assert isinstance(permanent, Permanent)
    assert permanent.retriable is False


def test_registry_covers_all_providers():
    assert set(PROVIDER_ADAPTERS) == {"vultr", "digitalocean", "aws", "contabo", "oracle", "gcp", "alibaba", "azure"}
    names = [row["provider"] for row in list_providers()]
    assert names == list(PROVIDER_ADAPTERS)
    rows = pricing_summary("Vultr")
    assert [row["size"] for row in rows] == ["small", "medium", "large"]
    assert rows[1]["monthly"] == "20.00"
    with pytest.raises(Permanent):
        pricing_summary("hetzner")


def test_missing_credentials_are_rejected():
    with pytest.raises(NoCredentials) as excinfo:
        get_provider_adapter("vultr", {"api_key": "  "})
    assert excinfo.value.details["missing_fields"] == ["api_key"]


@pytest.mark.asyncio
async def test_vultr_create_sends_plan_and_tag():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        assert request.headers["Authorization"] == "Bearer vk"
        if request.method == "GET":
            return httpx.Response(200, json={"instances": []})
        return httpx.Response(202, json={"instance": {"id": "inst-1", "main_ip": "0.0.0.0", "status": "pending"}})

    created = await _vultr(handler).create_instance(
        CreateInstanceRequest(region="nrt", size="medium", client_request_id="req-1234567890")
    )

    assert created.provider_instance_id == "inst-1"
    assert created.ip_address is None
    assert created.already_existed is False
    body = json.loads(seen[-1].content)
    assert body["plan"] == "vc2-2c-4gb"
    assert body["region"] == "nrt"
    assert body["tags"] == ["req-1234567890"]
    assert body["label"] == "hft-bot-req-1234"


@pytest.mark.asyncio
async def test_vultr_create_replay_finds_tagged_instance():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.method)
        return httpx.Response(200, json={"instances": [{"id": "inst-1", "main_ip": "1.2.3.4"}]})

    created = await _vultr(handler).create_instance(
        CreateInstanceRequest(region="nrt", size="medium", client_request_id="req-1")
    )

    assert calls == ["GET"]
    assert created.already_existed is True
    assert created.ip_address == "1.2.3.4"


@pytest.mark.asyncio
async def test_vultr_create_timeout_adopts_accepted_instance():
    posts = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            posts.append(request)
            raise httpx.ReadTimeout("timed out", request=request)
        if posts:
            return httpx.Response(200, json={"instances": [{"id": "inst-9", "main_ip": "5.6.7.8"}]})
        return httpx.Response(200, json={"instances": []})

    created = await _vultr(handler).create_instance(
        CreateInstanceRequest(region="nrt", size="medium", client_request_id="req-1")
    )

    assert len(posts) == 1
    assert created.provider_instance_id == "inst-9"
    assert created.already_existed is True


@pytest.mark.asyncio
async def test_vultr_create_is_resent_only_when_nothing_was_created():
    posts = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, json={"instances": []})
        posts.append(request)
        if len(posts) == 1:
            return httpx.Response(503, json={"error": "busy"})
        return httpx.Response(202, json={"instance": {"id": "inst-2", "main_ip": "0.0.0.0"}})

    created = await _vultr(handler).create_instance(
        CreateInstanceRequest(region="nrt", size="medium", client_request_id="req-2")
    )

    assert len(posts) == 2
    assert created.provider_instance_id == "inst-2"
    assert created.already_existed is False


@pytest.mark.asyncio
async def test_vultr_status_mapping():
    payloads = {
        "a": {"status": "active", "power_status": "running", "server_status": "ok", "main_ip": "1.2.3.4"},
        "b": {"status": "active", "power_status": "stopped", "server_status": "ok", "main_ip": "1.2.3.4"},
        "c": {"status": "active", "power_status": "running", "server_status": "installingbooting", "main_ip": "1.2.3.4"},
        "d": {"status": "weird"},
    }

    def handler(request: httpx.Request) -> httpx.Response:
        instance_id = request.url.path.rsplit("/", 1)[-1]
        if instance_id == "gone":
            return httpx.Response(404, json={"error": "not found"})
        return httpx.Response(200, json={"instance": payloads[instance_id]})

    adapter = _vultr(handler)
    running = await adapter.get_instance_status("a")
    assert (running.state, running.ip_address) == ("running", "1.2.3.4")
    assert (await adapter.get_instance_status("b")).state == "stopped"
    assert (await adapter.get_instance_status("c")).state == "creating"
    assert (await adapter.get_instance_status("d")).state == "error"
    assert (await adapter.get_instance_status("gone")).state == "destroyed"


@pytest.mark.asyncio
async def test_transient_errors_are_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) < 3:
            return httpx.Response(503, json={"error": "busy"})
        return httpx.Response(204)

    await _vultr(handler).reboot_instance("inst-1")

    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_auth_errors_are_not_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(401, json={"error": "Invalid API token"})

    with pytest.raises(AuthError) as excinfo:
        await _vultr(handler).reboot_instance("inst-1")

    assert len(attempts) == 1
    assert "Invalid API token" in excinfo.value.message


@pytest.mark.asyncio
async def test_validate_credentials_reports_instead_of_raising():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"error": "forbidden"})

    result = await _vultr(handler).validate_credentials()

    assert result.valid is False
    assert result.details["error_kind"] == "AuthError"


@pytest.mark.asyncio
async def test_destroy_tolerates_missing_instance():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "DELETE"
        return httpx.Response(404, json={"error": "not found"})

    await _vultr(handler).destroy_instance("inst-1")
