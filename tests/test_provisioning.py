import json

import httpx
import pytest
from sqlalchemy import select

from hft_fleet.common.errors import NoCredentials, Permanent, Transient
from hft_fleet.common.models import FailoverConfig, Machine, TimelineEvent
from hft_fleet.services.provisioning.credentials import credential_status, save_provider_credentials
from hft_fleet.services.provisioning.fleet import FleetProvisioner

from factories import no_sleep


class FakeVultr:
    """In-memory Vultr v2 API: instances boot after ``boot_polls`` status reads."""

    def __init__(self, *, boot_polls: int = 1, reject_create: bool = False):
        self.instances = {}
        self.polls = 0
        self.boot_polls = boot_polls
        self.reject_create = reject_create
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        path = request.url.path.removeprefix("/v2")
        if request.method == "GET" and path == "/instances":
            tag = request.url.params.get("tag")
            return httpx.Response(200, json={"instances": [i for i in self.instances.values() if tag in i["tags"]]})
        if request.method == "POST" and path == "/instances":
            if self.reject_create:
                return httpx.Response(422, json={"error": "plan not available in region"})
            body = json.loads(request.content)
            instance = {"id": f"inst-{len(self.instances) + 1}", "tags": body["tags"], "main_ip": "0.0.0.0", "status": "pending"}
            self.instances[instance["id"]] = instance
            return httpx.Response(202, json={"instance": instance})
        instance_id = path.split("/")[2]
        if instance_id not in self.instances:
            return httpx.Response(404, json={"error": "not found"})
        if request.method == "GET":
            self.polls += 1
            instance = self.instances[instance_id]
            if self.polls > self.boot_polls:
                instance.update(status="active", power_status="running", server_status="ok", main_ip="45.76.1.2")
            return httpx.Response(200, json={"instance": instance})
        if request.method == "DELETE":
            del self.instances[instance_id]
        return httpx.Response(204)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _provisioner(api: FakeVultr, **kwargs) -> FleetProvisioner:
    return FleetProvisioner(transport=httpx.MockTransport(api), poll_interval_seconds=0, sleep=no_sleep, **kwargs)


@pytest.mark.asyncio
async def test_deploy_wait_reboot_destroy(session, session_factory):
    await save_provider_credentials(session, "vultr", {"api_key": " vk "})
    api = FakeVultr()
    provisioner = _provisioner(api)

    deployed = await provisioner.deploy(session, provider="Vultr", region="nrt", client_request_id="req-1")

    machine = deployed["machine"]
    assert deployed["duplicate"] is False
    assert machine["provider_instance_id"] == "inst-1"
    assert machine["status"] == "creating"
    assert machine["ip_address"] is None
    assert deployed["deployment_id"]

    replay = await provisioner.deploy(session, provider="vultr", region="nrt", client_request_id="req-1")
    assert replay["duplicate"] is True
    assert [r for r in api.requests if r[0] == "POST"] == [("POST", "/v2/instances")]

    ready = await provisioner.wait_until_ready(session, machine["id"])
    assert ready["machine"]["status"] == "running"
    assert ready["machine"]["ip_address"] == "45.76.1.2"
    config = (await session.execute(select(FailoverConfig))).scalars().one()
    assert str(config.machine_id) == machine["id"]

    rebooted = await provisioner.reboot(session, machine["id"])
    assert rebooted["machine"]["status"] == "rebooting"

    await provisioner.follow_reboot(session_factory, machine["id"])
    session.expire_all()
    assert [m["status"] for m in await provisioner.list_machines(session)] == ["running"]

    destroyed = await provisioner.destroy(session, machine["id"])
    assert destroyed["machine"]["status"] == "destroyed"
    assert destroyed["was_primary"] is False
    await session.refresh(config)
    assert config.machine_id is None
    assert config.is_enabled is False
    assert api.instances == {}
    assert await provisioner.list_machines(session) == []
    assert len(await provisioner.list_machines(session, include_destroyed=True)) == 1


@pytest.mark.asyncio
async def test_deploy_needs_credentials_and_known_region(session):
    provisioner = _provisioner(FakeVultr())
    with pytest.raises(NoCredentials):
        await provisioner.deploy(session, provider="vultr")

    await save_provider_credentials(session, "vultr", {"api_key": "vk"})
    with pytest.raises(Permanent):
        await provisioner.deploy(session, provider="vultr", region="mars-1")
    with pytest.raises(Permanent):
        await provisioner.deploy(session, provider="vultr", size="huge")


@pytest.mark.asyncio
async def test_provider_rejection_marks_machine_error(session):
    await save_provider_credentials(session, "vultr", {"api_key": "vk"})

    with pytest.raises(Permanent):
        await _provisioner(FakeVultr(reject_create=True)).deploy(session, provider="vultr", client_request_id="req-9")

    machine = (await session.execute(select(Machine))).scalars().one()
    assert machine.status == "error"
    failed = (
        await session.execute(select(TimelineEvent).where(TimelineEvent.event_subtype == "failed"))
    ).scalars().one()
    assert "plan not available" in failed.description


@pytest.mark.asyncio
async def test_wait_gives_up_at_deadline(session):
    await save_provider_credentials(session, "vultr", {"api_key": "vk"})
    clock = FakeClock()

    async def tick(seconds):
        clock.now += 30

    provisioner = FleetProvisioner(
        transport=httpx.MockTransport(FakeVultr(boot_polls=100)),
        ready_timeout_seconds=60,
        poll_interval_seconds=30,
        sleep=tick,
        clock=clock,
    )
    deployed = await provisioner.deploy(session, provider="vultr")

    with pytest.raises(Transient) as excinfo:
        await provisioner.wait_until_ready(session, deployed["machine"]["id"])

    assert excinfo.value.details["state"] == "creating"


@pytest.mark.asyncio
async def test_credential_status_and_unknown_fields(session):
    before = await credential_status(session, "vultr")
    assert before["complete"] is False

    await save_provider_credentials(session, "vultr", {"api_key": "vk"})
    after = await credential_status(session, "vultr")
    assert after["complete"] is True
    assert after["fields"][0]["configured"] is True

    with pytest.raises(Permanent):
        await save_provider_credentials(session, "vultr", {"token": "x"})
