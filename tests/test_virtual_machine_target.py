"""
Tests for the VM agent target against a mocked agent API.
"""

import base64
import json
from datetime import datetime, timezone
from typing import Optional

import httpx
import pytest

from secretscan.core.config import VirtualMachineConfig
from secretscan.core.models import SecretLocation, TargetObject
from secretscan.infrastructure.errors import (
    NonRetryableError,
    TargetError,
    TargetTimeoutError,
)
from secretscan.infrastructure.memory_cluster import InMemoryClusterClient
from secretscan.infrastructure.targets.virtual_machine import (
    ProcessAttributes,
    VirtualMachineProvider,
    VirtualMachineTarget,
    parse_start_timestamp,
    stable_consumer_id,
)

URL = "https://vm.example:8443"
FAST = VirtualMachineConfig(poll_interval=0, scan_timeout=5, request_timeout=5, max_retries=0)


class FakeAgent:
    """Minimal stand-in for the agent's scan API."""

    def __init__(
        self,
        matches: Optional[list[dict]] = None,
        statuses: tuple[str, ...] = ("completed",),
        consumers: Optional[list[dict]] = None,
        status_code: int = 200,
    ):
        self.matches = matches or []
        self.statuses = list(statuses)
        self.consumers = consumers or []
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def _next_status(self) -> str:
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code != 200:
            return httpx.Response(self.status_code, text="denied")

        path = request.url.path
        if request.method == "POST" and path == "/api/v1/scan":
            return httpx.Response(200, json={"jobId": "job-1"})
        if request.method == "GET" and path == "/api/v1/scan/job-1":
            status = self._next_status()
            body = {"jobId": "job-1", "status": status}
            if status == "completed":
                body["match"] = self.matches
            return httpx.Response(200, json=body)
        if request.method == "POST" and path == "/api/v1/scanconsumer":
            return httpx.Response(200, json={"jobId": "c-1"})
        if request.method == "GET" and path == "/api/v1/scanconsumer/c-1":
            return httpx.Response(
                200, json={"jobId": "c-1", "status": "completed", "consumers": self.consumers}
            )
        return httpx.Response(404)


def _target(agent: FakeAgent, config: VirtualMachineConfig = FAST) -> VirtualMachineTarget:
    return VirtualMachineTarget(
        name="build-vm",
        url=URL,
        paths=["/etc"],
        config=config,
        transport=httpx.MockTransport(agent),
    )


class TestScanForSecrets:
    @pytest.mark.asyncio
    async def test_matches_below_threshold_are_rejected(self):
        agent = FakeAgent(
            matches=[
                {"key": "/etc/app.env", "matchCount": 10},
                {"key": "/etc/old.env", "matchCount": 5},
                {"key": "/etc/legacy.env"},
            ]
        )
        target = _target(agent)

        locations = await target.scan_for_secrets(["[a][b]", "[c][d]"], 9)
        await target.close()

        assert [loc.key for loc in locations] == ["/etc/app.env", "/etc/legacy.env"]
        assert all(loc.kind == "VirtualMachine" and loc.name == "build-vm" for loc in locations)
        submitted = json.loads(agent.requests[0].content)
        assert submitted == {"regexes": ["[a][b]", "[c][d]"], "threshold": 9, "paths": ["/etc"]}

    @pytest.mark.asyncio
    async def test_polls_until_completed(self):
        agent = FakeAgent(
            matches=[{"key": "/etc/app.env", "property": "DB_PASSWORD", "matchCount": 10}],
            statuses=("pending", "running", "completed"),
        )
        target = _target(agent)

        locations = await target.scan_for_secrets(["[a]"], 1)

        polls = [r for r in agent.requests if r.method == "GET"]
        assert len(polls) == 3
        assert locations[0].property == "DB_PASSWORD"

    @pytest.mark.asyncio
    async def test_job_that_never_completes_times_out(self):
        agent = FakeAgent(statuses=("running",))
        config = VirtualMachineConfig(
            poll_interval=0.01, scan_timeout=0.05, request_timeout=5, max_retries=0
        )
        target = _target(agent, config)

        with pytest.raises(TargetTimeoutError):
            await target.scan_for_secrets(["[a]"], 1)

    @pytest.mark.asyncio
    async def test_failed_job_is_not_retried(self):
        target = _target(FakeAgent(statuses=("failed",)))

        with pytest.raises(NonRetryableError):
            await target.scan_for_secrets(["[a]"], 1)

    @pytest.mark.asyncio
    async def test_unauthorized_is_non_retryable(self):
        agent = FakeAgent(status_code=401)
        target = _target(agent)

        with pytest.raises(NonRetryableError, match="Unauthorized"):
            await target.scan_for_secrets(["[a]"], 1)
        assert len(agent.requests) == 1

    @pytest.mark.asyncio
    async def test_server_error_exhausts_retries(self):
        agent = FakeAgent(status_code=503)
        target = _target(agent)

        with pytest.raises(TargetError) as exc_info:
            await target.scan_for_secrets(["[a]"], 1)

        assert not isinstance(exc_info.value, NonRetryableError)
        assert len(agent.requests) == 1

    @pytest.mark.asyncio
    async def test_undecodable_response_is_rejected(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>proxy error</html>")

        target = VirtualMachineTarget(
            name="build-vm", url=URL, config=FAST, transport=httpx.MockTransport(handler)
        )

        with pytest.raises(NonRetryableError, match="Invalid response"):
            await target.scan_for_secrets(["[a]"], 1)


class TestValidate:
    @pytest.mark.asyncio
    async def test_submits_empty_scan(self):
        agent = FakeAgent()
        target = _target(agent)

        await target.validate()

        assert json.loads(agent.requests[0].content) == {
            "regexes": [],
            "threshold": 1,
            "paths": ["/etc"],
        }

    @pytest.mark.asyncio
    async def test_forbidden_is_reported(self):
        target = _target(FakeAgent(status_code=403))

        with pytest.raises(NonRetryableError, match="Unauthorized"):
            await target.validate()


class TestScanForConsumers:
    @pytest.mark.asyncio
    async def test_reports_become_consumer_findings(self):
        attributes = {
            "hostname": "build-host",
            "pid": 4242,
            "executable": "/usr/bin/app",
            "cmdline": ["/usr/bin/app", "--config", "/etc/app.env"],
            "user": "svc",
        }
        agent = FakeAgent(
            consumers=[{"attributes": attributes, "startTimestamp": "2024-05-01T12:00:00Z"}]
        )
        target = _target(agent)
        location = SecretLocation(
            name="build-vm", kind="VirtualMachine", api_version="v1alpha1", key="/etc/app.env"
        )
        findings = await target.scan_for_consumers(location, "abc123")

        assert len(findings) == 1
        finding = findings[0]
        assert finding.location == location
        assert finding.type == "VirtualMachine"
        assert finding.id == stable_consumer_id(ProcessAttributes(**attributes))
        assert finding.display_name == "build-host"
        assert finding.attributes == {
            "hostname": "build-host",
            "pid": "4242",
            "executable": "/usr/bin/app",
            "user": "svc",
        }
        assert finding.observed_index.secret_hash == "abc123"
        assert finding.observed_index.timestamp == datetime(2024, 5, 1, 12, tzinfo=timezone.utc)

        request = json.loads(agent.requests[0].content)
        assert request["hash"] == "abc123"
        assert request["location"]["remoteRef"] == {"key": "/etc/app.env"}


class TestHelpers:
    def test_consumer_id_normalises_host_and_whitespace(self):
        a = ProcessAttributes(hostname="Build-Host", executable="/bin/app", cmdline=["a", " b"])
        b = ProcessAttributes(hostname="build-host ", executable="/bin/app", cmdline=["a  b"])

        assert stable_consumer_id(a) == stable_consumer_id(b)
        assert len(stable_consumer_id(a)) == 128

    def test_consumer_id_ignores_pid(self):
        a = ProcessAttributes(hostname="h", executable="/bin/app", pid=1)
        b = ProcessAttributes(hostname="h", executable="/bin/app", pid=2)

        assert stable_consumer_id(a) == stable_consumer_id(b)

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("2024-05-01T12:00:00Z", datetime(2024, 5, 1, 12, tzinfo=timezone.utc)),
            ("Wed May  1 12:00:00 2024", datetime(2024, 5, 1, 12, tzinfo=timezone.utc)),
            ("", None),
            ("yesterday", None),
        ],
    )
    def test_parse_start_timestamp(self, value, expected):
        assert parse_start_timestamp(value) == expected


def _vm_object(spec: dict) -> TargetObject:
    return TargetObject(namespace="default", name="build-vm", kind="VirtualMachine", spec=spec)


class TestProvider:
    @pytest.mark.asyncio
    async def test_bearer_token_is_read_from_cluster_secret(self):
        cluster = InMemoryClusterClient()
        cluster.add_secret("default", "vm-creds", {"token": b"abc\n"})
        agent = FakeAgent()
        provider = VirtualMachineProvider(FAST, transport=httpx.MockTransport(agent))
        spec = {
            "url": URL,
            "auth": {"bearer": {"tokenSecretRef": {"name": "vm-creds", "key": "token"}}},
        }

        client = await provider.new_client(cluster, _vm_object(spec))
        await client.scan_for_secrets(["[a]"], 1)
        await client.close()

        assert agent.requests[0].headers["Authorization"] == "Bearer abc"

    @pytest.mark.asyncio
    async def test_basic_auth(self):
        cluster = InMemoryClusterClient()
        cluster.add_secret("default", "vm-creds", {"user": b"scanner", "pass": b"pw"})
        agent = FakeAgent()
        provider = VirtualMachineProvider(FAST, transport=httpx.MockTransport(agent))
        spec = {
            "url": URL,
            "auth": {
                "basic": {
                    "usernameSecretRef": {"name": "vm-creds", "key": "user"},
                    "passwordSecretRef": {"name": "vm-creds", "key": "pass"},
                }
            },
        }

        client = await provider.new_client(cluster, _vm_object(spec))
        await client.scan_for_secrets(["[a]"], 1)

        expected = base64.b64encode(b"scanner:pw").decode()
        assert agent.requests[0].headers["Authorization"] == f"Basic {expected}"

    @pytest.mark.asyncio
    async def test_missing_url_is_rejected(self):
        provider = VirtualMachineProvider(FAST)

        with pytest.raises(TargetError, match="spec.url"):
            await provider.new_client(InMemoryClusterClient(), _vm_object({}))

    @pytest.mark.asyncio
    async def test_missing_credential_is_rejected(self):
        provider = VirtualMachineProvider(FAST)
        spec = {
            "url": URL,
            "auth": {"bearer": {"tokenSecretRef": {"name": "absent", "key": "token"}}},
        }

        with pytest.raises(TargetError, match="missing credential"):
            await provider.new_client(InMemoryClusterClient(), _vm_object(spec))
