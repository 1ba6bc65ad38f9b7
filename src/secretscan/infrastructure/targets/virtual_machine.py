"""
Virtual machine scan target.

Talks to the scanning agent running on a VM over its HTTP API. The agent
only ever receives regex bundles, never secret values:

- ``POST /api/v1/scan`` submits a scan job and returns its id;
- ``GET /api/v1/scan/{id}`` is polled until the job completes;
- ``POST /api/v1/scanconsumer`` and ``GET /api/v1/scanconsumer/{id}`` do the
  same for consumer (process) attribution.
"""

import asyncio
import hashlib
import logging
import os
import ssl
import tempfile
from datetime import datetime, timezone
from typing import Optional, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from secretscan.core.config import VirtualMachineConfig
from secretscan.core.models import (
    TARGET_API_VERSION,
    VIRTUAL_MACHINE_KIND,
    ConsumerFinding,
    SecretLocation,
    SecretUpdateRecord,
    TargetObject,
)
from secretscan.infrastructure.errors import (
    NonRetryableError,
    RetryableError,
    TargetError,
    TargetTimeoutError,
)
from secretscan.infrastructure.interfaces import (
    ClusterClient,
    Disclosure,
    ScanTarget,
    TargetProvider,
)
from secretscan.infrastructure.retry import RetryConfig, with_retry

logger = logging.getLogger(__name__)

JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

_Model = TypeVar("_Model", bound=BaseModel)


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ScanRequest(_WireModel):
    regexes: list[str]
    threshold: int
    paths: list[str] = Field(default_factory=list)


class ScanResponse(_WireModel):
    job_id: str = Field(alias="jobId")


class Match(_WireModel):
    key: str
    property: str = ""
    match_count: Optional[int] = Field(default=None, alias="matchCount")


class ScanJobResponse(_WireModel):
    job_id: str = Field(default="", alias="jobId")
    status: str
    match: Optional[list[Match]] = None


class ConsumerRequest(_WireModel):
    location: dict
    hash: str
    paths: list[str] = Field(default_factory=list)


class ProcessAttributes(_WireModel):
    hostname: str = ""
    pid: int = 0
    executable: str = ""
    cmdline: Optional[list[str]] = None
    user: str = ""


class ConsumerReport(_WireModel):
    attributes: ProcessAttributes = Field(default_factory=ProcessAttributes)
    start_timestamp: str = Field(default="", alias="startTimestamp")


class ConsumerScanJobResponse(_WireModel):
    job_id: str = Field(default="", alias="jobId")
    status: str
    consumers: Optional[list[ConsumerReport]] = None


def stable_consumer_id(attributes: ProcessAttributes) -> str:
    """Identify a process by host, executable and normalised command line."""
    host = attributes.hostname.strip().lower()
    exe = attributes.executable.strip()
    cmd = " ".join(" ".join(attributes.cmdline or []).split())
    return hashlib.sha512(f"{host}|{exe}|{cmd}".encode("utf-8")).hexdigest()


_TIMESTAMP_FORMATS = (
    "%a %b %d %H:%M:%S %Y",
    "%a %b %d %H:%M:%S %Z %Y",
    "%a %Y-%m-%d %H:%M:%S %Z",
    "%a %Y-%m-%d %H:%M:%S %z",
)


def parse_start_timestamp(value: str) -> Optional[datetime]:
    """Parse a process start time as reported by the agent (ISO 8601, ctime or systemd style)."""
    value = value.strip()
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
        for fmt in _TIMESTAMP_FORMATS:
            try:
                parsed = datetime.strptime(" ".join(value.split()), fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class VirtualMachineTarget(ScanTarget):
    """
    Untrusted VM agent. Receives regex bundles only.

    Reported matches whose ``matchCount`` is below the bundle threshold are
    rejected here, whatever the agent claims.
    """

    disclosure = Disclosure.OBLIVIOUS
    supports_consumers = True

    def __init__(
        self,
        name: str,
        url: str,
        paths: Optional[list[str]] = None,
        config: Optional[VirtualMachineConfig] = None,
        auth: Optional[httpx.Auth] = None,
        headers: Optional[dict[str, str]] = None,
        verify: ssl.SSLContext | bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._name = name
        self._url = url.rstrip("/")
        self._paths = list(paths or [])
        self._config = config or VirtualMachineConfig()
        self._retry_config = RetryConfig(max_retries=self._config.max_retries)
        self._client = httpx.AsyncClient(
            base_url=self._url,
            auth=auth,
            headers=headers,
            verify=verify,
            timeout=self._config.request_timeout,
            transport=transport,
        )

    @property
    def name(self) -> str:
        return self._name

    async def close(self) -> None:
        """Close the HTTP client and release connections."""
        if not self._client.is_closed:
            await self._client.aclose()

    async def validate(self) -> None:
        """
        Submit a harmless scan to check connectivity and credentials.

        Raises:
            NonRetryableError: If the agent rejects the credentials
            TargetError: If the agent is unreachable
        """
        request = ScanRequest(regexes=[], threshold=1, paths=self._paths)
        await self._call(
            lambda: self._request("POST", "/api/v1/scan", ScanResponse, request)
        )
        logger.info("Validated VM agent", extra={"target": self._name})

    async def scan_for_secrets(
        self, patterns: list[str], threshold: int
    ) -> list[SecretLocation]:
        """
        Submit a regex bundle and wait for the agent's verdict.

        Args:
            patterns: Shuffled regex bundle
            threshold: Minimum matches for a reported location to count

        Returns:
            Locations on this VM that hold the secret

        Raises:
            TargetTimeoutError: If the job does not complete in time
            TargetError: For HTTP or decode failures
        """
        request = ScanRequest(regexes=list(patterns), threshold=threshold, paths=self._paths)
        submitted = await self._call(
            lambda: self._request("POST", "/api/v1/scan", ScanResponse, request)
        )
        job = await self._wait_for_job(f"/api/v1/scan/{submitted.job_id}", ScanJobResponse)

        locations = []
        for match in job.match or []:
            if match.match_count is not None and match.match_count < threshold:
                logger.debug(
                    "Rejected match below threshold",
                    extra={"target": self._name, "match_count": match.match_count},
                )
                continue
            locations.append(
                SecretLocation(
                    name=self._name,
                    kind=VIRTUAL_MACHINE_KIND,
                    api_version=TARGET_API_VERSION,
                    key=match.key,
                    property=match.property,
                )
            )
        return locations

    async def scan_for_consumers(
        self, location: SecretLocation, content_hash: str
    ) -> list[ConsumerFinding]:
        """Ask the agent which processes read the file holding the secret."""
        request = ConsumerRequest(
            location=location.to_dict(), hash=content_hash, paths=self._paths
        )
        submitted = await self._call(
            lambda: self._request("POST", "/api/v1/scanconsumer", ScanResponse, request)
        )
        job = await self._wait_for_job(
            f"/api/v1/scanconsumer/{submitted.job_id}", ConsumerScanJobResponse
        )

        findings = []
        for report in job.consumers or []:
            attrs = report.attributes
            observed_at = parse_start_timestamp(report.start_timestamp)
            if observed_at is None:
                if report.start_timestamp:
                    logger.warning(
                        "Unparseable process start time",
                        extra={"target": self._name, "value": report.start_timestamp},
                    )
                observed_at = datetime.now(timezone.utc)
            findings.append(
                ConsumerFinding(
                    location=location,
                    type=VIRTUAL_MACHINE_KIND,
                    id=stable_consumer_id(attrs),
                    display_name=attrs.hostname or attrs.executable,
                    attributes={
                        "hostname": attrs.hostname,
                        "pid": str(attrs.pid),
                        "executable": attrs.executable,
                        "user": attrs.user,
                    },
                    observed_index=SecretUpdateRecord(
                        timestamp=observed_at, secret_hash=content_hash
                    ),
                )
            )
        return findings

    async def _wait_for_job(self, path: str, model: type[_Model]) -> _Model:
        async def poll():
            while True:
                job = await self._call(lambda: self._request("GET", path, model))
                if job.status == JOB_COMPLETED:
                    return job
                if job.status == JOB_FAILED:
                    raise NonRetryableError(f"Scan job failed on {self._name}: {path}")
                await asyncio.sleep(self._config.poll_interval)

        try:
            return await asyncio.wait_for(poll(), timeout=self._config.scan_timeout)
        except asyncio.TimeoutError as e:
            raise TargetTimeoutError(
                f"Scan job on {self._name} did not complete within "
                f"{self._config.scan_timeout:.0f}s: {path}"
            ) from e

    async def _call(self, operation):
        return await with_retry(operation, self._retry_config)

    async def _request(
        self,
        method: str,
        path: str,
        model: type[_Model],
        body: Optional[BaseModel] = None,
    ) -> _Model:
        """
        Make one HTTP call and decode the response.

        Raises:
            RetryableError: For rate limits, server errors and transport failures
            NonRetryableError: For auth failures, other 4xx and undecodable bodies
        """
        payload = body.model_dump(by_alias=True) if body is not None else None
        try:
            response = await self._client.request(method, path, json=payload)
        except httpx.TimeoutException as e:
            raise RetryableError(f"Request timeout: {e}")
        except httpx.ConnectError as e:
            raise RetryableError(f"Connection error: {e}")
        except httpx.RequestError as e:
            raise RetryableError(f"Request error: {e}")

        status = response.status_code
        if status == 429:
            raise RetryableError(f"Rate limited: {status} - {response.text}")
        elif status >= 500:
            raise RetryableError(f"Server error: {status} - {response.text}")
        elif status in (401, 403):
            raise NonRetryableError(
                f"Unauthorized: {status} (target={self._name}, url={self._url}{path})"
            )
        elif status >= 400:
            raise NonRetryableError(
                f"Agent error: {status} - {response.text} (target={self._name}, path={path})"
            )

        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise NonRetryableError(f"Invalid response from {self._name}{path}: {e}") from e


def _build_ssl_context(
    ca_bundle: str, client_cert: Optional[bytes], client_key: Optional[bytes]
) -> ssl.SSLContext | bool:
    if not ca_bundle and not client_cert:
        return True
    context = ssl.create_default_context(cadata=ca_bundle or None)
    if client_cert and client_key:
        # load_cert_chain only reads from files
        with tempfile.TemporaryDirectory() as tmp:
            cert_path = os.path.join(tmp, "tls.crt")
            key_path = os.path.join(tmp, "tls.key")
            with open(cert_path, "wb") as f:
                f.write(client_cert)
            with open(key_path, "wb") as f:
                f.write(client_key)
            context.load_cert_chain(cert_path, key_path)
    return context


class VirtualMachineProvider(TargetProvider):
    """Builds VirtualMachineTarget clients, resolving credentials through the cluster."""

    def __init__(
        self,
        config: Optional[VirtualMachineConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._config = config or VirtualMachineConfig()
        self._transport = transport

    async def new_client(self, cluster: ClusterClient, target: TargetObject) -> ScanTarget:
        spec = target.spec
        url = spec.get("url")
        if not url:
            raise TargetError(f"VirtualMachine {target.namespace}/{target.name} has no spec.url")

        auth_spec = spec.get("auth") or {}
        auth: Optional[httpx.Auth] = None
        headers: dict[str, str] = {}
        client_cert = client_key = None
        try:
            basic = auth_spec.get("basic")
            if basic:
                username = await self._read_ref(cluster, target, basic["usernameSecretRef"])
                password = await self._read_ref(cluster, target, basic["passwordSecretRef"])
                auth = httpx.BasicAuth(username.decode("utf-8"), password.decode("utf-8"))
            bearer = auth_spec.get("bearer")
            if bearer and auth is None:
                token = await self._read_ref(cluster, target, bearer["tokenSecretRef"])
                headers["Authorization"] = f"Bearer {token.decode('utf-8').strip()}"
            certificate = auth_spec.get("certificate")
            if certificate:
                client_cert = await self._read_ref(
                    cluster, target, certificate["clientCertificateSecretRef"]
                )
                client_key = await self._read_ref(
                    cluster, target, certificate["clientKeySecretRef"]
                )
        except KeyError as e:
            raise TargetError(
                f"VirtualMachine {target.namespace}/{target.name}: missing credential {e}"
            ) from e

        try:
            verify = _build_ssl_context(spec.get("caBundle", ""), client_cert, client_key)
        except ssl.SSLError as e:
            raise TargetError(
                f"VirtualMachine {target.namespace}/{target.name}: invalid TLS material: {e}"
            ) from e

        return VirtualMachineTarget(
            name=target.name,
            url=url,
            paths=spec.get("paths") or [],
            config=self._config,
            auth=auth,
            headers=headers or None,
            verify=verify,
            transport=self._transport,
        )

    @staticmethod
    async def _read_ref(cluster: ClusterClient, target: TargetObject, ref: dict) -> bytes:
        namespace = ref.get("namespace") or target.namespace
        return await cluster.read_secret_key(namespace, ref["name"], ref["key"])
