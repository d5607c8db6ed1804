from __future__ import annotations

import asyncio
import contextlib
import json
import os
import ssl
import tempfile
from pathlib import Path
from time import perf_counter
from typing import Dict, Optional
from urllib.parse import urlparse

import httpx

from etcdcluster.config import DEFAULT_ETCD_CLIENT_PORT
from etcdcluster.logger import get_logger
from etcdcluster.metrics import record_health_probe
from etcdcluster.services.certificates import CertificateError, CertificateSource, ClientCertificate

_logger = get_logger("services.healthcheck")

HEALTH_PATH = "/health"


class HealthCheckError(RuntimeError):
    def __init__(self, action: str, detail: str, *, endpoint: str = "") -> None:
        super().__init__(f"{action}: {detail}")
        self.action = action
        self.detail = detail
        self.endpoint = endpoint


class PortNotOpenError(HealthCheckError):
    def __init__(self, endpoint: str) -> None:
        super().__init__("healthcheck.dial", "etcd endpoint port is not open", endpoint=endpoint)


class MemberNotReadyError(HealthCheckError):
    def __init__(self, endpoint: str, status_code: int) -> None:
        super().__init__(
            "healthcheck.status",
            f"etcd member {endpoint} not ready, retry (HTTP {status_code})",
            endpoint=endpoint,
        )
        self.status_code = status_code


class MemberUnhealthyError(HealthCheckError):
    def __init__(self, endpoint: str, health: str, payload: str) -> None:
        super().__init__(
            "healthcheck.health",
            f"etcd member {endpoint} failed healthcheck: /health returned {health!r}",
            endpoint=endpoint,
        )
        self.health = health
        self.payload = payload


class HealthResponseParseError(HealthCheckError):
    def __init__(self, endpoint: str, reason: str, payload: str) -> None:
        super().__init__(
            "healthcheck.parse",
            f"etcd member {endpoint} returned a malformed health response: {reason}",
            endpoint=endpoint,
        )
        self.payload = payload


def member_health_url(endpoint: str) -> str:
    return f"{endpoint.rstrip('/')}{HEALTH_PATH}"


def parse_health_output(data: bytes, *, endpoint: str = "") -> None:
    """Accept only a JSON object whose ``health`` field is the string ``"true"``."""
    payload = data.decode("utf-8", errors="replace")
    try:
        parsed = json.loads(data)
    except ValueError as exc:
        raise HealthResponseParseError(endpoint, str(exc), payload) from exc
    if not isinstance(parsed, dict):
        raise HealthResponseParseError(endpoint, "expected a JSON object", payload)
    health = parsed.get("health")
    if health is None:
        # null reads like an absent field
        health = ""
    if not isinstance(health, str):
        raise HealthResponseParseError(endpoint, "field 'health' is not a string", payload)
    if health != "true":
        raise MemberUnhealthyError(endpoint, health, payload)


def build_ssl_context(ca_pem: bytes, client_cert: ClientCertificate) -> ssl.SSLContext:
    try:
        context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH, cadata=ca_pem.decode("ascii"))
    except (ssl.SSLError, ValueError) as exc:
        raise CertificateError("healthcheck.tls", f"unable to load etcd CA certificate: {exc}") from exc

    # ssl only loads certificate chains from files.
    with tempfile.TemporaryDirectory(prefix="etcd-client-") as tmp_dir:
        cert_path = Path(tmp_dir) / "client.crt"
        key_path = Path(tmp_dir) / "client.key"
        cert_path.write_bytes(client_cert.cert_pem)
        key_path.write_bytes(client_cert.key_pem)
        os.chmod(key_path, 0o600)
        try:
            context.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path))
        except ssl.SSLError as exc:
            raise CertificateError("healthcheck.tls", f"unable to load client certificate: {exc}") from exc
    return context


async def is_port_open(host: str, port: int, *, timeout_seconds: float) -> bool:
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout_seconds)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()
    return True


class EtcdHealthClient:
    """Mutual-TLS client probing etcd members of one cluster."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        cluster_name: str,
        dial_timeout_seconds: float,
    ) -> None:
        self._http = http
        self._cluster_name = cluster_name
        self._dial_timeout_seconds = dial_timeout_seconds
        self._logger = _logger.bind(cluster=cluster_name)

    @property
    def cluster_name(self) -> str:
        return self._cluster_name

    async def check_endpoint(self, endpoint: str) -> None:
        """Probe one member, failing fast when its client port is not listening."""
        parsed = urlparse(endpoint)
        try:
            host = parsed.hostname
            port = parsed.port or DEFAULT_ETCD_CLIENT_PORT
        except ValueError as exc:
            raise HealthCheckError(
                "healthcheck.url", f"invalid etcd endpoint url: {exc}", endpoint=endpoint
            ) from exc
        if not host:
            raise HealthCheckError(
                "healthcheck.url", f"invalid etcd endpoint url: {endpoint!r}", endpoint=endpoint
            )

        if not await is_port_open(host, port, timeout_seconds=self._dial_timeout_seconds):
            record_health_probe(variant="preflight", result="port_closed", duration_seconds=0.0)
            self._logger.info("healthcheck.port_closed", "etcd member port not open yet", endpoint=endpoint)
            raise PortNotOpenError(endpoint)
        await self._probe(endpoint, variant="preflight", close_connection=False)

    async def check_endpoints(self, endpoints: str) -> None:
        """Probe every member of a comma-joined endpoint list in order, stopping at the first failure.

        Connections are closed after each request so no authenticated
        connection outlives a member that gets replaced.
        """
        for endpoint in endpoints.split(","):
            await self._probe(endpoint.strip(), variant="direct", close_connection=True)

    async def _probe(self, endpoint: str, *, variant: str, close_connection: bool) -> None:
        url = member_health_url(endpoint)
        headers = {"Connection": "close"} if close_connection else {}
        result = "error"
        start = perf_counter()
        self._logger.debug("healthcheck.request", "Performing healthcheck", url=url, variant=variant)
        try:
            try:
                response = await self._http.get(url, headers=headers)
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                raise HealthCheckError(
                    "healthcheck.request",
                    f"error checking etcd member health: {type(exc).__name__}: {exc}",
                    endpoint=endpoint,
                ) from exc
            if response.status_code != httpx.codes.OK:
                result = "not_ready"
                raise MemberNotReadyError(endpoint, response.status_code)
            try:
                parse_health_output(response.content, endpoint=endpoint)
            except MemberUnhealthyError:
                result = "unhealthy"
                raise
            except HealthResponseParseError:
                result = "parse_error"
                raise
            result = "ok"
        except asyncio.CancelledError:
            result = "cancelled"
            raise
        finally:
            record_health_probe(variant=variant, result=result, duration_seconds=perf_counter() - start)
        self._logger.info("healthcheck.member.ready", "etcd member ready", url=url)

    async def aclose(self) -> None:
        await self._http.aclose()


async def create_health_client(
    cluster_name: str,
    certificates: CertificateSource,
    *,
    timeout_seconds: float,
    dial_timeout_seconds: float,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> EtcdHealthClient:
    ca_pem = await certificates.get_ca_cert(cluster_name)
    try:
        client_cert = await certificates.get_client_cert(cluster_name)
    except Exception as exc:  # noqa: BLE001
        raise CertificateError(
            "healthcheck.client_cert",
            f"error getting client cert for healthcheck: {exc}",
        ) from exc
    context = build_ssl_context(ca_pem, client_cert)
    # Probes go straight to the member, never through an environment proxy.
    http = httpx.AsyncClient(
        verify=context,
        timeout=timeout_seconds,
        transport=transport,
        trust_env=False,
    )
    return EtcdHealthClient(http, cluster_name=cluster_name, dial_timeout_seconds=dial_timeout_seconds)


class HealthClientCache:
    """Per-cluster health clients, built on first use and kept until closed.

    A failed build caches nothing, so the next pass retries from scratch.
    """

    def __init__(
        self,
        certificates: CertificateSource,
        *,
        timeout_seconds: float,
        dial_timeout_seconds: float,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._certificates = certificates
        self._timeout_seconds = timeout_seconds
        self._dial_timeout_seconds = dial_timeout_seconds
        self._transport = transport
        self._clients: Dict[str, EtcdHealthClient] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def cached(self, cluster_name: str) -> Optional[EtcdHealthClient]:
        return self._clients.get(cluster_name)

    async def get(self, cluster_name: str) -> EtcdHealthClient:
        client = self._clients.get(cluster_name)
        if client is not None:
            return client
        lock = self._locks.setdefault(cluster_name, asyncio.Lock())
        async with lock:
            client = self._clients.get(cluster_name)
            if client is None:
                client = await create_health_client(
                    cluster_name,
                    self._certificates,
                    timeout_seconds=self._timeout_seconds,
                    dial_timeout_seconds=self._dial_timeout_seconds,
                    transport=self._transport,
                )
                self._clients[cluster_name] = client
                _logger.info(
                    "healthcheck.client.create",
                    "Built etcd healthcheck client",
                    cluster=cluster_name,
                )
        return client

    async def aclose(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.aclose()
