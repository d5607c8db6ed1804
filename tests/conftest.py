from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from etcdcluster.labels import CLUSTER_NAME_LABEL, ETCD_CLUSTER_LABEL
from etcdcluster.models import Base, EtcdCluster, Machine
from etcdcluster.services.certificates import CertificateError, ClientCertificate
from etcdcluster.services.healthcheck import HealthClientCache
from etcdcluster.services.status import EtcdClusterStatusReconciler


def _pem(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


def _key_pem(key: ec.EllipticCurvePrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


@dataclass(frozen=True)
class Pki:
    ca_pem: bytes
    client_cert_pem: bytes
    client_key_pem: bytes

    @property
    def client(self) -> ClientCertificate:
        return ClientCertificate(cert_pem=self.client_cert_pem, key_pem=self.client_key_pem)


@pytest.fixture(scope="session")
def pki() -> Pki:
    now = datetime.now(timezone.utc)
    ca_key = ec.generate_private_key(ec.SECP256R1())
    ca_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "etcd-ca")])
    ca_cert = (
        x509.CertificateBuilder()
        .subject_name(ca_name)
        .issuer_name(ca_name)
        .public_key(ca_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=1))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .sign(ca_key, hashes.SHA256())
    )

    client_key = ec.generate_private_key(ec.SECP256R1())
    client_cert = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "apiserver-etcd-client")]))
        .issuer_name(ca_name)
        .public_key(client_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=1))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CLIENT_AUTH]), critical=False)
        .sign(ca_key, hashes.SHA256())
    )
    return Pki(ca_pem=_pem(ca_cert), client_cert_pem=_pem(client_cert), client_key_pem=_key_pem(client_key))


@dataclass
class StaticCertificateSource:
    pki: Pki
    fail_ca: bool = False
    fail_client: bool = False
    calls: List[str] = field(default_factory=list)

    async def get_ca_cert(self, cluster_name: str) -> bytes:
        self.calls.append(f"ca:{cluster_name}")
        if self.fail_ca:
            raise CertificateError("certificates.ca", "CA secret not found")
        return self.pki.ca_pem

    async def get_client_cert(self, cluster_name: str) -> ClientCertificate:
        self.calls.append(f"client:{cluster_name}")
        if self.fail_client:
            raise CertificateError("certificates.client", "client secret not found")
        return self.pki.client


@pytest.fixture
def certificates(pki: Pki) -> StaticCertificateSource:
    return StaticCertificateSource(pki=pki)


class EtcdMembers:
    """MockTransport handler standing in for a set of etcd members."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.responses: Dict[str, tuple[int, bytes]] = {}

    def respond(self, host: str, status_code: int = 200, body: bytes = b'{"health":"true"}') -> None:
        self.responses[host] = (status_code, body)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        configured = self.responses.get(request.url.host)
        if configured is not None:
            return httpx.Response(configured[0], content=configured[1])
        return httpx.Response(200, json={"health": "true"})

    @property
    def urls(self) -> List[str]:
        return [str(request.url) for request in self.requests]


@pytest.fixture
def members() -> EtcdMembers:
    return EtcdMembers()


@pytest.fixture
def transport(members: EtcdMembers) -> httpx.MockTransport:
    return httpx.MockTransport(members)


@pytest.fixture
async def reconciler(
    certificates: StaticCertificateSource,
    transport: httpx.MockTransport,
) -> AsyncIterator[EtcdClusterStatusReconciler]:
    clients = HealthClientCache(
        certificates,
        timeout_seconds=5.0,
        dial_timeout_seconds=0.5,
        transport=transport,
    )
    status_reconciler = EtcdClusterStatusReconciler(clients)
    yield status_reconciler
    await status_reconciler.aclose()


@pytest.fixture
async def sessionmaker() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def session(sessionmaker: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with sessionmaker() as db_session:
        yield db_session


def etcd_labels(cluster_name: str) -> Dict[str, str]:
    return {CLUSTER_NAME_LABEL: cluster_name, ETCD_CLUSTER_LABEL: ""}


def owner_ref(cluster: EtcdCluster) -> Dict[str, Any]:
    return {"kind": cluster.kind, "name": cluster.name, "uid": cluster.id, "controller": True}


def make_machine(
    name: str,
    *,
    cluster: Optional[EtcdCluster] = None,
    cluster_name: Optional[str] = None,
    addresses: Optional[List[Dict[str, str]]] = None,
    labels: Optional[Dict[str, str]] = None,
    owner_references: Optional[List[Dict[str, Any]]] = None,
    **fields: Any,
) -> Machine:
    label_cluster = cluster_name or (cluster.cluster_name if cluster is not None else "")
    if labels is None:
        labels = etcd_labels(label_cluster) if label_cluster else {}
    if owner_references is None:
        owner_references = [owner_ref(cluster)] if cluster is not None else []
    fields.setdefault("annotations", {})
    fields.setdefault("conditions", [])
    return Machine(
        id=f"machine-{name}",
        name=name,
        labels=labels,
        owner_references=owner_references,
        addresses=addresses if addresses is not None else [],
        **fields,
    )


def internal_ip(address: str) -> Dict[str, str]:
    return {"type": "InternalIP", "address": address}


def external_ip(address: str) -> Dict[str, str]:
    return {"type": "ExternalIP", "address": address}


def make_cluster(
    name: str = "etcd-prod",
    *,
    cluster_name: str = "prod",
    replicas: int = 3,
    **fields: Any,
) -> EtcdCluster:
    fields.setdefault("ready_replicas", 0)
    fields.setdefault("ready", False)
    fields.setdefault("endpoint", "")
    fields.setdefault("selector", "")
    return EtcdCluster(
        id=f"uid-{name}",
        name=name,
        cluster_name=cluster_name,
        replicas=replicas,
        version="3.5.9",
        infrastructure_template={},
        etcdadm_config_spec={},
        init_machine_address="",
        initialized=False,
        creation_complete=False,
        **fields,
    )

