from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from etcdcluster.logger import get_logger
from etcdcluster.utils import sanitize_label

_logger = get_logger("services.certificates")

CA_CERT_FILE = "ca.crt"
CLIENT_CERT_FILE = "apiserver-etcd-client.crt"
CLIENT_KEY_FILE = "apiserver-etcd-client.key"


class CertificateError(RuntimeError):
    def __init__(self, action: str, detail: str) -> None:
        super().__init__(f"{action}: {detail}")
        self.action = action
        self.detail = detail


@dataclass(frozen=True)
class ClientCertificate:
    cert_pem: bytes
    key_pem: bytes


class CertificateSource(Protocol):
    async def get_ca_cert(self, cluster_name: str) -> bytes: ...

    async def get_client_cert(self, cluster_name: str) -> ClientCertificate: ...


def validate_ca_pem(data: bytes) -> bytes:
    try:
        certs = x509.load_pem_x509_certificates(data)
    except ValueError as exc:
        raise CertificateError("certificates.ca", f"invalid CA certificate PEM: {exc}") from exc
    if not certs:
        raise CertificateError("certificates.ca", "CA bundle contains no certificates")
    return data


def validate_client_pem(cert_pem: bytes, key_pem: bytes) -> ClientCertificate:
    try:
        x509.load_pem_x509_certificate(cert_pem)
    except ValueError as exc:
        raise CertificateError("certificates.client", f"invalid client certificate PEM: {exc}") from exc
    try:
        serialization.load_pem_private_key(key_pem, password=None)
    except (TypeError, ValueError) as exc:
        raise CertificateError("certificates.client", f"invalid client key PEM: {exc}") from exc
    return ClientCertificate(cert_pem=cert_pem, key_pem=key_pem)


class FileCertificateSource:
    """Reads ``<pki_dir>/<cluster>/{ca.crt,apiserver-etcd-client.{crt,key}}``."""

    def __init__(self, pki_dir: str) -> None:
        self._root = Path(pki_dir).expanduser()

    def cluster_dir(self, cluster_name: str) -> Path:
        safe_name = sanitize_label(cluster_name, max_len=0, allow_dots=True)
        if not safe_name:
            raise CertificateError("certificates.path", f"invalid cluster name: {cluster_name!r}")
        return self._root / safe_name

    def _read(self, path: Path, action: str) -> bytes:
        try:
            return path.read_bytes()
        except OSError as exc:
            raise CertificateError(action, f"unable to read {path}: {exc.strerror or exc}") from exc

    async def get_ca_cert(self, cluster_name: str) -> bytes:
        path = self.cluster_dir(cluster_name) / CA_CERT_FILE
        data = await asyncio.to_thread(self._read, path, "certificates.ca")
        _logger.debug(
            "certificates.ca.load",
            "Loaded etcd CA certificate",
            cluster=cluster_name,
            path=str(path),
        )
        return validate_ca_pem(data)

    async def get_client_cert(self, cluster_name: str) -> ClientCertificate:
        base = self.cluster_dir(cluster_name)
        cert_pem = await asyncio.to_thread(self._read, base / CLIENT_CERT_FILE, "certificates.client")
        key_pem = await asyncio.to_thread(self._read, base / CLIENT_KEY_FILE, "certificates.client")
        _logger.debug("certificates.client.load", "Loaded etcd client certificate", cluster=cluster_name)
        return validate_client_pem(cert_pem, key_pem)
