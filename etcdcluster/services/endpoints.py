from __future__ import annotations

from typing import Iterable, List, Mapping, Optional

from etcdcluster.config import DEFAULT_ETCD_CLIENT_PORT
from etcdcluster.models.machine import EXTERNAL_ADDRESS_TYPES, INTERNAL_ADDRESS_TYPES, Machine


def _addresses(machine: Machine) -> list[Mapping[str, str]]:
    raw = machine.addresses if isinstance(machine.addresses, list) else []
    return [item for item in raw if isinstance(item, Mapping)]


def _client_url(address: str, port: int) -> str:
    return f"https://{address}:{port}"


def member_endpoint_urls(machine: Machine, *, port: int = DEFAULT_ETCD_CLIENT_PORT) -> List[str]:
    """Client URLs for one member: every internal address, else every external one.

    Duplicate addresses yield duplicate URLs; consumers of the endpoint string
    rely on that literal construction.
    """
    addresses = _addresses(machine)
    urls = [
        _client_url(str(item.get("address", "")), port)
        for item in addresses
        if item.get("type") in INTERNAL_ADDRESS_TYPES
    ]
    if urls:
        return urls
    return [
        _client_url(str(item.get("address", "")), port)
        for item in addresses
        if item.get("type") in EXTERNAL_ADDRESS_TYPES
    ]


def aggregate_endpoints(
    machines: Iterable[Machine],
    *,
    port: int = DEFAULT_ETCD_CLIENT_PORT,
) -> Optional[str]:
    """Comma-joined client URLs for all members, in member order.

    Returns ``None`` when any member has not reported an address yet, or when
    no member has a routable address at all: a partial endpoint list is never
    produced.
    """
    urls: list[str] = []
    for machine in machines:
        if not _addresses(machine):
            return None
        urls.extend(member_endpoint_urls(machine, port=port))
    if not urls:
        return None
    return ",".join(urls)
