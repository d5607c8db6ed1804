from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Iterable

import pytest
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import EtcdMembers, StaticCertificateSource, internal_ip, make_cluster, make_machine
from etcdcluster.models import EtcdCluster, Machine
from etcdcluster.services.certificates import CertificateError
from etcdcluster.services.clusters import reconcile_cluster
from etcdcluster.services.events import list_events
from etcdcluster.services.healthcheck import MemberNotReadyError, MemberUnhealthyError
from etcdcluster.services.machines import MachineFilterError, get_filtered_machines_for_cluster
from etcdcluster.services.status import ClusterState, EtcdClusterStatusReconciler, derive_state

SELECTOR = "cluster.x-k8s.io/cluster-name=prod,cluster.x-k8s.io/etcd-cluster"
ENDPOINT = "https://10.0.0.1:2379,https://10.0.0.2:2379,https://10.0.0.3:2379"


async def _seed(session: AsyncSession, cluster: EtcdCluster, machines: Iterable[Machine]) -> None:
    session.add(cluster)
    session.add_all(list(machines))
    await session.commit()


def _members(cluster: EtcdCluster, count: int = 3) -> list[Machine]:
    return [
        make_machine(f"etcd-{index}", cluster=cluster, addresses=[internal_ip(f"10.0.0.{index}")])
        for index in range(1, count + 1)
    ]


async def test_all_members_healthy_marks_cluster_ready(
    session: AsyncSession,
    reconciler: EtcdClusterStatusReconciler,
    members: EtcdMembers,
) -> None:
    cluster = make_cluster()
    await _seed(session, cluster, _members(cluster))

    result = await reconciler.update_status(session, cluster)

    assert result.state is ClusterState.READY
    assert result.member_names == ["etcd-1", "etcd-2", "etcd-3"]
    assert result.endpoint == ENDPOINT
    assert cluster.ready is True
    assert cluster.endpoint == ENDPOINT
    assert cluster.ready_replicas == 3
    assert cluster.selector == SELECTOR
    assert members.urls == [f"{url}/health" for url in ENDPOINT.split(",")]
    assert derive_state(cluster, result.members) is ClusterState.READY


async def test_failed_probe_keeps_previous_readiness(
    session: AsyncSession,
    reconciler: EtcdClusterStatusReconciler,
    members: EtcdMembers,
) -> None:
    cluster = make_cluster(ready=True, endpoint="https://10.0.0.9:2379", ready_replicas=3)
    await _seed(session, cluster, _members(cluster))
    members.respond("10.0.0.2", status_code=503, body=b"")

    with pytest.raises(MemberNotReadyError):
        await reconciler.update_status(session, cluster)

    assert cluster.ready is True
    assert cluster.endpoint == "https://10.0.0.9:2379"
    assert cluster.ready_replicas == 3
    assert cluster.selector == SELECTOR
    assert members.urls == ["https://10.0.0.1:2379/health", "https://10.0.0.2:2379/health"]


async def test_unhealthy_member_never_raises_readiness(
    session: AsyncSession,
    reconciler: EtcdClusterStatusReconciler,
    members: EtcdMembers,
) -> None:
    cluster = make_cluster()
    await _seed(session, cluster, _members(cluster))
    members.respond("10.0.0.3", body=b'{"health":"false"}')

    with pytest.raises(MemberUnhealthyError):
        await reconciler.update_status(session, cluster)
    assert cluster.ready is False
    assert cluster.endpoint == ""


async def test_deleting_cluster_skips_health_checks(
    session: AsyncSession,
    reconciler: EtcdClusterStatusReconciler,
    members: EtcdMembers,
    certificates: StaticCertificateSource,
) -> None:
    cluster = make_cluster(deletion_timestamp=datetime(2026, 1, 1, tzinfo=timezone.utc))
    await _seed(session, cluster, _members(cluster, count=2))

    result = await reconciler.update_status(session, cluster)

    assert result.state is ClusterState.DELETING
    assert cluster.ready_replicas == 2
    assert cluster.selector == SELECTOR
    assert members.requests == []
    assert certificates.calls == []


async def test_missing_replicas_leave_cluster_provisioning(
    session: AsyncSession,
    reconciler: EtcdClusterStatusReconciler,
    members: EtcdMembers,
) -> None:
    cluster = make_cluster(replicas=3)
    await _seed(session, cluster, _members(cluster, count=2))

    result = await reconciler.update_status(session, cluster)

    assert result.state is ClusterState.PROVISIONING
    assert cluster.ready_replicas == 2
    assert cluster.ready is False
    assert members.requests == []


async def test_member_without_address_blocks_probing(
    session: AsyncSession,
    reconciler: EtcdClusterStatusReconciler,
    members: EtcdMembers,
) -> None:
    cluster = make_cluster(replicas=2)
    machines = [
        make_machine("etcd-1", cluster=cluster, addresses=[internal_ip("10.0.0.1")]),
        make_machine("etcd-2", cluster=cluster, addresses=[]),
    ]
    await _seed(session, cluster, machines)

    result = await reconciler.update_status(session, cluster)

    assert result.state is ClusterState.AWAITING_ADDRESSES
    assert cluster.ready_replicas == 2
    assert cluster.ready is False
    assert members.requests == []


async def test_zero_replicas_with_no_members_awaits_addresses(
    session: AsyncSession,
    reconciler: EtcdClusterStatusReconciler,
    members: EtcdMembers,
) -> None:
    cluster = make_cluster(replicas=0)
    await _seed(session, cluster, [])

    result = await reconciler.update_status(session, cluster)

    assert result.state is ClusterState.AWAITING_ADDRESSES
    assert cluster.ready is False
    assert members.requests == []


async def test_only_owned_etcd_machines_are_counted(
    session: AsyncSession,
    reconciler: EtcdClusterStatusReconciler,
) -> None:
    cluster = make_cluster(replicas=1)
    other = make_cluster("etcd-other", cluster_name="prod")
    machines = [
        make_machine("etcd-1", cluster=cluster, addresses=[internal_ip("10.0.0.1")]),
        # same workload cluster, different etcd cluster
        make_machine("etcd-foreign", cluster=other, addresses=[internal_ip("10.0.0.5")]),
        # owned, but not labelled as an etcd machine of this cluster
        make_machine("worker-1", cluster=cluster, labels={}, addresses=[internal_ip("10.0.0.6")]),
    ]
    await _seed(session, cluster, machines)

    result = await reconciler.update_status(session, cluster)

    assert result.member_names == ["etcd-1"]
    assert cluster.ready_replicas == 1
    assert result.state is ClusterState.READY


async def test_certificate_failure_propagates_and_caches_nothing(
    session: AsyncSession,
    reconciler: EtcdClusterStatusReconciler,
    certificates: StaticCertificateSource,
) -> None:
    certificates.fail_client = True
    cluster = make_cluster()
    await _seed(session, cluster, _members(cluster))

    with pytest.raises(CertificateError):
        await reconciler.update_status(session, cluster)
    assert reconciler.clients.cached("prod") is None
    assert cluster.ready_replicas == 3
    assert cluster.ready is False

    certificates.fail_client = False
    result = await reconciler.update_status(session, cluster)
    assert result.state is ClusterState.READY


async def test_health_client_is_reused_across_passes(
    session: AsyncSession,
    reconciler: EtcdClusterStatusReconciler,
    certificates: StaticCertificateSource,
) -> None:
    cluster = make_cluster()
    await _seed(session, cluster, _members(cluster))

    await reconciler.update_status(session, cluster)
    client = reconciler.clients.cached("prod")
    await reconciler.update_status(session, cluster)

    assert reconciler.clients.cached("prod") is client
    assert certificates.calls == ["ca:prod", "client:prod"]


def test_derive_state() -> None:
    cluster = make_cluster(replicas=1, ready_replicas=1)
    member = make_machine("etcd-1", cluster=cluster, addresses=[internal_ip("10.0.0.1")])
    assert derive_state(cluster, [member]) is ClusterState.PROBING_HEALTH

    cluster.ready = True
    cluster.endpoint = "https://10.0.0.1:2379"
    assert derive_state(cluster, [member]) is ClusterState.READY

    member.addresses = [internal_ip("10.0.0.2")]
    assert derive_state(cluster, [member]) is ClusterState.PROBING_HEALTH

    member.addresses = []
    assert derive_state(cluster, [member]) is ClusterState.AWAITING_ADDRESSES

    cluster.ready_replicas = 0
    assert derive_state(cluster, []) is ClusterState.PROVISIONING

    cluster.deletion_timestamp = datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert derive_state(cluster, []) is ClusterState.DELETING


async def test_check_member_dials_each_client_url(
    session: AsyncSession,
    reconciler: EtcdClusterStatusReconciler,
    members: EtcdMembers,
) -> None:
    async def _accept(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        writer.close()

    server = await asyncio.start_server(_accept, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        preflight = EtcdClusterStatusReconciler(reconciler.clients, etcd_client_port=port)
        cluster = make_cluster(replicas=1)
        machine = make_machine(
            "etcd-1",
            cluster=cluster,
            addresses=[internal_ip("127.0.0.1"), {"type": "InternalDNS", "address": "127.0.0.2"}],
        )
        members.respond("127.0.0.2", status_code=500, body=b"")

        results = await preflight.check_member(cluster, machine)
    finally:
        server.close()
        await server.wait_closed()

    assert [item.healthy for item in results] == [True, False]
    assert results[0].endpoint == f"https://127.0.0.1:{port}"
    assert "not ready" in results[1].error or "port is not open" in results[1].error


async def _broken_execute(self: AsyncSession, *args: object, **kwargs: object) -> None:
    raise SQLAlchemyError("disk I/O error")


async def test_listing_errors_are_wrapped(
    session: AsyncSession,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(AsyncSession, "execute", _broken_execute)

    with pytest.raises(MachineFilterError) as excinfo:
        await get_filtered_machines_for_cluster(session, "prod")

    assert str(excinfo.value) == "error filtering machines for cluster prod: disk I/O error"
    assert isinstance(excinfo.value.__cause__, SQLAlchemyError)


async def test_listing_failure_keeps_selector_and_journals_the_error(
    session: AsyncSession,
    reconciler: EtcdClusterStatusReconciler,
    members: EtcdMembers,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    cluster = make_cluster(ready_replicas=2)
    await _seed(session, cluster, _members(cluster))
    monkeypatch.setattr(AsyncSession, "execute", _broken_execute)

    with pytest.raises(MachineFilterError):
        await reconcile_cluster(session, reconciler, cluster)
    monkeypatch.undo()

    await session.refresh(cluster)
    assert cluster.selector == SELECTOR
    assert cluster.ready_replicas == 2
    assert cluster.ready is False
    assert members.requests == []
    events = await list_events(session, category="clusters")
    assert [event.name for event in events] == ["cluster.reconcile.error"]
    assert events[0].fields["error_type"] == "MachineFilterError"
