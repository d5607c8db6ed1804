from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from etcdcluster.config import DEFAULT_ETCD_CLIENT_PORT, Settings
from etcdcluster.filters import owned_by
from etcdcluster.labels import etcd_plane_selector_for_cluster
from etcdcluster.logger import Operation, get_logger
from etcdcluster.metrics import record_reconcile_pass
from etcdcluster.models.etcd_cluster import EtcdCluster
from etcdcluster.models.machine import Machine
from etcdcluster.services.certificates import CertificateSource, FileCertificateSource
from etcdcluster.services.endpoints import aggregate_endpoints, member_endpoint_urls
from etcdcluster.services.healthcheck import HealthCheckError, HealthClientCache
from etcdcluster.services.machines import get_filtered_machines_for_cluster

_logger = get_logger("services.status")


class ClusterState(str, Enum):
    PROVISIONING = "Provisioning"
    AWAITING_ADDRESSES = "AwaitingAddresses"
    PROBING_HEALTH = "ProbingHealth"
    READY = "Ready"
    DELETING = "Deleting"


@dataclass
class StatusPass:
    cluster: EtcdCluster
    state: ClusterState = ClusterState.PROVISIONING
    members: List[Machine] = field(default_factory=list)
    endpoint: Optional[str] = None

    @property
    def member_names(self) -> List[str]:
        return [machine.name for machine in self.members]


@dataclass(frozen=True)
class MemberHealth:
    endpoint: str
    healthy: bool
    error: str = ""


Stage = Callable[[AsyncSession, StatusPass, Operation], Awaitable[Optional[ClusterState]]]


def derive_state(
    cluster: EtcdCluster,
    members: Sequence[Machine],
    *,
    port: int = DEFAULT_ETCD_CLIENT_PORT,
) -> ClusterState:
    """State tag implied by the persisted status and the current member list."""
    if cluster.deletion_timestamp is not None:
        return ClusterState.DELETING
    if (cluster.ready_replicas or 0) != cluster.replicas:
        return ClusterState.PROVISIONING
    endpoint = aggregate_endpoints(members, port=port)
    if endpoint is None:
        return ClusterState.AWAITING_ADDRESSES
    if cluster.ready and cluster.endpoint == endpoint:
        return ClusterState.READY
    return ClusterState.PROBING_HEALTH


class EtcdClusterStatusReconciler:
    """Recomputes an etcd cluster's observed status from the fleet, one pass at a time.

    A pass always refreshes ``selector`` and ``ready_replicas``. Readiness is
    only ever raised: a failed probe propagates its error and leaves ``ready``
    and ``endpoint`` at the values of the last successful pass.
    """

    def __init__(
        self,
        clients: HealthClientCache,
        *,
        etcd_client_port: int = DEFAULT_ETCD_CLIENT_PORT,
    ) -> None:
        self._clients = clients
        self._port = etcd_client_port

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        certificates: Optional[CertificateSource] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "EtcdClusterStatusReconciler":
        clients = HealthClientCache(
            certificates or FileCertificateSource(settings.pki_dir),
            timeout_seconds=settings.healthcheck_timeout_seconds,
            dial_timeout_seconds=settings.healthcheck_dial_timeout_seconds,
            transport=transport,
        )
        return cls(clients, etcd_client_port=settings.etcd_client_port)

    @property
    def clients(self) -> HealthClientCache:
        return self._clients

    def _stages(self) -> tuple[Stage, ...]:
        return (
            self._record_selector,
            self._count_members,
            self._skip_deleting,
            self._await_replicas,
            self._build_endpoints,
            self._probe_members,
            self._mark_ready,
        )

    async def update_status(self, session: AsyncSession, cluster: EtcdCluster) -> StatusPass:
        current = StatusPass(cluster=cluster)
        try:
            async with _logger.operation(
                "cluster.status",
                "Updating etcd cluster status",
                cluster=cluster.cluster_name,
                etcd_cluster=cluster.name,
            ) as op:
                for stage in self._stages():
                    state = await stage(session, current, op)
                    if state is not None:
                        current.state = state
                        break
                op.step(
                    "state",
                    "Reconciled etcd cluster state",
                    state=current.state.value,
                    ready=cluster.ready,
                    ready_replicas=cluster.ready_replicas,
                    desired_replicas=cluster.replicas,
                )
        except Exception:
            record_reconcile_pass(state="Error")
            raise
        record_reconcile_pass(state=current.state.value)
        return current

    async def _record_selector(
        self, session: AsyncSession, current: StatusPass, op: Operation
    ) -> Optional[ClusterState]:
        # Stored as a string for scale-subresource style consumers.
        selector = str(etcd_plane_selector_for_cluster(current.cluster.cluster_name))
        current.cluster.selector = selector
        op.step_debug("selector", "Computed membership selector", selector=selector)
        return None

    async def _count_members(
        self, session: AsyncSession, current: StatusPass, op: Operation
    ) -> Optional[ClusterState]:
        cluster = current.cluster
        machines = await get_filtered_machines_for_cluster(session, cluster.cluster_name)
        current.members = [machine for machine in machines if owned_by(cluster)(machine)]
        cluster.ready_replicas = len(current.members)
        op.step(
            "members",
            "Listed machines owned by this etcd cluster",
            matched=len(machines),
            owned=len(current.members),
            members=",".join(current.member_names),
        )
        return None

    async def _skip_deleting(
        self, session: AsyncSession, current: StatusPass, op: Operation
    ) -> Optional[ClusterState]:
        if current.cluster.deletion_timestamp is None:
            return None
        op.step("deleting", "Cluster is being deleted; skipping health checks")
        return ClusterState.DELETING

    async def _await_replicas(
        self, session: AsyncSession, current: StatusPass, op: Operation
    ) -> Optional[ClusterState]:
        cluster = current.cluster
        if cluster.ready_replicas == cluster.replicas:
            return None
        op.step(
            "replicas",
            "Waiting for desired replica count",
            ready_replicas=cluster.ready_replicas,
            desired_replicas=cluster.replicas,
        )
        return ClusterState.PROVISIONING

    async def _build_endpoints(
        self, session: AsyncSession, current: StatusPass, op: Operation
    ) -> Optional[ClusterState]:
        endpoint = aggregate_endpoints(current.members, port=self._port)
        if endpoint is None:
            op.step("endpoints", "Waiting for every member to report an address")
            return ClusterState.AWAITING_ADDRESSES
        current.endpoint = endpoint
        return None

    async def _probe_members(
        self, session: AsyncSession, current: StatusPass, op: Operation
    ) -> Optional[ClusterState]:
        current.state = ClusterState.PROBING_HEALTH
        client = await self._clients.get(current.cluster.cluster_name)
        op.step("healthcheck", "Running endpoint checks", endpoints=current.endpoint)
        await client.check_endpoints(current.endpoint or "")
        return None

    async def _mark_ready(
        self, session: AsyncSession, current: StatusPass, op: Operation
    ) -> Optional[ClusterState]:
        current.cluster.ready = True
        current.cluster.endpoint = current.endpoint or ""
        return ClusterState.READY

    async def check_member(self, cluster: EtcdCluster, machine: Machine) -> List[MemberHealth]:
        """Probe each client URL of one member, dialing the port before any request."""
        client = await self._clients.get(cluster.cluster_name)
        results: List[MemberHealth] = []
        for endpoint in member_endpoint_urls(machine, port=self._port):
            try:
                await client.check_endpoint(endpoint)
            except HealthCheckError as exc:
                results.append(MemberHealth(endpoint=endpoint, healthy=False, error=str(exc)))
                continue
            results.append(MemberHealth(endpoint=endpoint, healthy=True))
        return results

    async def aclose(self) -> None:
        await self._clients.aclose()
