from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from etcdcluster.filters import owned_by
from etcdcluster.labels import etcd_plane_selector_for_cluster
from etcdcluster.logger import get_logger
from etcdcluster.models.etcd_cluster import EtcdCluster
from etcdcluster.models.machine import Machine
from etcdcluster.schemas.clusters import EtcdClusterCreate, EtcdClusterUpdate
from etcdcluster.services.events import record_event
from etcdcluster.services.machines import MachineFilterError, get_filtered_machines_for_cluster
from etcdcluster.services.status import EtcdClusterStatusReconciler, StatusPass

_logger = get_logger("services.clusters")


async def list_clusters(session: AsyncSession, limit: int = 200) -> List[EtcdCluster]:
    result = await session.execute(select(EtcdCluster).order_by(EtcdCluster.name).limit(limit))
    return list(result.scalars().all())


async def get_cluster(session: AsyncSession, cluster_id: str) -> Optional[EtcdCluster]:
    result = await session.execute(select(EtcdCluster).where(EtcdCluster.id == cluster_id))
    return result.scalar_one_or_none()


async def list_owned_machines(session: AsyncSession, cluster: EtcdCluster) -> List[Machine]:
    return await get_filtered_machines_for_cluster(session, cluster.cluster_name, owned_by(cluster))


async def create_cluster(session: AsyncSession, payload: EtcdClusterCreate) -> EtcdCluster:
    async with _logger.operation(
        "cluster.create",
        "Creating etcd cluster",
        cluster_id=payload.id,
        cluster_resource=payload.name,
        cluster=payload.cluster_name,
        replicas=payload.replicas,
    ) as op:
        cluster = EtcdCluster(
            id=payload.id,
            name=payload.name,
            cluster_name=payload.cluster_name,
            replicas=payload.replicas,
            version=payload.version,
            infrastructure_template=dict(payload.infrastructure_template),
            etcdadm_config_spec=dict(payload.etcdadm_config_spec),
            ready_replicas=0,
            init_machine_address="",
            initialized=False,
            creation_complete=False,
            endpoint="",
            ready=False,
            selector="",
        )
        session.add(cluster)
        await record_event(
            session,
            event_id=str(uuid4()),
            category="clusters",
            name="cluster.create",
            level="INFO",
            fields={"cluster_id": cluster.id, "cluster": cluster.cluster_name},
        )
        await session.commit()
        await session.refresh(cluster)
        op.step("db.commit", "Committed etcd cluster create transaction")
        return cluster


async def update_cluster(
    session: AsyncSession,
    cluster: EtcdCluster,
    payload: EtcdClusterUpdate,
) -> EtcdCluster:
    changed: list[str] = []
    if payload.replicas is not None:
        cluster.replicas = payload.replicas
        changed.append("replicas")
    if payload.version is not None:
        cluster.version = payload.version
        changed.append("version")
    if payload.infrastructure_template is not None:
        cluster.infrastructure_template = dict(payload.infrastructure_template)
        changed.append("infrastructure_template")
    if payload.etcdadm_config_spec is not None:
        cluster.etcdadm_config_spec = dict(payload.etcdadm_config_spec)
        changed.append("etcdadm_config_spec")
    if payload.deleting is not None:
        if payload.deleting and cluster.deletion_timestamp is None:
            cluster.deletion_timestamp = datetime.now(timezone.utc)
        elif not payload.deleting:
            cluster.deletion_timestamp = None
        changed.append("deletion_timestamp")

    if changed:
        await record_event(
            session,
            event_id=str(uuid4()),
            category="clusters",
            name="cluster.update",
            level="INFO",
            fields={"cluster_id": cluster.id, "changed": ",".join(changed)},
        )
    await session.commit()
    await session.refresh(cluster)
    return cluster


async def delete_cluster(session: AsyncSession, cluster: EtcdCluster) -> None:
    cluster_id = cluster.id
    await record_event(
        session,
        event_id=str(uuid4()),
        category="clusters",
        name="cluster.delete",
        level="INFO",
        fields={"cluster_id": cluster_id, "cluster": cluster.cluster_name},
    )
    await session.delete(cluster)
    await session.commit()
    _logger.info("clusters.delete", "Deleted etcd cluster", cluster_id=cluster_id)


async def reconcile_cluster(
    session: AsyncSession,
    reconciler: EtcdClusterStatusReconciler,
    cluster: EtcdCluster,
) -> StatusPass:
    """Run one status pass and persist whatever it managed to compute.

    The commit happens even when the pass fails, so ``selector`` and
    ``ready_replicas`` are refreshed on every attempt. When the machine listing
    itself fails, ``ready_replicas`` keeps its previous value.
    """
    cluster_id = cluster.id
    try:
        result = await reconciler.update_status(session, cluster)
    except Exception as exc:
        if isinstance(exc, MachineFilterError):
            # The listing failed mid-transaction. Only the selector survives the rollback.
            await session.rollback()
            await session.refresh(cluster)
            cluster.selector = str(etcd_plane_selector_for_cluster(cluster.cluster_name))
        await record_event(
            session,
            event_id=str(uuid4()),
            category="clusters",
            name="cluster.reconcile.error",
            level="WARNING",
            fields={
                "cluster_id": cluster_id,
                "error_type": type(exc).__name__,
                "error": str(exc),
            },
        )
        await session.commit()
        raise
    await record_event(
        session,
        event_id=str(uuid4()),
        category="clusters",
        name="cluster.reconcile",
        level="INFO",
        fields={
            "cluster_id": cluster_id,
            "state": result.state.value,
            "ready": cluster.ready,
            "ready_replicas": cluster.ready_replicas,
        },
    )
    await session.commit()
    await session.refresh(cluster)
    return result
