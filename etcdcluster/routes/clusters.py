from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from etcdcluster.config import get_settings
from etcdcluster.dependencies import get_db_session, get_status_reconciler
from etcdcluster.labels import SelectorParseError
from etcdcluster.logger import get_logger
from etcdcluster.schemas.clusters import (
    EtcdClusterCreate,
    EtcdClusterOut,
    EtcdClusterReconcileOut,
    EtcdClusterStateOut,
    EtcdClusterUpdate,
    MachineHealthOut,
    MemberHealthOut,
)
from etcdcluster.services import clusters as cluster_service
from etcdcluster.services import machines as machine_service
from etcdcluster.services.certificates import CertificateError
from etcdcluster.services.healthcheck import HealthCheckError
from etcdcluster.services.machines import MachineFilterError
from etcdcluster.services.status import EtcdClusterStatusReconciler, derive_state

router = APIRouter(prefix="/clusters", tags=["clusters"])
_logger = get_logger("api.clusters")

# Rows written before cluster_name was validated can still fail selector building.
_LISTING_ERRORS = (MachineFilterError, SelectorParseError)
_RECONCILE_ERRORS = (HealthCheckError, CertificateError) + _LISTING_ERRORS


@router.get("", response_model=List[EtcdClusterOut])
async def list_clusters(
    session: AsyncSession = Depends(get_db_session),
) -> List[EtcdClusterOut]:
    clusters = await cluster_service.list_clusters(session)
    return [EtcdClusterOut.model_validate(cluster) for cluster in clusters]


@router.get("/{cluster_id}", response_model=EtcdClusterOut)
async def get_cluster(
    cluster_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> EtcdClusterOut:
    cluster = await cluster_service.get_cluster(session, cluster_id)
    if cluster is None:
        raise HTTPException(status_code=404, detail="Etcd cluster not found")
    return EtcdClusterOut.model_validate(cluster)


@router.post("", response_model=EtcdClusterOut, status_code=status.HTTP_201_CREATED)
async def create_cluster(
    payload: EtcdClusterCreate,
    session: AsyncSession = Depends(get_db_session),
) -> EtcdClusterOut:
    if await cluster_service.get_cluster(session, payload.id):
        raise HTTPException(status_code=409, detail="Etcd cluster id already exists")
    cluster = await cluster_service.create_cluster(session, payload)
    return EtcdClusterOut.model_validate(cluster)


@router.patch("/{cluster_id}", response_model=EtcdClusterOut)
async def update_cluster(
    cluster_id: str,
    payload: EtcdClusterUpdate,
    session: AsyncSession = Depends(get_db_session),
) -> EtcdClusterOut:
    cluster = await cluster_service.get_cluster(session, cluster_id)
    if cluster is None:
        raise HTTPException(status_code=404, detail="Etcd cluster not found")
    updated = await cluster_service.update_cluster(session, cluster, payload)
    return EtcdClusterOut.model_validate(updated)


@router.delete("/{cluster_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_cluster(
    cluster_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> None:
    cluster = await cluster_service.get_cluster(session, cluster_id)
    if cluster is None:
        raise HTTPException(status_code=404, detail="Etcd cluster not found")
    await cluster_service.delete_cluster(session, cluster)


@router.get("/{cluster_id}/state", response_model=EtcdClusterStateOut)
async def get_cluster_state(
    cluster_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> EtcdClusterStateOut:
    cluster = await cluster_service.get_cluster(session, cluster_id)
    if cluster is None:
        raise HTTPException(status_code=404, detail="Etcd cluster not found")
    try:
        members = await cluster_service.list_owned_machines(session, cluster)
    except _LISTING_ERRORS as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    state = derive_state(cluster, members, port=get_settings().etcd_client_port)
    return EtcdClusterStateOut(
        id=cluster.id,
        state=state.value,
        ready=cluster.ready,
        ready_replicas=cluster.ready_replicas,
        desired_replicas=cluster.replicas,
    )


@router.post("/{cluster_id}/reconcile", response_model=EtcdClusterReconcileOut)
async def reconcile_cluster(
    cluster_id: str,
    session: AsyncSession = Depends(get_db_session),
    reconciler: EtcdClusterStatusReconciler = Depends(get_status_reconciler),
) -> EtcdClusterReconcileOut:
    cluster = await cluster_service.get_cluster(session, cluster_id)
    if cluster is None:
        raise HTTPException(status_code=404, detail="Etcd cluster not found")
    try:
        result = await cluster_service.reconcile_cluster(session, reconciler, cluster)
    except _RECONCILE_ERRORS as exc:
        _logger.warning(
            "reconcile.failed",
            "Etcd cluster status pass failed",
            cluster_id=cluster_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise HTTPException(status_code=503, detail=f"Status reconciliation failed: {exc}") from exc
    return EtcdClusterReconcileOut(
        id=cluster.id,
        state=result.state.value,
        ready=cluster.ready,
        ready_replicas=cluster.ready_replicas,
        desired_replicas=cluster.replicas,
        endpoint=cluster.endpoint,
        selector=cluster.selector,
        members=result.member_names,
    )


@router.post("/{cluster_id}/machines/{machine_id}/health", response_model=MachineHealthOut)
async def check_machine_health(
    cluster_id: str,
    machine_id: str,
    session: AsyncSession = Depends(get_db_session),
    reconciler: EtcdClusterStatusReconciler = Depends(get_status_reconciler),
) -> MachineHealthOut:
    cluster = await cluster_service.get_cluster(session, cluster_id)
    if cluster is None:
        raise HTTPException(status_code=404, detail="Etcd cluster not found")
    machine = await machine_service.get_machine(session, machine_id)
    if machine is None:
        raise HTTPException(status_code=404, detail="Machine not found")
    try:
        members = await cluster_service.list_owned_machines(session, cluster)
    except _LISTING_ERRORS as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if machine.id not in {member.id for member in members}:
        raise HTTPException(status_code=404, detail="Machine is not a member of this etcd cluster")
    if not machine.addresses:
        raise HTTPException(status_code=409, detail="Machine has no addresses yet")
    try:
        results = await reconciler.check_member(cluster, machine)
    except CertificateError as exc:
        raise HTTPException(status_code=503, detail=f"Healthcheck client unavailable: {exc}") from exc
    endpoints = [
        MemberHealthOut(endpoint=item.endpoint, healthy=item.healthy, error=item.error) for item in results
    ]
    return MachineHealthOut(
        cluster_id=cluster.id,
        machine_id=machine.id,
        healthy=bool(endpoints) and all(item.healthy for item in endpoints),
        endpoints=endpoints,
    )
