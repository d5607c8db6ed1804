from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from etcdcluster.filters import MachineFilter, and_, etcd_cluster_machines
from etcdcluster.labels import Selector
from etcdcluster.logger import get_logger
from etcdcluster.models.machine import Machine
from etcdcluster.schemas.machines import MachineCreate, MachineUpdate
from etcdcluster.services.events import record_event

_logger = get_logger("services.machines")


class MachineFilterError(RuntimeError):
    def __init__(self, cluster_name: str, detail: str) -> None:
        super().__init__(f"error filtering machines for cluster {cluster_name}: {detail}")
        self.cluster_name = cluster_name
        self.detail = detail


async def list_machines(
    session: AsyncSession,
    *,
    selector: Optional[Selector] = None,
    limit: int = 1000,
) -> List[Machine]:
    result = await session.execute(select(Machine).order_by(Machine.name).limit(limit))
    machines = list(result.scalars().all())
    if selector is None or selector.empty():
        return machines
    return [machine for machine in machines if selector.matches(machine.labels)]


async def get_machine(session: AsyncSession, machine_id: str) -> Optional[Machine]:
    result = await session.execute(select(Machine).where(Machine.id == machine_id))
    return result.scalar_one_or_none()


async def get_filtered_machines_for_cluster(
    session: AsyncSession,
    cluster_name: str,
    *filters: MachineFilter,
) -> List[Machine]:
    """List the etcd machines of ``cluster_name`` that pass every filter, by name."""
    try:
        result = await session.execute(select(Machine).order_by(Machine.name))
        machines = list(result.scalars().all())
    except SQLAlchemyError as exc:
        raise MachineFilterError(cluster_name, str(exc)) from exc
    matcher = and_(etcd_cluster_machines(cluster_name), *filters)
    return [machine for machine in machines if matcher(machine)]


async def create_machine(session: AsyncSession, payload: MachineCreate) -> Machine:
    async with _logger.operation(
        "machine.create",
        "Registering machine",
        machine_id=payload.id,
        machine_name=payload.name,
    ) as op:
        machine = Machine(
            id=payload.id,
            name=payload.name,
            labels=dict(payload.labels),
            annotations=dict(payload.annotations),
            owner_references=[ref.model_dump() for ref in payload.owner_references],
            addresses=[address.model_dump() for address in payload.addresses],
            conditions=[condition.model_dump() for condition in payload.conditions],
            failure_domain=payload.failure_domain,
        )
        session.add(machine)
        op.step("db.insert", "Prepared machine row", addresses=len(payload.addresses))
        await record_event(
            session,
            event_id=str(uuid4()),
            category="machines",
            name="machine.create",
            level="INFO",
            fields={"machine_id": machine.id, "name": machine.name},
        )
        await session.commit()
        await session.refresh(machine)
        op.step("db.commit", "Committed machine create transaction")
        return machine


async def update_machine(
    session: AsyncSession,
    machine: Machine,
    payload: MachineUpdate,
) -> Machine:
    async with _logger.operation(
        "machine.update",
        "Updating machine",
        machine_id=machine.id,
    ) as op:
        changed: list[str] = []
        if payload.labels is not None:
            machine.labels = dict(payload.labels)
            changed.append("labels")
        if payload.annotations is not None:
            machine.annotations = dict(payload.annotations)
            changed.append("annotations")
        if payload.owner_references is not None:
            machine.owner_references = [ref.model_dump() for ref in payload.owner_references]
            changed.append("owner_references")
        if payload.addresses is not None:
            machine.addresses = [address.model_dump() for address in payload.addresses]
            changed.append("addresses")
        if payload.conditions is not None:
            machine.conditions = [condition.model_dump() for condition in payload.conditions]
            changed.append("conditions")
        if "failure_domain" in payload.model_fields_set:
            machine.failure_domain = payload.failure_domain
            changed.append("failure_domain")
        if payload.deleting is not None:
            if payload.deleting and machine.deletion_timestamp is None:
                machine.deletion_timestamp = datetime.now(timezone.utc)
            elif not payload.deleting:
                machine.deletion_timestamp = None
            changed.append("deletion_timestamp")

        if changed:
            await record_event(
                session,
                event_id=str(uuid4()),
                category="machines",
                name="machine.update",
                level="INFO",
                fields={"machine_id": machine.id, "changed": ",".join(changed)},
            )
            op.step("change.apply", "Applied machine changes", changed=",".join(changed))
        else:
            op.step("change.none", "No machine fields changed")

        await session.commit()
        await session.refresh(machine)
        return machine


async def delete_machine(session: AsyncSession, machine: Machine) -> None:
    machine_id = machine.id
    await record_event(
        session,
        event_id=str(uuid4()),
        category="machines",
        name="machine.delete",
        level="INFO",
        fields={"machine_id": machine_id, "name": machine.name},
    )
    await session.delete(machine)
    await session.commit()
    _logger.info("machines.delete", "Deleted machine", machine_id=machine_id)
