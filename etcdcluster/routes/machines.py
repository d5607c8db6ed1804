from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from etcdcluster.dependencies import get_db_session
from etcdcluster.labels import SelectorParseError, parse_selector
from etcdcluster.schemas.machines import MachineCreate, MachineOut, MachineUpdate
from etcdcluster.services import machines as machine_service

router = APIRouter(prefix="/machines", tags=["machines"])


@router.get("", response_model=List[MachineOut])
async def list_machines(
    selector: Optional[str] = None,
    limit: int = 1000,
    session: AsyncSession = Depends(get_db_session),
) -> List[MachineOut]:
    try:
        parsed = parse_selector(selector) if selector else None
    except SelectorParseError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid label selector: {exc}") from exc
    machines = await machine_service.list_machines(
        session,
        selector=parsed,
        limit=max(1, min(limit, 1000)),
    )
    return [MachineOut.model_validate(machine) for machine in machines]


@router.get("/{machine_id}", response_model=MachineOut)
async def get_machine(
    machine_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> MachineOut:
    machine = await machine_service.get_machine(session, machine_id)
    if machine is None:
        raise HTTPException(status_code=404, detail="Machine not found")
    return MachineOut.model_validate(machine)


@router.post("", response_model=MachineOut, status_code=status.HTTP_201_CREATED)
async def create_machine(
    payload: MachineCreate,
    session: AsyncSession = Depends(get_db_session),
) -> MachineOut:
    if await machine_service.get_machine(session, payload.id):
        raise HTTPException(status_code=409, detail="Machine id already exists")
    machine = await machine_service.create_machine(session, payload)
    return MachineOut.model_validate(machine)


@router.patch("/{machine_id}", response_model=MachineOut)
async def update_machine(
    machine_id: str,
    payload: MachineUpdate,
    session: AsyncSession = Depends(get_db_session),
) -> MachineOut:
    machine = await machine_service.get_machine(session, machine_id)
    if machine is None:
        raise HTTPException(status_code=404, detail="Machine not found")
    updated = await machine_service.update_machine(session, machine, payload)
    return MachineOut.model_validate(updated)


@router.delete("/{machine_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_machine(
    machine_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> None:
    machine = await machine_service.get_machine(session, machine_id)
    if machine is None:
        raise HTTPException(status_code=404, detail="Machine not found")
    await machine_service.delete_machine(session, machine)
