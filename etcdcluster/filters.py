"""Composable machine predicates.

Every predicate accepts ``None`` and returns ``False`` for it, compound
predicates included, so filters can be applied to partially loaded listings
without guarding each call.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from etcdcluster.labels import etcd_plane_selector_for_cluster
from etcdcluster.models.machine import (
    HEALTH_CHECK_SUCCEEDED_CONDITION,
    OWNER_REMEDIATED_CONDITION,
    READY_CONDITION,
    Machine,
)

MachineFilter = Callable[[Optional[Machine]], bool]


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _owner_references(machine: Machine) -> list[Mapping[str, Any]]:
    refs = machine.owner_references if isinstance(machine.owner_references, list) else []
    return [ref for ref in refs if isinstance(ref, Mapping)]


def _condition_status(machine: Machine, condition_type: str) -> Optional[str]:
    conditions = machine.conditions if isinstance(machine.conditions, list) else []
    for condition in conditions:
        if isinstance(condition, Mapping) and condition.get("type") == condition_type:
            return str(condition.get("status", ""))
    return None


def and_(*filters: MachineFilter) -> MachineFilter:
    def _filter(machine: Optional[Machine]) -> bool:
        if machine is None:
            return False
        return all(item(machine) for item in filters)

    return _filter


def or_(*filters: MachineFilter) -> MachineFilter:
    def _filter(machine: Optional[Machine]) -> bool:
        if machine is None:
            return False
        return any(item(machine) for item in filters)

    return _filter


def not_(machine_filter: MachineFilter) -> MachineFilter:
    def _filter(machine: Optional[Machine]) -> bool:
        if machine is None:
            return False
        return not machine_filter(machine)

    return _filter


def has_controller_ref(machine: Optional[Machine]) -> bool:
    if machine is None:
        return False
    return any(ref.get("controller") is True for ref in _owner_references(machine))


def owned_by(owner: Any) -> MachineFilter:
    """Match machines with an owner reference to ``owner`` (kind, name and uid)."""
    owner_kind = str(getattr(owner, "kind", ""))
    owner_name = str(getattr(owner, "name", ""))
    owner_uid = str(getattr(owner, "id", "") or "")

    def _filter(machine: Optional[Machine]) -> bool:
        if machine is None:
            return False
        for ref in _owner_references(machine):
            if ref.get("kind") != owner_kind or ref.get("name") != owner_name:
                continue
            ref_uid = str(ref.get("uid") or "")
            if ref_uid and owner_uid and ref_uid != owner_uid:
                continue
            return True
        return False

    return _filter


def is_active(machine: Optional[Machine]) -> bool:
    if machine is None:
        return False
    return machine.deletion_timestamp is None


def has_deletion_timestamp(machine: Optional[Machine]) -> bool:
    if machine is None:
        return False
    return machine.deletion_timestamp is not None


def has_unhealthy_condition(machine: Optional[Machine]) -> bool:
    """Health check failed and remediation is delegated to the owner."""
    if machine is None:
        return False
    return (
        _condition_status(machine, HEALTH_CHECK_SUCCEEDED_CONDITION) == "False"
        and _condition_status(machine, OWNER_REMEDIATED_CONDITION) == "False"
    )


def is_ready(machine: Optional[Machine]) -> bool:
    if machine is None:
        return False
    return _condition_status(machine, READY_CONDITION) == "True"


def should_rollout_after(
    reconciliation_time: Optional[datetime],
    rollout_after: Optional[datetime],
) -> MachineFilter:
    """Match machines where created_at < rollout_after < reconciliation_time."""
    now = _as_utc(reconciliation_time)
    boundary = _as_utc(rollout_after)

    def _filter(machine: Optional[Machine]) -> bool:
        if machine is None or now is None or boundary is None:
            return False
        created = _as_utc(machine.created_at)
        if created is None:
            return False
        return created < boundary < now

    return _filter


def has_annotation_key(key: str) -> MachineFilter:
    def _filter(machine: Optional[Machine]) -> bool:
        if machine is None or not isinstance(machine.annotations, Mapping):
            return False
        return key in machine.annotations

    return _filter


def in_failure_domains(*failure_domains: Optional[str]) -> MachineFilter:
    """Match machines in any of ``failure_domains``.

    A ``None`` entry matches only machines with no failure domain set.
    """

    def _filter(machine: Optional[Machine]) -> bool:
        if machine is None:
            return False
        return any(domain == machine.failure_domain for domain in failure_domains)

    return _filter


def etcd_cluster_machines(cluster_name: str) -> MachineFilter:
    """Match every etcd machine of ``cluster_name``, regardless of ownership."""
    selector = etcd_plane_selector_for_cluster(cluster_name)

    def _filter(machine: Optional[Machine]) -> bool:
        if machine is None:
            return False
        return selector.matches(machine.labels)

    return _filter
