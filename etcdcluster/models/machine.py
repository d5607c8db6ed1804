from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from etcdcluster.models.base import Base, TimestampMixin

MACHINE_HOSTNAME = "Hostname"
MACHINE_INTERNAL_IP = "InternalIP"
MACHINE_INTERNAL_DNS = "InternalDNS"
MACHINE_EXTERNAL_IP = "ExternalIP"
MACHINE_EXTERNAL_DNS = "ExternalDNS"

INTERNAL_ADDRESS_TYPES = frozenset({MACHINE_INTERNAL_IP, MACHINE_INTERNAL_DNS})
EXTERNAL_ADDRESS_TYPES = frozenset({MACHINE_EXTERNAL_IP, MACHINE_EXTERNAL_DNS})

READY_CONDITION = "Ready"
HEALTH_CHECK_SUCCEEDED_CONDITION = "HealthCheckSucceeded"
OWNER_REMEDIATED_CONDITION = "OwnerRemediated"


class Machine(TimestampMixin, Base):
    """A fleet machine that may host one etcd member.

    Written by the provisioning side; the status reconciler only reads it.
    ``addresses``, ``conditions`` and ``owner_references`` hold plain dicts in
    the shapes of the ``MachineAddress``, ``MachineCondition`` and
    ``OwnerReference`` schemas.
    """

    __tablename__ = "machines"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    labels: Mapped[Dict[str, str]] = mapped_column(JSON, default=dict)
    annotations: Mapped[Dict[str, str]] = mapped_column(JSON, default=dict)
    owner_references: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    addresses: Mapped[List[Dict[str, str]]] = mapped_column(JSON, default=list)
    conditions: Mapped[List[Dict[str, str]]] = mapped_column(JSON, default=list)
    failure_domain: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    deletion_timestamp: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
