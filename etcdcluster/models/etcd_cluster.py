from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from etcdcluster.models.base import Base, TimestampMixin

ETCD_CLUSTER_KIND = "EtcdadmCluster"


class EtcdCluster(TimestampMixin, Base):
    __tablename__ = "etcd_clusters"

    kind = ETCD_CLUSTER_KIND

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    cluster_name: Mapped[str] = mapped_column(String(128), index=True)
    deletion_timestamp: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # desired state
    replicas: Mapped[int] = mapped_column(Integer, default=1)
    version: Mapped[str] = mapped_column(String(64), default="")
    infrastructure_template: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    etcdadm_config_spec: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    # observed state, written by the status reconciler
    ready_replicas: Mapped[int] = mapped_column(Integer, default=0)
    init_machine_address: Mapped[str] = mapped_column(String(256), default="")
    initialized: Mapped[bool] = mapped_column(Boolean, default=False)
    creation_complete: Mapped[bool] = mapped_column(Boolean, default=False)
    endpoint: Mapped[str] = mapped_column(Text, default="")
    ready: Mapped[bool] = mapped_column(Boolean, default=False)
    selector: Mapped[str] = mapped_column(String(512), default="")
