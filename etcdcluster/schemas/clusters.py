from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from etcdcluster.labels import validate_label_value


class EtcdClusterCreate(BaseModel):
    id: str
    name: str
    cluster_name: str
    replicas: int = Field(default=1, ge=0)
    version: str = ""
    infrastructure_template: Dict[str, Any] = Field(default_factory=dict)
    etcdadm_config_spec: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("cluster_name")
    @classmethod
    def _cluster_name_is_label_value(cls, value: str) -> str:
        # Becomes the value of the cluster-name selector requirement.
        return validate_label_value(value)


class EtcdClusterUpdate(BaseModel):
    replicas: Optional[int] = Field(default=None, ge=0)
    version: Optional[str] = None
    infrastructure_template: Optional[Dict[str, Any]] = None
    etcdadm_config_spec: Optional[Dict[str, Any]] = None
    deleting: Optional[bool] = None


class EtcdClusterOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    cluster_name: str
    replicas: int
    version: str
    infrastructure_template: Dict[str, Any]
    etcdadm_config_spec: Dict[str, Any]
    deletion_timestamp: Optional[datetime]
    ready_replicas: int
    init_machine_address: str
    initialized: bool
    creation_complete: bool
    endpoint: str
    ready: bool
    selector: str
    created_at: datetime
    updated_at: datetime


class EtcdClusterStateOut(BaseModel):
    id: str
    state: str
    ready: bool
    ready_replicas: int
    desired_replicas: int


class EtcdClusterReconcileOut(BaseModel):
    id: str
    state: str
    ready: bool
    ready_replicas: int
    desired_replicas: int
    endpoint: str
    selector: str
    members: List[str]


class MemberHealthOut(BaseModel):
    endpoint: str
    healthy: bool
    error: str = ""


class MachineHealthOut(BaseModel):
    cluster_id: str
    machine_id: str
    healthy: bool
    endpoints: List[MemberHealthOut]
