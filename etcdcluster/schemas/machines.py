from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

AddressType = Literal["Hostname", "InternalIP", "InternalDNS", "ExternalIP", "ExternalDNS"]
ConditionStatus = Literal["True", "False", "Unknown"]


class MachineAddress(BaseModel):
    type: AddressType
    address: str


class MachineCondition(BaseModel):
    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""


class OwnerReference(BaseModel):
    kind: str
    name: str
    uid: str = ""
    controller: bool = False


class MachineCreate(BaseModel):
    id: str
    name: str
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    owner_references: List[OwnerReference] = Field(default_factory=list)
    addresses: List[MachineAddress] = Field(default_factory=list)
    conditions: List[MachineCondition] = Field(default_factory=list)
    failure_domain: Optional[str] = None


class MachineUpdate(BaseModel):
    labels: Optional[Dict[str, str]] = None
    annotations: Optional[Dict[str, str]] = None
    owner_references: Optional[List[OwnerReference]] = None
    addresses: Optional[List[MachineAddress]] = None
    conditions: Optional[List[MachineCondition]] = None
    failure_domain: Optional[str] = None
    deleting: Optional[bool] = None


class MachineOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    labels: Dict[str, str]
    annotations: Dict[str, str]
    owner_references: List[OwnerReference]
    addresses: List[MachineAddress]
    conditions: List[MachineCondition]
    failure_domain: Optional[str]
    deletion_timestamp: Optional[datetime]
    created_at: datetime
    updated_at: datetime
