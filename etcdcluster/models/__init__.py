from etcdcluster.models.base import Base
from etcdcluster.models.etcd_cluster import EtcdCluster
from etcdcluster.models.event import Event
from etcdcluster.models.machine import Machine

__all__ = [
    "Base",
    "EtcdCluster",
    "Event",
    "Machine",
]
