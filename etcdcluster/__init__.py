"""Status reconciliation for etcdadm-managed etcd clusters."""
