"""
Kubernetes connection layer.

- factory: kubeconfig -> ClientBundle, discovery probe
- client_pool: per-cluster connection cache with coalesced builds
- health_prober: background liveness checks
"""

from .client_pool import ClusterHealth, ClusterHealthView, ConnectionCache, HealthStatus
from .factory import ClientBundle, ClientFactory, in_cluster_kubeconfig, parse_kubeconfig
from .health_prober import HealthProber

__all__ = [
    "ClientBundle",
    "ClientFactory",
    "ClusterHealth",
    "ClusterHealthView",
    "ConnectionCache",
    "HealthProber",
    "HealthStatus",
    "in_cluster_kubeconfig",
    "parse_kubeconfig",
]
