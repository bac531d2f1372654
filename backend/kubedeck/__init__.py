"""kubedeck: cluster management core for a multi-cluster Kubernetes backend."""

__version__ = "1.0.0"
