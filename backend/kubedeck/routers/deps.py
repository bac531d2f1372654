from fastapi import Request

from kubedeck.services.cluster_manager import ClusterManager


def get_cluster_manager(request: Request) -> ClusterManager:
    """The manager built during application startup."""
    return request.app.state.cluster_manager
