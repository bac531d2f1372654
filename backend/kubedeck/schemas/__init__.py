from .cluster import (
    ActiveClusterResponse,
    ClusterCreate,
    ClusterDetail,
    ClusterSummary,
    ClusterUpdate,
    MessageResponse,
    SetActiveRequest,
)

__all__ = [
    "ActiveClusterResponse",
    "ClusterCreate",
    "ClusterDetail",
    "ClusterSummary",
    "ClusterUpdate",
    "MessageResponse",
    "SetActiveRequest",
]
