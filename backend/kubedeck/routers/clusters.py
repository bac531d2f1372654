from typing import List

from fastapi import APIRouter, Depends, status

from kubedeck.schemas import (
    ActiveClusterResponse,
    ClusterCreate,
    ClusterDetail,
    ClusterSummary,
    ClusterUpdate,
    MessageResponse,
    SetActiveRequest,
)
from kubedeck.exceptions import NoActiveClusterError
from kubedeck.services.cluster_manager import ClusterManager

from .deps import get_cluster_manager

router = APIRouter()


# Handlers are plain ``def``: the manager blocks on store and network I/O,
# so FastAPI runs them in its threadpool.


@router.get("/", response_model=List[ClusterSummary])
@router.get("", response_model=List[ClusterSummary], include_in_schema=False)
def list_clusters(manager: ClusterManager = Depends(get_cluster_manager)):
    return [ClusterSummary.model_validate(view) for view in manager.list()]


@router.get("/active", response_model=ActiveClusterResponse)
def get_active_cluster(manager: ClusterManager = Depends(get_cluster_manager)):
    active_id = manager.get_active_id()
    if not active_id:
        raise NoActiveClusterError("no active cluster selected")
    return ActiveClusterResponse(active_cluster_id=active_id)


@router.post("/active", response_model=ClusterDetail)
def set_active_cluster(body: SetActiveRequest, manager: ClusterManager = Depends(get_cluster_manager)):
    cluster_id = body.id or manager.resolve_id(body.name)
    return ClusterDetail.model_validate(manager.set_active(cluster_id))


@router.post("/", response_model=ClusterDetail, status_code=status.HTTP_201_CREATED)
@router.post("", response_model=ClusterDetail, status_code=status.HTTP_201_CREATED, include_in_schema=False)
def create_cluster(body: ClusterCreate, manager: ClusterManager = Depends(get_cluster_manager)):
    view = manager.register(
        body.name,
        body.kubeconfig_data,
        provider=body.provider,
        environment=body.environment,
        region=body.region,
        description=body.description,
        labels=body.labels,
        status=body.status,
    )
    return ClusterDetail.model_validate(view)


@router.get("/{cluster_id}", response_model=ClusterDetail)
def get_cluster(cluster_id: str, manager: ClusterManager = Depends(get_cluster_manager)):
    return ClusterDetail.model_validate(manager.get_detail(cluster_id))


@router.put("/{cluster_id}", response_model=ClusterDetail)
def update_cluster(
    cluster_id: str,
    body: ClusterUpdate,
    manager: ClusterManager = Depends(get_cluster_manager),
):
    changes = body.model_dump(exclude_unset=True)
    kubeconfig_b64 = changes.pop("kubeconfig_data", None)
    view = manager.update(cluster_id, kubeconfig_b64=kubeconfig_b64, **changes)
    return ClusterDetail.model_validate(view)


@router.delete("/{cluster_id}", response_model=MessageResponse)
def delete_cluster(cluster_id: str, manager: ClusterManager = Depends(get_cluster_manager)):
    manager.delete(cluster_id)
    return MessageResponse(message="cluster deleted")


@router.post("/{cluster_id}/refresh", response_model=ClusterDetail)
def refresh_cluster(cluster_id: str, manager: ClusterManager = Depends(get_cluster_manager)):
    """Rebuild the connection and probe the API server now."""
    return ClusterDetail.model_validate(manager.refresh(cluster_id))
