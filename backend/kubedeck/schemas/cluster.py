from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from kubedeck.services.k8s.client_pool import HealthStatus
from kubedeck.store.base import ClusterSource, ClusterStatus


class ClusterBase(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    provider: str = ""
    environment: str = ""
    region: str = ""
    description: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)


class ClusterCreate(ClusterBase):
    # base64 of the kubeconfig document
    kubeconfig_data: str = Field(min_length=1, repr=False)
    status: ClusterStatus = ClusterStatus.ACTIVE


class ClusterUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    kubeconfig_data: Optional[str] = Field(default=None, repr=False)
    provider: Optional[str] = None
    environment: Optional[str] = None
    region: Optional[str] = None
    description: Optional[str] = None
    labels: Optional[Dict[str, str]] = None
    status: Optional[ClusterStatus] = None


class ClusterSummary(BaseModel):
    """Row of the cluster table view."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    provider: str
    environment: str
    region: str
    status: ClusterStatus
    source: ClusterSource
    read_only: bool
    is_active: bool
    health: HealthStatus
    server_version: str = ""


class ClusterDetail(ClusterSummary):
    description: str
    labels: Dict[str, str]
    version: str
    server: str = ""
    last_probe_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SetActiveRequest(BaseModel):
    """Select by id; ``name`` is accepted for older clients."""

    id: Optional[str] = None
    name: Optional[str] = None

    @model_validator(mode="after")
    def _one_key(self) -> "SetActiveRequest":
        if not self.id and not self.name:
            raise ValueError("either id or name is required")
        return self


class ActiveClusterResponse(BaseModel):
    active_cluster_id: str


class MessageResponse(BaseModel):
    message: str
