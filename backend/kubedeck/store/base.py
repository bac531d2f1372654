from __future__ import annotations

import abc
import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


class ClusterStatus(str, Enum):
    """Administrator-set lifecycle label."""

    ACTIVE = "Active"
    MAINTENANCE = "Maintenance"
    INACTIVE = "Inactive"


class ClusterSource(str, Enum):
    DATABASE = "database"
    FILE = "file"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ClusterRecord:
    name: str
    sealed_kubeconfig: bytes
    id: Optional[str] = None
    provider: str = ""
    environment: str = ""
    region: str = ""
    description: str = ""
    version: str = ""
    status: ClusterStatus = ClusterStatus.ACTIVE
    labels: Dict[str, str] = field(default_factory=dict)
    source: ClusterSource = ClusterSource.DATABASE
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def read_only(self) -> bool:
        return self.source == ClusterSource.FILE

    def copy(self) -> "ClusterRecord":
        return copy.deepcopy(self)

    def __repr__(self) -> str:
        # sealed_kubeconfig stays out of reprs and tracebacks
        return (
            f"ClusterRecord(id={self.id!r}, name={self.name!r}, source={self.source.value!r}, "
            f"status={self.status.value!r})"
        )


class ClusterStore(abc.ABC):
    """Persistence for cluster records.

    Credentials arrive already sealed; implementations never encrypt.
    """

    @abc.abstractmethod
    def create(self, record: ClusterRecord) -> ClusterRecord:
        """Insert; assigns id (when missing) and timestamps. Raises DuplicateError."""

    @abc.abstractmethod
    def get_by_id(self, cluster_id: str) -> ClusterRecord:
        """Raises NotFoundError."""

    @abc.abstractmethod
    def get_by_name(self, name: str) -> ClusterRecord:
        """Raises NotFoundError."""

    @abc.abstractmethod
    def list(self) -> List[ClusterRecord]:
        """All records, oldest first."""

    @abc.abstractmethod
    def update(self, record: ClusterRecord) -> ClusterRecord:
        """Replace every mutable field. Raises NotFoundError / DuplicateError."""

    @abc.abstractmethod
    def delete_by_id(self, cluster_id: str) -> None:
        """Raises NotFoundError when the id is absent."""

    def close(self) -> None:
        pass
