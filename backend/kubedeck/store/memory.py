from __future__ import annotations

import threading
import uuid
from typing import Dict, List

from kubedeck.core.logging import get_logger
from kubedeck.exceptions import DuplicateError, NotFoundError

from .base import ClusterRecord, ClusterStore, utcnow


logger = get_logger(__name__)


class MemoryClusterStore(ClusterStore):
    """Volatile store for tests and local mode; lives as long as the process."""

    def __init__(self) -> None:
        self._records: Dict[str, ClusterRecord] = {}
        self._lock = threading.RLock()

    def create(self, record: ClusterRecord) -> ClusterRecord:
        with self._lock:
            if self._find_id_by_name(record.name) is not None:
                raise DuplicateError(f"cluster name '{record.name}' already exists")
            stored = record.copy()
            stored.id = stored.id or str(uuid.uuid4())
            if stored.id in self._records:
                raise DuplicateError(f"cluster id '{stored.id}' already exists")
            now = utcnow()
            stored.created_at = now
            stored.updated_at = now
            self._records[stored.id] = stored
            logger.debug("memory store: created cluster %s", stored.id)
            return stored.copy()

    def get_by_id(self, cluster_id: str) -> ClusterRecord:
        with self._lock:
            record = self._records.get(cluster_id)
            if record is None:
                raise NotFoundError(f"cluster '{cluster_id}' not found")
            return record.copy()

    def get_by_name(self, name: str) -> ClusterRecord:
        with self._lock:
            cluster_id = self._find_id_by_name(name)
            if cluster_id is None:
                raise NotFoundError(f"cluster named '{name}' not found")
            return self._records[cluster_id].copy()

    def list(self) -> List[ClusterRecord]:
        with self._lock:
            records = [r.copy() for r in self._records.values()]
        # dicts keep insertion order, so the sort is stable for equal timestamps
        return sorted(records, key=lambda r: r.created_at)

    def update(self, record: ClusterRecord) -> ClusterRecord:
        with self._lock:
            current = self._records.get(record.id)
            if current is None:
                raise NotFoundError(f"cluster '{record.id}' not found")
            owner = self._find_id_by_name(record.name)
            if owner is not None and owner != record.id:
                raise DuplicateError(f"cluster name '{record.name}' already exists")
            stored = record.copy()
            stored.created_at = current.created_at
            stored.updated_at = max(utcnow(), current.updated_at)
            self._records[stored.id] = stored
            return stored.copy()

    def delete_by_id(self, cluster_id: str) -> None:
        with self._lock:
            if self._records.pop(cluster_id, None) is None:
                raise NotFoundError(f"cluster '{cluster_id}' not found")

    def _find_id_by_name(self, name: str):
        for cluster_id, record in self._records.items():
            if record.name == name:
                return cluster_id
        return None
