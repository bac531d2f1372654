"""
Cluster management facade.

Owns the store, vault, client factory, connection cache and prober, plus the
active-cluster selection. HTTP handlers talk to this class only.
"""
from __future__ import annotations

import base64
import binascii
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from kubedeck.core.crypto import CredentialVault
from kubedeck.core.file_config import save_active_cluster
from kubedeck.core.logging import get_logger
from kubedeck.exceptions import (
    DuplicateError,
    InternalError,
    MalformedError,
    NoActiveClusterError,
    NotFoundError,
    ReadOnlyError,
)
from kubedeck.services.k8s.client_pool import ClusterHealthView, ConnectionCache, HealthStatus
from kubedeck.services.k8s.factory import ClientBundle, ClientFactory
from kubedeck.services.k8s.health_prober import HealthProber
from kubedeck.store.base import ClusterRecord, ClusterSource, ClusterStatus, ClusterStore


logger = get_logger(__name__)

_UNSET = object()


@dataclass
class ClusterView:
    """A stored record merged with its live connection health."""

    id: str
    name: str
    provider: str
    environment: str
    region: str
    description: str
    status: ClusterStatus
    labels: Dict[str, str]
    source: ClusterSource
    version: str
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    health: HealthStatus = HealthStatus.UNKNOWN
    server_version: str = ""
    server: str = ""
    last_probe_at: Optional[datetime] = None
    last_error: Optional[str] = None
    is_active: bool = False
    read_only: bool = field(init=False)

    def __post_init__(self) -> None:
        self.read_only = self.source == ClusterSource.FILE


def decode_kubeconfig(kubeconfig_b64: str) -> bytes:
    if not kubeconfig_b64 or not kubeconfig_b64.strip():
        raise MalformedError("kubeconfig is empty")
    try:
        data = base64.b64decode(kubeconfig_b64.strip(), validate=True)
    except (binascii.Error, ValueError):
        raise MalformedError("kubeconfig is not valid base64") from None
    if not data:
        raise MalformedError("kubeconfig is empty")
    return data


def _parse_status(value) -> ClusterStatus:
    try:
        return ClusterStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in ClusterStatus)
        raise MalformedError(f"status must be one of: {allowed}") from None


class ClusterManager:
    def __init__(
        self,
        store: ClusterStore,
        vault: CredentialVault,
        factory: ClientFactory,
        cache: ConnectionCache,
        prober: Optional[HealthProber] = None,
        config_path: Optional[str] = None,
        active_id: Optional[str] = None,
    ):
        self.store = store
        self.vault = vault
        self.factory = factory
        self.cache = cache
        self.prober = prober
        self.config_path = config_path

        self._active_id = active_id or None
        self._active_lock = threading.Lock()
        # serialises register/update/delete/set_active around the store + cache steps only
        self._mutation_lock = threading.Lock()

    # ---- lifecycle -------------------------------------------------------

    def start(self) -> None:
        if self.prober is not None:
            self.prober.start()

    def shutdown(self) -> None:
        if self.prober is not None:
            self.prober.stop()
        self.cache.invalidate_all()
        self.store.close()
        logger.info("cluster manager shut down")

    # ---- mutations -------------------------------------------------------

    def register(
        self,
        name: str,
        kubeconfig_b64: str,
        *,
        provider: str = "",
        environment: str = "",
        region: str = "",
        description: str = "",
        labels: Optional[Dict[str, str]] = None,
        status: ClusterStatus | str = ClusterStatus.ACTIVE,
    ) -> ClusterView:
        """Validate, probe, seal and store a new cluster.

        A failure at any step leaves neither a record nor a cache entry.
        """
        name = (name or "").strip()
        if not name:
            raise MalformedError("cluster name is required")
        cluster_status = _parse_status(status)
        self._ensure_name_free(name)

        kubeconfig = decode_kubeconfig(kubeconfig_b64)
        bundle = self.factory.build(kubeconfig)
        try:
            version = self.factory.probe(bundle, timeout=self.cache.probe_timeout)
        finally:
            bundle.close()

        record = ClusterRecord(
            name=name,
            sealed_kubeconfig=self.vault.seal(kubeconfig),
            provider=provider or "",
            environment=environment or "",
            region=region or "",
            description=description or "",
            version=version,
            status=cluster_status,
            labels=dict(labels or {}),
            source=ClusterSource.DATABASE,
        )
        with self._mutation_lock:
            created = self.store.create(record)
            self.cache.invalidate(created.id)
        logger.info("cluster %s registered as %s (server version %s)", name, created.id, version or "unknown")
        return self._view(created)

    def update(
        self,
        cluster_id: str,
        *,
        name: Optional[str] = None,
        kubeconfig_b64: Optional[str] = None,
        provider: Optional[str] = None,
        environment: Optional[str] = None,
        region: Optional[str] = None,
        description: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
        status: Optional[ClusterStatus | str] = None,
    ) -> ClusterView:
        current = self.store.get_by_id(cluster_id)
        if current.read_only:
            raise ReadOnlyError(f"cluster '{current.name}' is defined in the configuration file")

        sealed = None
        if kubeconfig_b64 is not None:
            kubeconfig = decode_kubeconfig(kubeconfig_b64)
            # parse only; the new credentials are probed on the next client fetch
            self.factory.build(kubeconfig).close()
            sealed = self.vault.seal(kubeconfig)
        if name is not None:
            name = name.strip()
            if not name:
                raise MalformedError("cluster name cannot be empty")
        new_status = _parse_status(status) if status is not None else None

        with self._mutation_lock:
            record = self.store.get_by_id(cluster_id)
            if record.read_only:
                raise ReadOnlyError(f"cluster '{record.name}' is defined in the configuration file")
            if name is not None:
                record.name = name
            if provider is not None:
                record.provider = provider
            if environment is not None:
                record.environment = environment
            if region is not None:
                record.region = region
            if description is not None:
                record.description = description
            if labels is not None:
                record.labels = dict(labels)
            if new_status is not None:
                record.status = new_status
            if sealed is not None:
                record.sealed_kubeconfig = sealed
                record.version = ""

            updated = self.store.update(record)
            if sealed is not None:
                self.cache.invalidate(cluster_id)
        logger.info(
            "cluster %s updated%s", cluster_id, " (credentials rotated)" if sealed is not None else ""
        )
        return self._view(updated)

    def delete(self, cluster_id: str) -> None:
        with self._mutation_lock:
            record = self.store.get_by_id(cluster_id)
            if record.read_only:
                raise ReadOnlyError(f"cluster '{record.name}' is defined in the configuration file")
            self.store.delete_by_id(cluster_id)
            self.cache.invalidate(cluster_id)
        logger.info("cluster %s (%s) deleted", record.name, cluster_id)

        with self._active_lock:
            if self._active_id != cluster_id:
                return
            self._active_id = None
            try:
                self._persist_active(None)
            except InternalError:
                logger.error("deleted cluster %s was active; cleared selection could not be persisted", cluster_id)

    def refresh(self, cluster_id: str) -> ClusterView:
        """Rebuild and re-probe the connection, recording the detected version."""
        self.cache.refresh(cluster_id)
        version = self.cache.health(cluster_id).server_version
        with self._mutation_lock:
            record = self.store.get_by_id(cluster_id)
            if version and version != record.version and not record.read_only:
                record.version = version
                record = self.store.update(record)
        return self._view(record)

    # ---- queries ---------------------------------------------------------

    def list(self) -> List[ClusterView]:
        health = {view.id: view for view in self.cache.snapshot()}
        active_id = self._active_id
        return [self._view(record, health.get(record.id), active_id) for record in self.store.list()]

    def get_detail(self, cluster_id: str) -> ClusterView:
        return self._view(self.store.get_by_id(cluster_id))

    def resolve_id(self, name: str) -> str:
        return self.store.get_by_name(name).id

    # ---- active selection ------------------------------------------------

    def get_active_id(self) -> Optional[str]:
        return self._active_id

    def set_active(self, cluster_id: str) -> ClusterView:
        # a concurrent delete either runs first (NotFound here) or clears the selection after
        with self._mutation_lock:
            record = self.store.get_by_id(cluster_id)
            with self._active_lock:
                self._persist_active(cluster_id)
                self._active_id = cluster_id
        logger.info("active cluster set to %s (%s)", record.name, cluster_id)
        return self._view(record)

    def _persist_active(self, cluster_id: Optional[str]) -> None:
        if not self.config_path:
            return
        try:
            save_active_cluster(self.config_path, cluster_id)
        except (OSError, ValueError) as exc:
            logger.error("could not persist active cluster to %s: %s", self.config_path, exc)
            raise InternalError("active cluster selection could not be saved") from exc

    # ---- clients ---------------------------------------------------------

    def get_client_by_id(self, cluster_id: str) -> ClientBundle:
        return self.cache.get_or_build(cluster_id)

    def get_client_by_name(self, name: str) -> ClientBundle:
        return self.cache.get_or_build(self.resolve_id(name))

    def get_active_client(self) -> ClientBundle:
        active_id = self._active_id
        if not active_id:
            raise NoActiveClusterError("no active cluster selected")
        return self.cache.get_or_build(active_id)

    # ---- helpers ---------------------------------------------------------

    def _ensure_name_free(self, name: str) -> None:
        try:
            existing = self.store.get_by_name(name)
        except NotFoundError:
            return
        raise DuplicateError(f"cluster name '{existing.name}' already exists")

    def _view(
        self,
        record: ClusterRecord,
        health: Optional[ClusterHealthView] | object = _UNSET,
        active_id: Optional[str] | object = _UNSET,
    ) -> ClusterView:
        if health is _UNSET:
            health = next((v for v in self.cache.snapshot() if v.id == record.id), None)
        if active_id is _UNSET:
            active_id = self._active_id
        view = ClusterView(
            id=record.id,
            name=record.name,
            provider=record.provider,
            environment=record.environment,
            region=record.region,
            description=record.description,
            status=record.status,
            labels=dict(record.labels),
            source=record.source,
            version=record.version,
            created_at=record.created_at,
            updated_at=record.updated_at,
            is_active=record.id == active_id,
        )
        if health is not None:
            view.health = health.status
            view.server_version = health.server_version or record.version
            view.server = health.server
            view.last_probe_at = health.last_probe_at
            view.last_error = health.last_error
        else:
            view.server_version = record.version
        return view
