"""
Kubernetes connection cache.

Holds at most one live ``ClientBundle`` per cluster id, builds on demand and
coalesces concurrent builds so each cache miss costs exactly one build.
"""

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from kubedeck.core.crypto import CredentialVault
from kubedeck.core.logging import get_logger
from kubedeck.core.request_context import cluster_id_var
from kubedeck.exceptions import (
    AppException,
    AuthFailureError,
    InternalError,
    NotFoundError,
    UnreachableError,
)
from kubedeck.store.base import ClusterStore

from .factory import ClientBundle, ClientFactory, DEFAULT_PROBE_TIMEOUT


logger = get_logger(__name__)


class HealthStatus(str, Enum):
    UNKNOWN = "Unknown"
    HEALTHY = "Healthy"
    UNREACHABLE = "Unreachable"
    AUTH_FAILURE = "AuthFailure"


@dataclass(frozen=True)
class ClusterHealth:
    status: HealthStatus = HealthStatus.UNKNOWN
    server_version: str = ""
    last_probe_at: Optional[datetime] = None
    last_error: Optional[str] = None


@dataclass(frozen=True)
class ClusterRuntime:
    id: str
    bundle: ClientBundle
    built_at: float


@dataclass(frozen=True)
class ClusterHealthView:
    id: str
    status: HealthStatus
    server_version: str
    last_probe_at: Optional[datetime]
    last_error: Optional[str]
    server: str = ""


def status_for_error(exc: BaseException) -> HealthStatus:
    if isinstance(exc, AuthFailureError):
        return HealthStatus.AUTH_FAILURE
    if isinstance(exc, UnreachableError):
        return HealthStatus.UNREACHABLE
    return HealthStatus.UNKNOWN


class _PendingBuild:
    """Placeholder installed by the caller that won the build."""

    def __init__(self) -> None:
        self._done = threading.Event()
        self.bundle: Optional[ClientBundle] = None
        self.error: Optional[BaseException] = None

    def resolve(self, bundle: ClientBundle) -> None:
        self.bundle = bundle
        self._done.set()

    def fail(self, error: BaseException) -> None:
        self.error = error
        self._done.set()

    def wait(self) -> ClientBundle:
        self._done.wait()
        if self.error is not None:
            raise self.error
        assert self.bundle is not None
        return self.bundle


_Entry = Union[_PendingBuild, ClusterRuntime]


class ConnectionCache:
    """Process-wide registry: cluster id -> live client bundle + health."""

    def __init__(
        self,
        store: ClusterStore,
        vault: CredentialVault,
        factory: ClientFactory,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    ):
        self._store = store
        self._vault = vault
        self._factory = factory
        self.probe_timeout = probe_timeout

        self._entries: Dict[str, _Entry] = {}
        self._health: Dict[str, ClusterHealth] = {}
        # replacement builds for ids that already have a ready entry
        self._refreshing: Dict[str, _PendingBuild] = {}
        # guards the dicts above; never held across network or store calls
        self._lock = threading.Lock()

    def get_or_build(self, cluster_id: str) -> ClientBundle:
        """
        Return the cached bundle for ``cluster_id``, building it on a miss.

        Callers arriving while a build is running wait for it and share its
        result (bundle or error) instead of building again.
        """
        # dict reads are atomic: the ready path takes no lock
        entry = self._entries.get(cluster_id)
        if isinstance(entry, ClusterRuntime):
            return entry.bundle

        with self._lock:
            entry = self._entries.get(cluster_id)
            if isinstance(entry, ClusterRuntime):
                return entry.bundle
            if entry is None:
                pending = _PendingBuild()
                self._entries[cluster_id] = pending
                owner = True
            else:
                pending = entry
                owner = False

        if not owner:
            return pending.wait()

        with self._build_token(cluster_id, pending):
            runtime, version = self._build_runtime(cluster_id)

        with self._lock:
            current = self._entries.get(cluster_id) is pending
            if current:
                self._entries[cluster_id] = runtime
                self._set_health_locked(
                    cluster_id, ClusterHealth(status=HealthStatus.HEALTHY, server_version=version)
                )
        if not current:
            logger.info("cluster %s was invalidated during build; result not cached", cluster_id)
        pending.resolve(runtime.bundle)
        return runtime.bundle

    @contextmanager
    def _build_token(self, cluster_id: str, pending: _PendingBuild) -> Iterator[None]:
        """Scope of a build: any unwinding removes the placeholder and wakes waiters."""
        token = cluster_id_var.set(cluster_id)
        try:
            yield
        except BaseException as exc:
            with self._lock:
                current = self._entries.get(cluster_id) is pending
                if current:
                    del self._entries[cluster_id]
                    if not isinstance(exc, NotFoundError):
                        self._set_health_locked(cluster_id, self._failed_health(cluster_id, exc))
            pending.fail(exc)
            logger.warning("building client for cluster %s failed: %s", cluster_id, exc)
            raise
        finally:
            cluster_id_var.reset(token)

    def _build_runtime(self, cluster_id: str) -> Tuple[ClusterRuntime, str]:
        record = self._store.get_by_id(cluster_id)
        try:
            kubeconfig = self._vault.unseal(record.sealed_kubeconfig)
            bundle = self._factory.build(kubeconfig)
        except AppException:
            raise
        except Exception as exc:
            logger.exception("unexpected error building client for cluster %s", cluster_id)
            raise InternalError(f"could not build client for cluster '{cluster_id}'") from exc

        try:
            version = self._factory.probe(bundle, timeout=self.probe_timeout)
        except BaseException as exc:
            bundle.close()
            if isinstance(exc, Exception) and not isinstance(exc, AppException):
                raise InternalError(f"probe of cluster '{cluster_id}' failed unexpectedly") from exc
            raise
        logger.info("client for cluster %s ready (server %s, version %s)", cluster_id, bundle.server, version)
        return ClusterRuntime(id=cluster_id, bundle=bundle, built_at=time.time()), version

    def refresh(self, cluster_id: str) -> ClientBundle:
        """Build a replacement bundle and swap it in atomically.

        The old bundle keeps serving until the swap. Concurrent refreshes of
        one id share a single build. On failure the previous bundle (if any)
        stays published and the failure is recorded in health.
        """
        with self._lock:
            before = self._entries.get(cluster_id)
            if isinstance(before, ClusterRuntime):
                pending = self._refreshing.get(cluster_id)
                owner = pending is None
                if owner:
                    pending = _PendingBuild()
                    self._refreshing[cluster_id] = pending
        if not isinstance(before, ClusterRuntime):
            return self.get_or_build(cluster_id)
        if not owner:
            return pending.wait()

        token = cluster_id_var.set(cluster_id)
        try:
            runtime, version = self._build_runtime(cluster_id)
        except BaseException as exc:
            with self._lock:
                if self._refreshing.get(cluster_id) is pending:
                    del self._refreshing[cluster_id]
                if not isinstance(exc, NotFoundError) and self._entries.get(cluster_id) is before:
                    self._set_health_locked(cluster_id, self._failed_health(cluster_id, exc))
            pending.fail(exc)
            raise
        finally:
            cluster_id_var.reset(token)

        with self._lock:
            if self._refreshing.get(cluster_id) is pending:
                del self._refreshing[cluster_id]
            swapped = self._entries.get(cluster_id) is before
            if swapped:
                self._entries[cluster_id] = runtime
                self._set_health_locked(
                    cluster_id, ClusterHealth(status=HealthStatus.HEALTHY, server_version=version)
                )
        if not swapped:
            logger.info("cluster %s changed during refresh; refreshed bundle not cached", cluster_id)
        pending.resolve(runtime.bundle)
        return runtime.bundle

    def invalidate(self, cluster_id: str) -> None:
        with self._lock:
            entry = self._entries.pop(cluster_id, None)
            self._health.pop(cluster_id, None)
        if entry is not None:
            logger.info("connection cache entry for cluster %s invalidated", cluster_id)

    def invalidate_all(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._health.clear()
        logger.info("connection cache cleared (%d entries)", count)

    def ready_bundles(self) -> List[Tuple[str, ClientBundle]]:
        with self._lock:
            return [
                (cluster_id, entry.bundle)
                for cluster_id, entry in self._entries.items()
                if isinstance(entry, ClusterRuntime)
            ]

    def record_health(
        self,
        cluster_id: str,
        bundle: ClientBundle,
        status: HealthStatus,
        server_version: str = "",
        error: Optional[str] = None,
    ) -> bool:
        """Store a probe outcome; ignored when ``bundle`` is no longer the live one."""
        with self._lock:
            entry = self._entries.get(cluster_id)
            if not isinstance(entry, ClusterRuntime) or entry.bundle is not bundle:
                return False
            previous = self._health.get(cluster_id, ClusterHealth())
            self._set_health_locked(
                cluster_id,
                ClusterHealth(
                    status=status,
                    server_version=server_version or previous.server_version,
                    last_error=error,
                ),
            )
            return True

    def health(self, cluster_id: str) -> ClusterHealth:
        return self._health.get(cluster_id, ClusterHealth())

    def snapshot(self) -> List[ClusterHealthView]:
        with self._lock:
            ids = list(dict.fromkeys([*self._health.keys(), *self._entries.keys()]))
            views = []
            for cluster_id in ids:
                health = self._health.get(cluster_id, ClusterHealth())
                entry = self._entries.get(cluster_id)
                server = entry.bundle.server if isinstance(entry, ClusterRuntime) else ""
                views.append(
                    ClusterHealthView(
                        id=cluster_id,
                        status=health.status,
                        server_version=health.server_version,
                        last_probe_at=health.last_probe_at,
                        last_error=health.last_error,
                        server=server,
                    )
                )
            return views

    def get_pool_stats(self) -> Dict[str, Any]:
        with self._lock:
            ready = sum(1 for e in self._entries.values() if isinstance(e, ClusterRuntime))
            return {
                "total_clusters": len(self._entries),
                "ready": ready,
                "building": len(self._entries) - ready,
                "refreshing": len(self._refreshing),
                "tracked_health": len(self._health),
            }

    def _failed_health(self, cluster_id: str, exc: BaseException) -> ClusterHealth:
        previous = self._health.get(cluster_id, ClusterHealth())
        status = status_for_error(exc)
        if status is HealthStatus.UNKNOWN:
            status = previous.status
        message = exc.message if isinstance(exc, AppException) else exc.__class__.__name__
        return ClusterHealth(status=status, server_version=previous.server_version, last_error=message)

    def _set_health_locked(self, cluster_id: str, health: ClusterHealth) -> None:
        now = datetime.now(timezone.utc)
        previous = self._health.get(cluster_id)
        if previous is not None and previous.last_probe_at is not None and now < previous.last_probe_at:
            now = previous.last_probe_at
        self._health[cluster_id] = ClusterHealth(
            status=health.status,
            server_version=health.server_version,
            last_probe_at=now,
            last_error=health.last_error,
        )
