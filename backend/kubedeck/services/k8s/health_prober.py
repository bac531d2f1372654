"""Background liveness checks for every built cluster connection."""

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Optional

from kubedeck.core.logging import get_logger
from kubedeck.exceptions import AppException

from .client_pool import ConnectionCache, HealthStatus, status_for_error
from .factory import ClientBundle, ClientFactory


logger = get_logger(__name__)


class HealthProber:
    """
    Periodically re-probes the ready entries of a ``ConnectionCache``.

    Only clusters that already have a live bundle are probed; the prober never
    builds connections itself and never holds the cache lock across a probe.
    Outcomes for bundles replaced or invalidated mid-probe are discarded.
    """

    def __init__(
        self,
        cache: ConnectionCache,
        factory: ClientFactory,
        interval: float = 30.0,
        timeout: float = 5.0,
        max_workers: int = 1,
        initial_delay: float = 5.0,
    ):
        self._cache = cache
        self._factory = factory
        self.interval = interval
        self.timeout = timeout
        self.max_workers = max(1, int(max_workers))
        self.initial_delay = max(0.0, initial_delay)

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        if self.max_workers > 1:
            self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="cluster-probe")
        self._thread = threading.Thread(target=self._worker, daemon=True, name="ClusterHealthProber")
        self._thread.start()
        logger.info("health prober started (interval=%ss, workers=%d)", self.interval, self.max_workers)

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("health prober did not stop within %ss", timeout)
        self._thread = None
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
        logger.info("health prober stopped")

    def _worker(self) -> None:
        if self._stop.wait(self.initial_delay):
            return
        while True:
            try:
                self.probe_all()
            except Exception as e:
                logger.exception("health probe round failed: %s", e)
            if self._stop.wait(self.interval):
                return

    def probe_all(self) -> Dict[str, HealthStatus]:
        """Run one probe round; returns the status observed per cluster id."""
        targets = self._cache.ready_bundles()
        if not targets:
            return {}
        if self._executor is not None:
            futures = {
                cluster_id: self._executor.submit(self._probe_one, cluster_id, bundle)
                for cluster_id, bundle in targets
            }
            return {cluster_id: future.result() for cluster_id, future in futures.items()}
        return {cluster_id: self._probe_one(cluster_id, bundle) for cluster_id, bundle in targets}

    def _probe_one(self, cluster_id: str, bundle: ClientBundle) -> HealthStatus:
        try:
            version = self._factory.probe(bundle, timeout=self.timeout)
        except AppException as exc:
            status = status_for_error(exc)
            if status is HealthStatus.UNKNOWN:
                status = HealthStatus.UNREACHABLE
            self._cache.record_health(cluster_id, bundle, status, error=exc.message)
            logger.warning("cluster %s probe failed: %s", cluster_id, exc.message)
            return status
        except Exception as exc:
            logger.exception("unexpected error probing cluster %s", cluster_id)
            self._cache.record_health(cluster_id, bundle, HealthStatus.UNREACHABLE, error=exc.__class__.__name__)
            return HealthStatus.UNREACHABLE

        if self._cache.record_health(cluster_id, bundle, HealthStatus.HEALTHY, server_version=version):
            logger.debug("cluster %s healthy (version %s)", cluster_id, version)
        return HealthStatus.HEALTHY
