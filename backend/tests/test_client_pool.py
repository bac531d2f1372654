import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from kubedeck.exceptions import AuthFailureError, MalformedError, NotFoundError, UnreachableError
from kubedeck.services.k8s.client_pool import HealthStatus

from conftest import add_cluster, make_kubeconfig


class Cancelled(BaseException):
    """Stands in for KeyboardInterrupt/SystemExit unwinding a build."""


def test_ready_entry_is_shared(cache, memory_store, vault, factory):
    cluster_id = add_cluster(memory_store, vault)

    first = cache.get_or_build(cluster_id)
    second = cache.get_or_build(cluster_id)

    assert first is second
    assert factory.build_count == 1
    assert factory.probe_count == 1
    health = cache.health(cluster_id)
    assert health.status == HealthStatus.HEALTHY
    assert health.server_version == "v1.29.2"
    assert health.last_probe_at is not None


def test_builds_from_unsealed_kubeconfig(cache, memory_store, vault, factory):
    kc = make_kubeconfig(server="https://198.51.100.7:6443")
    cluster_id = add_cluster(memory_store, vault, kubeconfig=kc)

    bundle = cache.get_or_build(cluster_id)

    assert factory.built == [kc]
    assert bundle.server == "https://198.51.100.7:6443"


def test_fifty_concurrent_callers_share_one_build(cache, memory_store, vault, factory):
    cluster_id = add_cluster(memory_store, vault)
    factory.gate = threading.Event()

    with ThreadPoolExecutor(max_workers=50) as pool:
        futures = [pool.submit(cache.get_or_build, cluster_id) for _ in range(50)]
        assert factory.build_started.wait(timeout=5)
        assert cache.get_pool_stats()["building"] == 1
        factory.gate.set()
        bundles = [f.result(timeout=10) for f in futures]

    assert factory.build_count == 1
    assert factory.probe_count == 1
    assert all(b is bundles[0] for b in bundles)


def test_waiters_receive_the_build_error(cache, memory_store, vault, factory):
    cluster_id = add_cluster(memory_store, vault)
    factory.gate = threading.Event()
    factory.build_error = MalformedError("bad kubeconfig")

    with ThreadPoolExecutor(max_workers=10) as pool:
        futures = [pool.submit(cache.get_or_build, cluster_id) for _ in range(10)]
        assert factory.build_started.wait(timeout=5)
        factory.gate.set()
        for future in futures:
            with pytest.raises(MalformedError):
                future.result(timeout=10)

    assert factory.build_count == 1
    assert cache.get_pool_stats()["total_clusters"] == 0


def test_failed_build_is_not_cached(cache, memory_store, vault, factory):
    cluster_id = add_cluster(memory_store, vault)
    factory.probe_error = UnreachableError("API server is unreachable")

    with pytest.raises(UnreachableError):
        cache.get_or_build(cluster_id)

    health = cache.health(cluster_id)
    assert health.status == HealthStatus.UNREACHABLE
    assert health.last_error == "API server is unreachable"
    assert cache.get_pool_stats()["total_clusters"] == 0
    # the bundle built for the failed probe is released
    assert factory.built and factory.probed[0].closed

    factory.probe_error = None
    bundle = cache.get_or_build(cluster_id)
    assert bundle is not None
    assert factory.build_count == 2
    assert cache.health(cluster_id).status == HealthStatus.HEALTHY
    assert cache.health(cluster_id).last_error is None


def test_auth_failure_recorded(cache, memory_store, vault, factory):
    cluster_id = add_cluster(memory_store, vault)
    factory.probe_error = AuthFailureError("credentials rejected")

    with pytest.raises(AuthFailureError):
        cache.get_or_build(cluster_id)
    assert cache.health(cluster_id).status == HealthStatus.AUTH_FAILURE


def test_unwinding_build_removes_placeholder(cache, memory_store, vault, factory):
    cluster_id = add_cluster(memory_store, vault)
    factory.build_error = Cancelled()

    with pytest.raises(Cancelled):
        cache.get_or_build(cluster_id)
    assert cache.get_pool_stats()["building"] == 0

    factory.build_error = None
    assert cache.get_or_build(cluster_id) is not None


def test_unknown_id(cache, factory):
    with pytest.raises(NotFoundError):
        cache.get_or_build("missing")
    assert factory.build_count == 0
    assert cache.snapshot() == []


def test_invalidate_during_build_is_not_stored(cache, memory_store, vault, factory):
    cluster_id = add_cluster(memory_store, vault)
    factory.gate = threading.Event()

    with ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(cache.get_or_build, cluster_id)
        assert factory.build_started.wait(timeout=5)
        cache.invalidate(cluster_id)
        factory.gate.set()
        stale = future.result(timeout=10)

    assert stale is not None
    assert cache.get_pool_stats()["total_clusters"] == 0

    factory.gate = None
    fresh = cache.get_or_build(cluster_id)
    assert fresh is not stale
    assert factory.build_count == 2


def test_invalidate_drops_entry_and_health(cache, memory_store, vault, factory):
    cluster_id = add_cluster(memory_store, vault)
    cache.get_or_build(cluster_id)

    cache.invalidate(cluster_id)

    assert cache.snapshot() == []
    assert cache.health(cluster_id).status == HealthStatus.UNKNOWN
    cache.get_or_build(cluster_id)
    assert factory.build_count == 2


def test_refresh_swaps_bundle(cache, memory_store, vault, factory):
    cluster_id = add_cluster(memory_store, vault)
    old = cache.get_or_build(cluster_id)

    new = cache.refresh(cluster_id)

    assert new is not old
    assert cache.get_or_build(cluster_id) is new
    assert factory.build_count == 2


def test_failed_refresh_keeps_previous_bundle(cache, memory_store, vault, factory):
    cluster_id = add_cluster(memory_store, vault)
    old = cache.get_or_build(cluster_id)
    factory.probe_error = AuthFailureError("token expired")

    with pytest.raises(AuthFailureError):
        cache.refresh(cluster_id)

    assert cache.get_or_build(cluster_id) is old
    assert cache.health(cluster_id).status == HealthStatus.AUTH_FAILURE


def test_concurrent_refreshes_share_one_build(cache, memory_store, vault, factory):
    cluster_id = add_cluster(memory_store, vault)
    old = cache.get_or_build(cluster_id)
    factory.build_started.clear()
    factory.gate = threading.Event()

    with ThreadPoolExecutor(max_workers=2) as pool:
        first = pool.submit(cache.refresh, cluster_id)
        assert factory.build_started.wait(timeout=5)
        second = pool.submit(cache.refresh, cluster_id)
        time.sleep(0.2)

        # the old bundle keeps serving while the replacement is built
        assert cache.get_or_build(cluster_id) is old
        assert cache.get_pool_stats()["refreshing"] == 1
        assert factory.build_count == 2

        factory.gate.set()
        bundles = [first.result(timeout=10), second.result(timeout=10)]

    assert factory.build_count == 2
    assert bundles[0] is bundles[1]
    assert cache.get_or_build(cluster_id) is bundles[0]
    assert cache.get_pool_stats()["refreshing"] == 0


def test_concurrent_refreshes_share_the_error(cache, memory_store, vault, factory):
    cluster_id = add_cluster(memory_store, vault)
    old = cache.get_or_build(cluster_id)
    factory.build_started.clear()
    factory.gate = threading.Event()
    factory.probe_error = UnreachableError("connection refused")

    with ThreadPoolExecutor(max_workers=2) as pool:
        first = pool.submit(cache.refresh, cluster_id)
        assert factory.build_started.wait(timeout=5)
        second = pool.submit(cache.refresh, cluster_id)
        time.sleep(0.2)
        factory.gate.set()
        for future in (first, second):
            with pytest.raises(UnreachableError):
                future.result(timeout=10)

    assert factory.build_count == 2
    assert cache.get_or_build(cluster_id) is old
    assert cache.health(cluster_id).status == HealthStatus.UNREACHABLE


def test_record_health_ignores_stale_bundle(cache, memory_store, vault):
    cluster_id = add_cluster(memory_store, vault)
    old = cache.get_or_build(cluster_id)
    cache.refresh(cluster_id)

    assert cache.record_health(cluster_id, old, HealthStatus.UNREACHABLE, error="gone") is False
    assert cache.health(cluster_id).status == HealthStatus.HEALTHY


def test_last_probe_at_never_decreases(cache, memory_store, vault):
    cluster_id = add_cluster(memory_store, vault)
    bundle = cache.get_or_build(cluster_id)
    first = cache.health(cluster_id).last_probe_at

    for status in (HealthStatus.UNREACHABLE, HealthStatus.HEALTHY):
        assert cache.record_health(cluster_id, bundle, status)
        current = cache.health(cluster_id).last_probe_at
        assert current >= first
        first = current


def test_snapshot_reports_server(cache, memory_store, vault):
    cluster_id = add_cluster(memory_store, vault, kubeconfig=make_kubeconfig(server="https://192.0.2.5:6443"))
    cache.get_or_build(cluster_id)

    (view,) = cache.snapshot()
    assert view.id == cluster_id
    assert view.server == "https://192.0.2.5:6443"
    assert view.status == HealthStatus.HEALTHY


def test_distinct_ids_build_independently(cache, memory_store, vault, factory):
    ids = [add_cluster(memory_store, vault, name=f"c{i}") for i in range(5)]
    bundles = {cache.get_or_build(cluster_id) for cluster_id in ids}
    assert len(bundles) == 5
    assert factory.build_count == 5
    assert cache.get_pool_stats()["ready"] == 5
