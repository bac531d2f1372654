import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
import yaml

from kubedeck.exceptions import (
    DuplicateError,
    InternalError,
    MalformedError,
    NoActiveClusterError,
    NotFoundError,
    ReadOnlyError,
    UnreachableError,
)
from kubedeck.services.cluster_manager import ClusterManager
from kubedeck.services.k8s.client_pool import HealthStatus
from kubedeck.store.base import ClusterRecord, ClusterSource, ClusterStatus

from conftest import assert_error, b64, make_kubeconfig


def _active_in_file(path) -> str:
    return yaml.safe_load(path.read_text())["server"]["activeCluster"]


def test_register_list_and_fetch_client(manager, factory, memory_store, vault):
    kc = make_kubeconfig(server="https://10.1.0.1:6443")

    view = manager.register("dev", b64(kc), provider="kind", environment="development")

    assert view.name == "dev"
    assert view.version == "v1.29.2"
    assert view.health == HealthStatus.UNKNOWN

    (listed,) = manager.list()
    assert listed.id == view.id
    assert listed.health == HealthStatus.UNKNOWN

    bundle = manager.get_client_by_id(view.id)
    assert bundle.server == "https://10.1.0.1:6443"

    (listed,) = manager.list()
    assert listed.health == HealthStatus.HEALTHY
    assert listed.server_version == "v1.29.2"

    stored = memory_store.get_by_name("dev")
    assert vault.unseal(stored.sealed_kubeconfig) == kc


def test_duplicate_name_rejected(manager):
    manager.register("prod", b64(make_kubeconfig()))

    with pytest.raises(DuplicateError):
        manager.register("prod", b64(make_kubeconfig(token="other")))
    assert len(manager.list()) == 1


@pytest.mark.parametrize("payload", ["", "not base64!!", b64(b"clusters: [unclosed")])
def test_register_rejects_bad_kubeconfig(manager, payload):
    with pytest.raises(MalformedError):
        manager.register("dev", payload)
    assert manager.list() == []


def test_failed_probe_leaves_no_state(manager, factory):
    factory.probe_error = UnreachableError("API server is unreachable")

    with pytest.raises(UnreachableError):
        manager.register("dev", b64(make_kubeconfig()))

    assert manager.list() == []
    assert manager.cache.get_pool_stats()["total_clusters"] == 0
    assert all(bundle.closed for bundle in factory.probed)


def test_register_requires_name(manager):
    with pytest.raises(MalformedError) as exc_info:
        manager.register("  ", b64(make_kubeconfig()))
    assert_error(exc_info, "MALFORMED")


def test_concurrent_first_fetch_coalesces(manager, factory):
    cluster_id = manager.register("c1", b64(make_kubeconfig())).id
    builds_before, probes_before = factory.build_count, factory.probe_count
    factory.gate = threading.Event()
    factory.build_started.clear()

    with ThreadPoolExecutor(max_workers=50) as pool:
        futures = [pool.submit(manager.get_client_by_id, cluster_id) for _ in range(50)]
        assert factory.build_started.wait(timeout=5)
        factory.gate.set()
        bundles = [f.result(timeout=10) for f in futures]

    assert factory.build_count - builds_before == 1
    assert factory.probe_count - probes_before == 1
    assert len({id(b) for b in bundles}) == 1


def test_credential_rotation_rebuilds(manager, factory):
    old_kc = make_kubeconfig(token="old")
    new_kc = make_kubeconfig(token="new")
    cluster_id = manager.register("c1", b64(old_kc)).id
    old_bundle = manager.get_client_by_id(cluster_id)

    manager.update(cluster_id, kubeconfig_b64=b64(new_kc))

    new_bundle = manager.get_client_by_id(cluster_id)
    assert new_bundle is not old_bundle
    assert new_bundle.kubeconfig == new_kc
    assert factory.built[-1] == new_kc
    assert manager.get_client_by_id(cluster_id) is new_bundle


def test_metadata_update_keeps_connection(manager):
    cluster_id = manager.register("c1", b64(make_kubeconfig())).id
    bundle = manager.get_client_by_id(cluster_id)

    view = manager.update(cluster_id, description="primary", labels={"tier": "gold"}, status="Maintenance")

    assert view.description == "primary"
    assert view.labels == {"tier": "gold"}
    assert view.status == ClusterStatus.MAINTENANCE
    assert manager.get_client_by_id(cluster_id) is bundle


def test_update_errors(manager):
    a = manager.register("a", b64(make_kubeconfig())).id
    manager.register("b", b64(make_kubeconfig()))

    with pytest.raises(NotFoundError):
        manager.update("missing", description="x")
    with pytest.raises(DuplicateError):
        manager.update(a, name="b")
    with pytest.raises(MalformedError):
        manager.update(a, kubeconfig_b64="%%%")
    with pytest.raises(MalformedError):
        manager.update(a, status="Retired")
    assert manager.get_detail(a).name == "a"


def test_malformed_update_changes_nothing(manager, factory, vault, memory_store):
    kc = make_kubeconfig()
    cluster_id = manager.register("a", b64(kc)).id
    bundle = manager.get_client_by_id(cluster_id)

    with pytest.raises(MalformedError):
        manager.update(cluster_id, kubeconfig_b64=b64(b"- not\n- a mapping\n"), description="new")

    assert manager.get_client_by_id(cluster_id) is bundle
    record = memory_store.get_by_id(cluster_id)
    assert vault.unseal(record.sealed_kubeconfig) == kc
    assert record.description == ""


def test_delete_removes_record_and_connection(manager):
    cluster_id = manager.register("c1", b64(make_kubeconfig())).id
    manager.get_client_by_id(cluster_id)

    manager.delete(cluster_id)

    with pytest.raises(NotFoundError):
        manager.get_client_by_id(cluster_id)
    assert manager.cache.snapshot() == []
    assert manager.cache.get_pool_stats()["total_clusters"] == 0
    with pytest.raises(NotFoundError):
        manager.delete(cluster_id)


def test_delete_active_clears_selection(manager, config_file):
    cluster_id = manager.register("c1", b64(make_kubeconfig())).id
    manager.set_active(cluster_id)

    manager.delete(cluster_id)

    assert manager.get_active_id() is None
    assert _active_in_file(config_file) == ""
    with pytest.raises(NoActiveClusterError):
        manager.get_active_client()


def test_active_selection(manager, config_file):
    with pytest.raises(NoActiveClusterError):
        manager.get_active_client()

    c1 = manager.register("c1", b64(make_kubeconfig(server="https://10.0.0.1:6443"))).id
    c2 = manager.register("c2", b64(make_kubeconfig(server="https://10.0.0.2:6443"))).id

    view = manager.set_active(c2)

    assert view.is_active
    assert manager.get_active_id() == c2
    assert _active_in_file(config_file) == c2
    assert manager.get_active_client().server == "https://10.0.0.2:6443"
    assert [v.is_active for v in manager.list()] == [False, True]

    with pytest.raises(NotFoundError):
        manager.set_active("missing")
    assert manager.get_active_id() == c2
    assert c1 != c2


def test_delete_racing_set_active_leaves_no_dangling_selection(manager, memory_store, config_file, monkeypatch):
    cluster_id = manager.register("c1", b64(make_kubeconfig())).id
    original_get = memory_store.get_by_id
    deleter = []

    def get_then_delete(cid):
        record = original_get(cid)
        if not deleter:
            # delete lands between set_active's lookup and its swap
            thread = threading.Thread(target=manager.delete, args=(cid,))
            deleter.append(thread)
            thread.start()
            thread.join(timeout=0.2)
        return record

    monkeypatch.setattr(memory_store, "get_by_id", get_then_delete)

    manager.set_active(cluster_id)
    deleter[0].join(timeout=5)

    assert not deleter[0].is_alive()
    assert manager.get_active_id() is None
    assert _active_in_file(config_file) == ""
    with pytest.raises(NoActiveClusterError):
        manager.get_active_client()


def test_set_active_persistence_failure(manager, monkeypatch):
    cluster_id = manager.register("c1", b64(make_kubeconfig())).id

    def fail(*args, **kwargs):
        raise OSError("read-only file system")

    monkeypatch.setattr("kubedeck.services.cluster_manager.save_active_cluster", fail)

    with pytest.raises(InternalError):
        manager.set_active(cluster_id)
    assert manager.get_active_id() is None


def test_file_sourced_record_is_read_only(manager, memory_store, vault, factory):
    record = memory_store.create(
        ClusterRecord(
            id="file-1",
            name="from-file",
            sealed_kubeconfig=vault.seal(make_kubeconfig()),
            source=ClusterSource.FILE,
        )
    )

    with pytest.raises(ReadOnlyError):
        manager.update(record.id, description="nope")
    with pytest.raises(ReadOnlyError):
        manager.delete(record.id)

    assert manager.get_client_by_id(record.id) is not None
    assert manager.get_detail(record.id).read_only


def test_name_lookup(manager):
    cluster_id = manager.register("named", b64(make_kubeconfig())).id
    assert manager.resolve_id("named") == cluster_id
    assert manager.get_client_by_name("named") is manager.get_client_by_id(cluster_id)
    with pytest.raises(NotFoundError):
        manager.get_client_by_name("unknown")


def test_refresh_records_detected_version(manager, factory):
    cluster_id = manager.register("c1", b64(make_kubeconfig())).id
    manager.get_client_by_id(cluster_id)
    factory.version = "v1.31.0"

    view = manager.refresh(cluster_id)

    assert view.version == "v1.31.0"
    assert view.server_version == "v1.31.0"
    assert view.health == HealthStatus.HEALTHY


def test_shutdown_closes_store(memory_store, vault, factory, cache):
    closed = []
    memory_store.close = lambda: closed.append(True)
    manager = ClusterManager(memory_store, vault, factory, cache)
    manager.shutdown()
    assert closed == [True]
