import base64
import threading
from typing import List, Optional

import pytest
import yaml

from kubedeck.core.crypto import CredentialVault
from kubedeck.db import build_engine
from kubedeck.exceptions import AppException
from kubedeck.services.cluster_manager import ClusterManager
from kubedeck.services.k8s.client_pool import ConnectionCache
from kubedeck.services.k8s.factory import parse_kubeconfig
from kubedeck.store.base import ClusterRecord
from kubedeck.store.memory import MemoryClusterStore
from kubedeck.store.sql import SqlClusterStore


TEST_KEY = b"0123456789abcdef0123456789abcdef"


def make_kubeconfig(server: str = "https://10.0.0.1:6443", token: str = "token-a", context: str = "dev") -> bytes:
    doc = {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"name": context, "cluster": {"server": server, "insecure-skip-tls-verify": True}}],
        "users": [{"name": f"{context}-admin", "user": {"token": token}}],
        "contexts": [{"name": context, "context": {"cluster": context, "user": f"{context}-admin"}}],
        "current-context": context,
    }
    return yaml.safe_dump(doc).encode("utf-8")


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class FakeBundle:
    def __init__(self, kubeconfig: bytes, server: str):
        self.kubeconfig = kubeconfig
        self.server = server
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeClientFactory:
    """Counts builds/probes; can block builds on ``gate`` and inject failures."""

    def __init__(self, version: str = "v1.29.2"):
        self.version = version
        self.built: List[bytes] = []
        self.probed: List[FakeBundle] = []
        self.gate: Optional[threading.Event] = None
        self.build_started = threading.Event()
        self.build_error: Optional[BaseException] = None
        self.probe_error: Optional[BaseException] = None
        self._lock = threading.Lock()

    @property
    def build_count(self) -> int:
        return len(self.built)

    @property
    def probe_count(self) -> int:
        return len(self.probed)

    def build(self, kubeconfig: bytes) -> FakeBundle:
        with self._lock:
            self.built.append(kubeconfig)
        self.build_started.set()
        if self.gate is not None:
            self.gate.wait(timeout=10)
        if self.build_error is not None:
            raise self.build_error
        doc, context = parse_kubeconfig(kubeconfig)
        server = next(c["cluster"]["server"] for c in doc["clusters"])
        return FakeBundle(kubeconfig, server)

    def probe(self, bundle: FakeBundle, timeout: Optional[float] = None) -> str:
        with self._lock:
            self.probed.append(bundle)
        if self.probe_error is not None:
            raise self.probe_error
        return self.version


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(TEST_KEY)


@pytest.fixture
def memory_store():
    return MemoryClusterStore()


@pytest.fixture
def sql_store():
    store = SqlClusterStore(build_engine("sqlite://"))
    yield store
    store.close()


@pytest.fixture(params=["memory", "sql"])
def store(request):
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def factory() -> FakeClientFactory:
    return FakeClientFactory()


@pytest.fixture
def cache(memory_store, vault, factory) -> ConnectionCache:
    return ConnectionCache(memory_store, vault, factory, probe_timeout=1)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({"server": {"port": 8080, "activeCluster": ""}}), encoding="utf-8")
    return path


@pytest.fixture
def manager(memory_store, vault, factory, cache, config_file) -> ClusterManager:
    return ClusterManager(memory_store, vault, factory, cache, config_path=str(config_file))


@pytest.fixture
def api_client(manager):
    from fastapi.testclient import TestClient

    from kubedeck.main import create_app

    with TestClient(create_app(manager)) as client:
        yield client


def add_cluster(store, vault, name="c1", kubeconfig=None) -> str:
    record = store.create(ClusterRecord(name=name, sealed_kubeconfig=vault.seal(kubeconfig or make_kubeconfig())))
    return record.id


def assert_error(exc_info, code: str) -> None:
    assert isinstance(exc_info.value, AppException)
    assert exc_info.value.code == code
