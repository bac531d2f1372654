"""
Startup loading of clusters declared in the configuration file.
"""
from __future__ import annotations

import os
import uuid
from pathlib import Path
from typing import List, Optional

from kubedeck.core.crypto import CredentialVault
from kubedeck.core.file_config import DEFAULT_KUBECONFIG, IN_CLUSTER, ClusterDeclaration, FileConfig
from kubedeck.core.logging import get_logger
from kubedeck.exceptions import AppException, NotFoundError, VaultError
from kubedeck.services.k8s.factory import ClientFactory, in_cluster_kubeconfig
from kubedeck.store.base import ClusterRecord, ClusterSource, ClusterStore


logger = get_logger(__name__)


def declaration_id(decl: ClusterDeclaration) -> str:
    """Declared id, or one derived from the name so restarts map to the same record."""
    if decl.id:
        return decl.id
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"kubedeck:cluster:{decl.name}"))


def resolve_kubeconfig_path(config_path: str, base_dir: Path) -> Path:
    if not config_path or config_path == DEFAULT_KUBECONFIG:
        env_path = os.environ.get("KUBECONFIG", "")
        # KUBECONFIG may list several files; the first one wins
        first = env_path.split(os.pathsep)[0] if env_path else ""
        return Path(first).expanduser() if first else Path.home() / ".kube" / "config"
    path = Path(config_path).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    return path


def read_declared_kubeconfig(decl: ClusterDeclaration, base_dir: Path) -> bytes:
    if decl.config_path == IN_CLUSTER:
        return in_cluster_kubeconfig()
    path = resolve_kubeconfig_path(decl.config_path, base_dir)
    with path.open("rb") as fh:
        return fh.read()


def bootstrap_file_clusters(
    file_config: FileConfig,
    store: ClusterStore,
    vault: CredentialVault,
    factory: ClientFactory,
) -> List[str]:
    """
    Bring file-sourced records in line with the declarations.

    New declarations are inserted. Records imported on an earlier start are
    re-read from their kubeconfig and declared metadata. File records whose
    declaration is gone are removed. Database records are never touched.

    Returns the ids of all declarations now backed by a file record.
    Declarations that cannot be loaded are skipped; an existing record for
    such a declaration is left as it was.
    """
    loaded: List[str] = []
    base_dir = file_config.base_dir
    for decl in file_config.clusters:
        try:
            existing = store.get_by_name(decl.name)
        except NotFoundError:
            existing = None
        if existing is not None and existing.source != ClusterSource.FILE:
            logger.warning("cluster %s already registered through the API as %s, declaration ignored", decl.name, existing.id)
            continue

        try:
            kubeconfig = read_declared_kubeconfig(decl, base_dir)
            factory.build(kubeconfig).close()
            if existing is None:
                record = store.create(_declared_record(decl, vault.seal(kubeconfig)))
                logger.info("cluster %s loaded from configuration file as %s", decl.name, record.id)
            else:
                record = store.update(_reconciled_record(existing, decl, vault, kubeconfig))
                logger.info("cluster %s (%s) re-read from configuration file", decl.name, record.id)
        except OSError as exc:
            logger.error("cluster %s: kubeconfig %s unreadable: %s", decl.name, decl.config_path or "default", exc.strerror or exc)
            if existing is not None:
                loaded.append(existing.id)
            continue
        except AppException as exc:
            logger.error("cluster %s skipped: %s", decl.name, exc.message)
            if existing is not None:
                loaded.append(existing.id)
            continue
        loaded.append(record.id)

    declared = {decl.name for decl in file_config.clusters}
    for record in store.list():
        if record.source == ClusterSource.FILE and record.name not in declared:
            store.delete_by_id(record.id)
            logger.info("cluster %s (%s) no longer declared, removed", record.name, record.id)
    return loaded


def _declared_record(decl: ClusterDeclaration, sealed: bytes) -> ClusterRecord:
    return ClusterRecord(
        id=declaration_id(decl),
        name=decl.name,
        sealed_kubeconfig=sealed,
        provider=decl.provider,
        environment=decl.environment,
        region=decl.region,
        description=decl.description,
        labels=dict(decl.labels),
        source=ClusterSource.FILE,
    )


def _reconciled_record(
    existing: ClusterRecord, decl: ClusterDeclaration, vault: CredentialVault, kubeconfig: bytes
) -> ClusterRecord:
    record = existing.copy()
    try:
        unchanged = vault.unseal(existing.sealed_kubeconfig) == kubeconfig
    except VaultError:
        # sealed under another key
        unchanged = False
    if not unchanged:
        record.sealed_kubeconfig = vault.seal(kubeconfig)
        record.version = ""
    record.provider = decl.provider
    record.environment = decl.environment
    record.region = decl.region
    record.description = decl.description
    record.labels = dict(decl.labels)
    return record


def initial_active_id(file_config: FileConfig, store: ClusterStore, loaded_ids: List[str]) -> Optional[str]:
    """The persisted selection if it still exists, else the first declaration marked active."""
    configured = file_config.server.active_cluster
    if configured:
        try:
            return store.get_by_id(configured).id
        except NotFoundError:
            logger.warning("configured active cluster %s does not exist, ignoring", configured)

    loaded = set(loaded_ids)
    for decl in file_config.clusters:
        if not decl.is_active:
            continue
        try:
            record = store.get_by_name(decl.name)
        except NotFoundError:
            continue
        if record.id in loaded and record.source == ClusterSource.FILE:
            logger.info("adopting %s (%s) as active cluster", decl.name, record.id)
            return record.id
    return None
