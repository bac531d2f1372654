"""Cluster record persistence backends."""
from __future__ import annotations

from typing import TYPE_CHECKING

from kubedeck.core.logging import get_logger
from kubedeck.db import build_engine

from .base import ClusterRecord, ClusterSource, ClusterStatus, ClusterStore
from .memory import MemoryClusterStore
from .sql import SqlClusterStore

if TYPE_CHECKING:
    from kubedeck.config import Settings
    from kubedeck.core.file_config import FileConfig


logger = get_logger(__name__)


def create_store(settings: "Settings", file_config: "FileConfig") -> ClusterStore:
    """Durable SQL store when the configuration file enables the database, else volatile."""
    if not file_config.database.enabled:
        logger.info("database disabled, cluster records are kept in memory")
        return MemoryClusterStore()

    url = settings.database_url or file_config.database.url
    engine = build_engine(url, timeout=settings.store_timeout_seconds)
    logger.info("cluster records stored in %s", engine.url.render_as_string(hide_password=True))
    return SqlClusterStore(engine)


__all__ = [
    "ClusterRecord",
    "ClusterSource",
    "ClusterStatus",
    "ClusterStore",
    "MemoryClusterStore",
    "SqlClusterStore",
    "create_store",
]
