from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from kubedeck.core.logging import get_logger
from kubedeck.db import build_session_factory, create_tables
from kubedeck.exceptions import DuplicateError, InternalError, NotFoundError
from kubedeck.models.cluster import Cluster

from .base import ClusterRecord, ClusterSource, ClusterStatus, ClusterStore, utcnow


logger = get_logger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone=True columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlClusterStore(ClusterStore):
    """Durable store on SQLAlchemy; every write commits before returning."""

    def __init__(self, engine: Engine, session_factory: Optional[sessionmaker[Session]] = None):
        self._engine = engine
        self._session_factory = session_factory or build_session_factory(engine)
        create_tables(engine)

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        try:
            with self._session_factory() as session, session.begin():
                yield session
        except IntegrityError as exc:
            logger.info("cluster store integrity violation: %s", exc.orig.__class__.__name__)
            raise DuplicateError("cluster name or id already exists") from None
        except SQLAlchemyError as exc:
            logger.error("cluster store failure: %s", exc.__class__.__name__)
            raise InternalError("cluster store unavailable") from exc

    def create(self, record: ClusterRecord) -> ClusterRecord:
        cluster_id = record.id or str(uuid.uuid4())
        now = utcnow()
        with self._transaction() as session:
            if session.scalar(select(Cluster.id).where(Cluster.name == record.name)) is not None:
                raise DuplicateError(f"cluster name '{record.name}' already exists")
            if session.get(Cluster, cluster_id) is not None:
                raise DuplicateError(f"cluster id '{cluster_id}' already exists")
            row = Cluster(id=cluster_id, created_at=now, updated_at=now)
            self._apply(row, record)
            session.add(row)
            session.flush()
            created = self._to_record(row)
        return created

    def get_by_id(self, cluster_id: str) -> ClusterRecord:
        with self._transaction() as session:
            row = session.get(Cluster, cluster_id)
            if row is None:
                raise NotFoundError(f"cluster '{cluster_id}' not found")
            return self._to_record(row)

    def get_by_name(self, name: str) -> ClusterRecord:
        with self._transaction() as session:
            row = session.scalars(select(Cluster).where(Cluster.name == name)).first()
            if row is None:
                raise NotFoundError(f"cluster named '{name}' not found")
            return self._to_record(row)

    def list(self) -> List[ClusterRecord]:
        with self._transaction() as session:
            rows = session.scalars(select(Cluster).order_by(Cluster.created_at.asc())).all()
            return [self._to_record(row) for row in rows]

    def update(self, record: ClusterRecord) -> ClusterRecord:
        with self._transaction() as session:
            row = session.get(Cluster, record.id)
            if row is None:
                raise NotFoundError(f"cluster '{record.id}' not found")
            owner = session.scalar(select(Cluster.id).where(Cluster.name == record.name))
            if owner is not None and owner != record.id:
                raise DuplicateError(f"cluster name '{record.name}' already exists")
            self._apply(row, record)
            row.updated_at = max(utcnow(), _aware(row.updated_at))
            session.flush()
            return self._to_record(row)

    def delete_by_id(self, cluster_id: str) -> None:
        with self._transaction() as session:
            row = session.get(Cluster, cluster_id)
            if row is None:
                raise NotFoundError(f"cluster '{cluster_id}' not found")
            session.delete(row)

    def close(self) -> None:
        self._engine.dispose()

    @staticmethod
    def _apply(row: Cluster, record: ClusterRecord) -> None:
        row.name = record.name
        row.sealed_kubeconfig = bytes(record.sealed_kubeconfig)
        row.provider = record.provider or ""
        row.environment = record.environment or ""
        row.region = record.region or ""
        row.description = record.description or ""
        row.version = record.version or ""
        row.status = ClusterStatus(record.status).value
        row.labels = dict(record.labels or {})
        row.source = ClusterSource(record.source).value

    @staticmethod
    def _to_record(row: Cluster) -> ClusterRecord:
        return ClusterRecord(
            id=row.id,
            name=row.name,
            sealed_kubeconfig=bytes(row.sealed_kubeconfig),
            provider=row.provider or "",
            environment=row.environment or "",
            region=row.region or "",
            description=row.description or "",
            version=row.version or "",
            status=ClusterStatus(row.status),
            labels=dict(row.labels or {}),
            source=ClusterSource(row.source),
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )
