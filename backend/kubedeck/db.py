from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    """Base ORM model."""


def build_engine(database_url: str, *, timeout: float = 10.0, echo: bool = False) -> Engine:
    """Engine with bounded waits: SQLite busy timeout or pool checkout timeout."""
    if database_url.startswith("sqlite"):
        kwargs = {
            "connect_args": {"check_same_thread": False, "timeout": timeout},
            "pool_pre_ping": True,
        }
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=echo, **kwargs)

    return create_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=timeout,
        pool_use_lifo=True,
    )


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def create_tables(engine: Engine) -> None:
    from kubedeck import models  # noqa: F401 - ensure model metadata is registered

    Base.metadata.create_all(bind=engine)
