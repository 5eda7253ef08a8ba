from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def create_store_engine(url: str, echo: bool = False) -> Engine:
    """
    Build the SQLAlchemy engine for the metadata store.

    In-memory SQLite URLs get a StaticPool so every connection sees the
    same database (tests and local dry runs).
    """
    kwargs = {"future": True, "echo": echo}
    if url.startswith("sqlite") and ":memory:" in url:
        kwargs["connect_args"] = {"check_same_thread": False}
        kwargs["poolclass"] = StaticPool
    elif url.startswith("mssql"):
        # Maintenance statements commit per statement, never as one long transaction
        kwargs["isolation_level"] = "AUTOCOMMIT"
    return create_engine(url, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


def init_schema(engine: Engine) -> None:
    """
    Create the store mirror tables if they don't exist.

    The production store schema is owned by the update server; this keeps
    local SQLite stores and tests sane.
    """
    from patchkeeper import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
