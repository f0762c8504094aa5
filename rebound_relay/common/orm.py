from typing import Optional, Generator
import logging
import uuid

from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import sessionmaker, Session, DeclarativeBase

from rebound_relay.common.environment import (
    SQLALCHEMY_LOG_LEVEL,
    POSTGRES_MIN_POOL_SIZE,
    POSTGRES_MAX_POOL_SIZE,
)


__all__ = [
    "normalize_uuid",
    "get_orm_session",
    "dispose_engine",
    "Session",
    "BaseModel",
]


logging.getLogger("sqlalchemy.engine").setLevel(
    getattr(
        logging,
        str(SQLALCHEMY_LOG_LEVEL).upper(),
        logging.ERROR,
    )
)

_engine: Optional[Engine] = None


class BaseModel(DeclarativeBase):
    pass


def normalize_uuid(id_: str | uuid.UUID) -> uuid.UUID:
    """Coerce a string id from a payload or path into a UUID; raises ValueError when malformed."""
    if isinstance(id_, uuid.UUID):
        return id_
    return uuid.UUID(str(id_))


def get_engine() -> Engine:
    """
    Get the SQLAlchemy engine for the application.
    """
    # import the ConnectionConfig late so that tests can patch it before first use
    from .postgres import ConnectionConfig

    global _engine

    if _engine is None:
        connection_string = ConnectionConfig.to_connection_string(protocol="postgresql+psycopg")
        if connection_string.startswith("sqlite"):
            _engine = create_engine(connection_string)
        else:
            _engine = create_engine(
                connection_string,
                pool_size=POSTGRES_MIN_POOL_SIZE,
                max_overflow=POSTGRES_MAX_POOL_SIZE - POSTGRES_MIN_POOL_SIZE,
                pool_pre_ping=True,  # Test connections before use
                pool_recycle=3600,  # Recycle idle connections after 1 hour
            )

    return _engine


def dispose_engine() -> None:
    """Close all pooled connections and forget the engine."""
    global _engine

    if _engine is not None:
        _engine.dispose()
        _engine = None


def _create_session() -> Session:
    """Internal function to create a new SQLAlchemy session."""
    return sessionmaker(bind=get_engine(), expire_on_commit=False)()


def get_orm_session() -> Generator[Session, None, None]:
    """
    Create a new SQLAlchemy ORM session.
    When used with FastAPI's Depends(), it will automatically close the session.
    Example: `orm: Session = Depends(get_orm_session)`
    """
    session = _create_session()
    try:
        yield session
    finally:
        session.close()

