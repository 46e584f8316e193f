from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from pod_pipeline.config import settings


def _engine_connect_args() -> dict:
    if settings.POD_DB_URL.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(settings.POD_DB_URL, future=True, connect_args=_engine_connect_args())
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


class Base(DeclarativeBase):
    pass


def init_db() -> None:
    # Register mapped classes before creating tables.
    from pod_pipeline.db import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope():
    """Provide a session for one pipeline invocation and always close it."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
