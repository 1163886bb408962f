import logging
from contextlib import contextmanager
from typing import Callable
from typing import Iterator

from sqlalchemy import Engine
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()

SessionFactory = Callable[[], Session]


def make_engine(db_url: str, **kwargs) -> Engine:
    """Create a SQLAlchemy engine with the given URL and options.

    Args:
        db_url: Database connection URL
        **kwargs: Additional arguments for create_engine

    Returns:
        A SQLAlchemy Engine instance
    """
    connect_args = kwargs.pop("connect_args", {})
    if db_url.startswith("sqlite"):
        # Scheduler ticks and FastAPI's threadpool share one engine
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", 30)

    return create_engine(db_url, connect_args=connect_args, **kwargs)


def make_sessionmaker(engine: Engine) -> sessionmaker:
    """Create a sessionmaker bound to the given engine.

    ``expire_on_commit=False`` keeps attributes readable after
    :func:`db_session` commits, which the services rely on when they turn rows
    into snapshots.
    """
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


@contextmanager
def db_session(session_factory: SessionFactory) -> Iterator[Session]:
    """Session context manager used by every service and background task.

    1. Auto-commit on success
    2. Auto-rollback on error
    3. Always close session

    Usage:
        with db_session(factory) as db:
            crud.create_execution(db, ...)
    """
    session = session_factory()

    try:
        yield session
        session.commit()
        logger.debug("Database session committed successfully")

    except Exception as e:
        session.rollback()
        logger.error(f"Database session rolled back due to error: {e}")
        raise

    finally:
        session.close()


def initialize_database(engine: Engine) -> None:
    """Create all tables on *engine*."""
    # Register the models with Base before create_all
    from flowbot.models import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables initialised")


__all__ = [
    "Base",
    "SessionFactory",
    "make_engine",
    "make_sessionmaker",
    "db_session",
    "initialize_database",
]
