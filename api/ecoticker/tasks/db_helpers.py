"""
Shared database utilities for Celery tasks.
Tasks use SYNC sessions since Celery workers are synchronous.
"""
from contextlib import contextmanager
from typing import Callable, Optional

from sqlalchemy.orm import sessionmaker, Session

from ecoticker.database import sync_engine

SyncSessionLocal = sessionmaker(bind=sync_engine, expire_on_commit=False)


@contextmanager
def get_sync_db(session_factory: Optional[Callable[[], Session]] = None) -> Session:
    """Context manager for sync DB sessions in Celery tasks."""
    session = (session_factory or SyncSessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
