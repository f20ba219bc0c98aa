"""Batch staleness derived from the most recent score snapshot."""
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ecoticker.errors import StorageError
from ecoticker.models import ScoreHistory

logger = structlog.get_logger()


@dataclass(frozen=True)
class HealthStatus:
    last_batch_at: Optional[date]
    is_stale: bool

    def to_dict(self) -> dict:
        return {
            "lastBatchAt": self.last_batch_at.isoformat() if self.last_batch_at else None,
            "isStale": self.is_stale,
        }


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def is_stale(last_batch_at: Optional[date], today: date) -> bool:
    # recorded_at has day granularity: stale once the UTC day has rolled over
    return last_batch_at is None or last_batch_at < today


def get_health(session: Session, today: Optional[date] = None) -> HealthStatus:
    try:
        last = session.execute(select(func.max(ScoreHistory.recorded_at))).scalar()
    except SQLAlchemyError as e:
        logger.error("health: query failed", error=str(e))
        raise StorageError("Internal server error") from e

    if isinstance(last, str):
        last = date.fromisoformat(last)
    return HealthStatus(last_batch_at=last, is_stale=is_stale(last, today or utc_today()))
