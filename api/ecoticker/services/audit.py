"""
Audit logging of privileged actions.

Every admin mutation and every batch run writes an entry. Entries are written
inside the caller's transaction: if the audit row cannot be stored, the
triggering operation fails with it rather than succeeding unrecorded.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import structlog
from sqlalchemy import select, func, desc, case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session
from starlette.requests import Request

from ecoticker.errors import StorageError
from ecoticker.models import AuditLog

logger = structlog.get_logger()


def truncate_ip(ip: Optional[str]) -> Optional[str]:
    """Zero the host part of an address before it is stored.

    IPv4 keeps the first three octets (192.168.1.0); IPv6 keeps the first
    48 bits (2001:db8:85a3::0). Anything else is returned unchanged.
    """
    if not ip or ip == "unknown":
        return ip
    if "." in ip and ":" not in ip:
        parts = ip.split(".")
        if len(parts) == 4:
            parts[3] = "0"
            return ".".join(parts)
    if ":" in ip:
        parts = ip.split(":")
        if len(parts) >= 3:
            return ":".join(parts[:3]) + "::0"
    return ip


def record_audit(session: Session, action: str, actor: Optional[str],
                 target: Optional[str] = None, metadata: Optional[dict[str, Any]] = None,
                 success: bool = True, error_message: Optional[str] = None,
                 endpoint: Optional[str] = None, method: Optional[str] = None) -> AuditLog:
    entry = AuditLog(
        timestamp=datetime.now(timezone.utc),
        actor=truncate_ip(actor),
        endpoint=endpoint,
        method=method,
        action=action,
        target=target,
        success=success,
        error_message=error_message[:2000] if error_message else None,
        details=metadata,
    )
    try:
        session.add(entry)
        session.flush()
    except SQLAlchemyError as e:
        logger.error("audit: write failed", action=action, error=str(e))
        raise StorageError("Failed to write audit log") from e
    return entry


def serialize_entry(entry: AuditLog) -> dict:
    return {
        "id": entry.id,
        "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
        "actor": entry.actor,
        "endpoint": entry.endpoint,
        "method": entry.method,
        "action": entry.action,
        "target": entry.target,
        "success": entry.success,
        "errorMessage": entry.error_message,
        "details": entry.details,
    }


def query_audit_logs(session: Session, limit: int = 100, offset: int = 0) -> tuple[list[AuditLog], int]:
    """Newest first; entries sharing a timestamp are ordered by id."""
    logs = session.execute(
        select(AuditLog)
        .order_by(desc(AuditLog.timestamp), desc(AuditLog.id))
        .limit(limit)
        .offset(offset)
    ).scalars().all()
    total = session.execute(select(func.count()).select_from(AuditLog)).scalar() or 0
    return list(logs), total


def audit_stats(session: Session, now: Optional[datetime] = None) -> dict:
    now = now or datetime.now(timezone.utc)
    day_ago = now - timedelta(hours=24)
    week_ago = now - timedelta(days=7)

    overall = session.execute(
        select(
            func.count().label("total"),
            func.sum(case((AuditLog.success.is_(True), 1), else_=0)).label("successful"),
            func.sum(case((AuditLog.success.is_(False), 1), else_=0)).label("failed"),
            func.count(func.distinct(AuditLog.actor)).label("unique_actors"),
            func.count(func.distinct(AuditLog.action)).label("unique_actions"),
        )
    ).one()

    recent_failures = session.execute(
        select(AuditLog.action, func.count().label("count"))
        .where(AuditLog.success.is_(False), AuditLog.timestamp > day_ago)
        .group_by(AuditLog.action)
        .order_by(desc("count"))
        .limit(5)
    ).all()

    top_actions = session.execute(
        select(AuditLog.action, func.count().label("count"))
        .where(AuditLog.timestamp > week_ago)
        .group_by(AuditLog.action)
        .order_by(desc("count"))
        .limit(10)
    ).all()

    day = func.date(AuditLog.timestamp)
    daily = session.execute(
        select(day.label("day"), AuditLog.action, func.count().label("count"))
        .where(AuditLog.timestamp > week_ago)
        .group_by(day, AuditLog.action)
        .order_by(day, AuditLog.action)
    ).all()

    return {
        "total": overall.total or 0,
        "successful": overall.successful or 0,
        "failed": overall.failed or 0,
        "uniqueActors": overall.unique_actors or 0,
        "uniqueActions": overall.unique_actions or 0,
        "recentFailures": [{"action": r.action, "count": r.count} for r in recent_failures],
        "topActions": [{"action": r.action, "count": r.count} for r in top_actions],
        "daily": [{"day": str(r.day), "action": r.action, "count": r.count} for r in daily],
    }


async def record_failure(db: AsyncSession, request: Request, actor: Optional[str], action: str,
                         error: Exception, target: Optional[str] = None,
                         metadata: Optional[dict[str, Any]] = None) -> None:
    """Audit a rejected or failed admin mutation after rolling its work back."""
    await db.rollback()
    message = getattr(error, "message", None) or str(error)
    await db.run_sync(lambda s: record_audit(
        s, action, actor, target=target, metadata=metadata, success=False,
        error_message=message, endpoint=request.url.path, method=request.method,
    ))
    await db.commit()
