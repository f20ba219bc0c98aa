from fastapi import APIRouter, Depends, Query, Request, status
from kombu.exceptions import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from ecoticker.config import get_settings
from ecoticker.database import get_db
from ecoticker.dependencies import require_admin_key
from ecoticker.errors import ExternalServiceFailure
from ecoticker.schemas import BatchRunResponse
from ecoticker.services.audit import (
    audit_stats, query_audit_logs, record_audit, record_failure, serialize_entry,
)
from ecoticker.tasks.scoring_task import run_batch

settings = get_settings()
logger = structlog.get_logger()

router = APIRouter(tags=["admin"])


@router.get("/audit-logs")
async def list_audit_logs(
    stats: bool = False,
    limit: int = Query(settings.AUDIT_DEFAULT_LIMIT, ge=1),
    offset: int = Query(0, ge=0),
    actor: str = Depends(require_admin_key),
    db: AsyncSession = Depends(get_db),
):
    if stats:
        data = await db.run_sync(lambda s: audit_stats(s))
        return {"success": True, "stats": data}

    limit = min(limit, settings.AUDIT_MAX_LIMIT)

    def _page(session):
        logs, total = query_audit_logs(session, limit=limit, offset=offset)
        return [serialize_entry(e) for e in logs], total

    logs, total = await db.run_sync(_page)
    return {
        "success": True,
        "logs": logs,
        "pagination": {
            "total": total,
            "limit": limit,
            "offset": offset,
            "hasMore": offset + len(logs) < total,
        },
    }


@router.post("/batch", status_code=status.HTTP_202_ACCEPTED, response_model=BatchRunResponse)
async def trigger_batch(
    request: Request,
    actor: str = Depends(require_admin_key),
    db: AsyncSession = Depends(get_db),
):
    """Queue an ingest-then-score run on the Celery worker."""
    try:
        await db.run_sync(lambda s: record_audit(
            s, "trigger_batch", actor, target="batch",
            endpoint=request.url.path, method=request.method,
        ))
        task = run_batch.delay(triggered_by=actor)
        await db.commit()
    except OperationalError as e:
        logger.error("batch: broker unavailable", error=str(e))
        failure = ExternalServiceFailure("Task queue unavailable")
        await record_failure(db, request, actor, "trigger_batch", failure, target="batch")
        raise failure from e

    logger.info("batch: queued", task_id=task.id)
    return {"message": "Batch run queued", "taskId": task.id, "status": "queued"}
