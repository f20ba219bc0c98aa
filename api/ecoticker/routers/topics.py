from typing import Optional

import structlog
from fastapi import APIRouter, Body, Depends, Query, Request, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ecoticker.database import get_db
from ecoticker.dependencies import require_admin_key
from ecoticker.errors import AppError
from ecoticker.schemas import (
    Category, MoversResponse, TickerResponse, TopicDelete, TopicUpdate, Urgency, validate,
)
from ecoticker.services.audit import record_audit, record_failure
from ecoticker.services.topic_store import TopicStore, serialize_topic

logger = structlog.get_logger()

router = APIRouter(tags=["topics"])

PUBLIC_CACHE = "public, max-age=300, stale-while-revalidate=600"
TICKER_LIMIT = 15
MOVERS_LIMIT = 5


# ─── Read API ───

@router.get("/ticker", response_model=TickerResponse)
async def ticker(response: Response, db: AsyncSession = Depends(get_db)):
    try:
        items = await db.run_sync(lambda s: TopicStore(s).ticker(TICKER_LIMIT))
    except SQLAlchemyError as e:
        logger.error("ticker: query failed, serving empty list", error=str(e))
        response.headers["Cache-Control"] = "no-store"
        return {"items": []}
    response.headers["Cache-Control"] = PUBLIC_CACHE
    return {"items": items}


@router.get("/movers", response_model=MoversResponse)
async def movers(response: Response, db: AsyncSession = Depends(get_db)):
    try:
        items = await db.run_sync(lambda s: TopicStore(s).movers(MOVERS_LIMIT))
    except SQLAlchemyError as e:
        logger.error("movers: query failed, serving empty list", error=str(e))
        response.headers["Cache-Control"] = "no-store"
        return {"movers": []}
    response.headers["Cache-Control"] = PUBLIC_CACHE
    return {"movers": items}


@router.get("/topics")
async def list_topics(
    urgency: Optional[Urgency] = None,
    category: Optional[Category] = None,
    db: AsyncSession = Depends(get_db),
):
    topics = await db.run_sync(lambda s: TopicStore(s).list_topics(
        urgency=urgency.value if urgency else None, category=category,
    ))
    return {"topics": topics}


@router.get("/topics/{slug}")
async def get_topic(slug: str, db: AsyncSession = Depends(get_db)):
    return await db.run_sync(lambda s: TopicStore(s).topic_detail(slug))


# ─── Admin mutations ───

@router.patch("/topics/{slug}")
async def update_topic(
    slug: str,
    request: Request,
    payload: dict = Body(...),
    actor: str = Depends(require_admin_key),
    db: AsyncSession = Depends(get_db),
):
    def _update(session):
        req = validate(TopicUpdate, payload)
        changes = req.model_dump(exclude_unset=True, exclude_none=True)
        topic = TopicStore(session).update_topic(slug, changes)
        record_audit(session, "update_topic", actor, target=slug,
                     metadata={"fields": sorted(changes)},
                     endpoint=request.url.path, method=request.method)
        return serialize_topic(topic)

    try:
        topic = await db.run_sync(_update)
        await db.commit()
    except (AppError, SQLAlchemyError) as e:
        await record_failure(db, request, actor, "update_topic", e, target=slug)
        raise
    return {"success": True, "topic": topic}


@router.delete("/topics")
async def delete_topics(
    request: Request,
    payload: dict = Body(...),
    dry_run: bool = Query(False, alias="dryRun"),
    actor: str = Depends(require_admin_key),
    db: AsyncSession = Depends(get_db),
):
    def _delete(session):
        req = validate(TopicDelete, payload)
        store = TopicStore(session)
        if req.ids is not None:
            ids = req.ids
        else:
            ids = store.topic_ids_with_article_count(req.article_count)
        if dry_run or req.dry_run:
            preview = store.preview_delete(ids)
            record_audit(session, "delete_topics_preview", actor, target=",".join(map(str, ids)) or None,
                         metadata={"requested": ids, "articleCount": req.article_count, **preview},
                         endpoint=request.url.path, method=request.method)
            return {"success": True, "dryRun": True, "ids": sorted(set(ids)), **preview}
        deleted = store.delete_topics(ids)
        record_audit(session, "delete_topics", actor, target=",".join(map(str, ids)) or None,
                     metadata={"requested": ids, "articleCount": req.article_count, "deleted": deleted},
                     endpoint=request.url.path, method=request.method)
        return {"success": True, "deleted": deleted}

    try:
        result = await db.run_sync(_delete)
        await db.commit()
    except (AppError, SQLAlchemyError) as e:
        await record_failure(db, request, actor, "delete_topics", e)
        raise
    if result.get("dryRun"):
        logger.info("topics: delete previewed", topics=result["topics"], articles=result["articles"])
    else:
        logger.info("topics: deleted", deleted=result["deleted"])
    return result
