from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ecoticker.config import get_settings
from ecoticker.database import get_db
from ecoticker.dependencies import require_admin_key
from ecoticker.errors import AppError
from ecoticker.schemas import ArticleCreate, ArticleDelete, ArticleUpdate, validate
from ecoticker.services.audit import record_audit, record_failure
from ecoticker.services.topic_store import TopicStore, serialize_article

settings = get_settings()

router = APIRouter(prefix="/articles", tags=["articles"])


@router.get("")
async def list_articles(
    topic_id: Optional[int] = Query(None, alias="topicId"),
    source: Optional[str] = None,
    url: Optional[str] = None,
    limit: int = Query(50, ge=1),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    limit = min(limit, settings.ARTICLES_MAX_LIMIT)

    def _list(session):
        articles, total = TopicStore(session).list_articles(
            topic_id=topic_id, source=source, url=url, limit=limit, offset=offset,
        )
        return [serialize_article(a) for a in articles], total

    items, total = await db.run_sync(_list)
    return {
        "articles": items,
        "pagination": {"total": total, "limit": limit, "offset": offset,
                       "hasMore": offset + len(items) < total},
    }


@router.get("/{article_id}")
async def get_article(article_id: int, db: AsyncSession = Depends(get_db)):
    return await db.run_sync(lambda s: serialize_article(TopicStore(s).get_article(article_id)))


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_article(
    request: Request,
    payload: dict = Body(...),
    actor: str = Depends(require_admin_key),
    db: AsyncSession = Depends(get_db),
):
    def _create(session):
        req = validate(ArticleCreate, payload)
        article = TopicStore(session).create_article(**req.model_dump(), source_type="api")
        record_audit(session, "create_article", actor, target=str(article.id),
                     metadata={"topicId": article.topic_id, "url": article.url},
                     endpoint=request.url.path, method=request.method)
        return serialize_article(article)

    try:
        article = await db.run_sync(_create)
        await db.commit()
    except (AppError, SQLAlchemyError) as e:
        await record_failure(db, request, actor, "create_article", e)
        raise
    return {"success": True, "article": article}


@router.put("/{article_id}")
async def update_article(
    article_id: int,
    request: Request,
    payload: dict = Body(...),
    actor: str = Depends(require_admin_key),
    db: AsyncSession = Depends(get_db),
):
    def _update(session):
        req = validate(ArticleUpdate, payload)
        changes = req.model_dump(exclude_unset=True, exclude_none=True)
        article = TopicStore(session).update_article(article_id, changes)
        session.refresh(article)
        record_audit(session, "update_article", actor, target=str(article_id),
                     metadata={"fields": sorted(changes)},
                     endpoint=request.url.path, method=request.method)
        return serialize_article(article)

    try:
        article = await db.run_sync(_update)
        await db.commit()
    except (AppError, SQLAlchemyError) as e:
        await record_failure(db, request, actor, "update_article", e, target=str(article_id))
        raise
    return {"success": True, "article": article}


@router.delete("/{article_id}")
async def delete_article(
    article_id: int,
    request: Request,
    actor: str = Depends(require_admin_key),
    db: AsyncSession = Depends(get_db),
):
    def _delete(session):
        deleted = TopicStore(session).delete_article(article_id)
        record_audit(session, "delete_article", actor, target=str(article_id),
                     endpoint=request.url.path, method=request.method)
        return deleted

    try:
        deleted = await db.run_sync(_delete)
        await db.commit()
    except (AppError, SQLAlchemyError) as e:
        await record_failure(db, request, actor, "delete_article", e, target=str(article_id))
        raise
    return {"success": True, "deleted": deleted}


@router.delete("")
async def delete_articles(
    request: Request,
    payload: dict = Body(...),
    actor: str = Depends(require_admin_key),
    db: AsyncSession = Depends(get_db),
):
    def _delete(session):
        req = validate(ArticleDelete, payload)
        filters = req.model_dump(exclude_none=True)
        deleted = TopicStore(session).delete_articles(**filters)
        record_audit(session, "delete_articles", actor,
                     metadata={"filter": filters, "deleted": deleted},
                     endpoint=request.url.path, method=request.method)
        return deleted

    try:
        deleted = await db.run_sync(_delete)
        await db.commit()
    except (AppError, SQLAlchemyError) as e:
        await record_failure(db, request, actor, "delete_articles", e)
        raise
    return {"success": True, "deleted": deleted}
