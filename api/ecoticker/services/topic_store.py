"""
Topic and article storage.

TopicStore works inside the caller's transaction and never commits: the
router (or task) commits once the mutation and its audit entry are both in
place. Cascade deletion removes children before parents as one unit.
"""
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import select, func, desc, delete, update, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ecoticker.errors import NotFound, Conflict, StorageError
from ecoticker.models import Topic, Article, ScoreHistory, TopicKeyword

logger = structlog.get_logger()

SPARKLINE_POINTS = 7
TOPIC_EDITABLE_FIELDS = ("name", "category", "region", "impact_summary", "image_url", "hidden")
ARTICLE_EDITABLE_FIELDS = ("topic_id", "title", "url", "source", "summary", "image_url", "published_at")


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_topic(topic: Topic, sparkline: Optional[list[int]] = None) -> dict:
    data = {
        "id": topic.id,
        "name": topic.name,
        "slug": topic.slug,
        "category": topic.category,
        "region": topic.region,
        "currentScore": topic.current_score,
        "previousScore": topic.previous_score,
        "change": topic.change,
        "urgency": topic.urgency,
        "impactSummary": topic.impact_summary,
        "imageUrl": topic.image_url,
        "articleCount": topic.article_count,
        "healthScore": topic.health_score,
        "ecoScore": topic.eco_score,
        "econScore": topic.econ_score,
        "scoreReasoning": topic.score_reasoning,
        "hidden": topic.hidden,
        "updatedAt": _iso(topic.updated_at),
    }
    if sparkline is not None:
        data["sparkline"] = sparkline
    return data


def serialize_article(article: Article) -> dict:
    return {
        "id": article.id,
        "topicId": article.topic_id,
        "title": article.title,
        "url": article.url,
        "source": article.source,
        "summary": article.summary,
        "imageUrl": article.image_url,
        "sourceType": article.source_type,
        "publishedAt": _iso(article.published_at),
        "fetchedAt": _iso(article.fetched_at),
        "scoredAt": _iso(article.scored_at),
    }


def serialize_history(row: ScoreHistory) -> dict:
    return {
        "recordedAt": _iso(row.recorded_at),
        "score": row.score,
        "healthScore": row.health_score,
        "ecoScore": row.eco_score,
        "econScore": row.econ_score,
        "healthLevel": row.health_level,
        "ecoLevel": row.eco_level,
        "econLevel": row.econ_level,
        "impactSummary": row.impact_summary,
        "anomalyDetected": row.anomaly_detected,
    }


class TopicStore:

    def __init__(self, session: Session):
        self.session = session

    # ─── Read ───

    def ticker(self, limit: int = 15) -> list[dict]:
        rows = self.session.execute(
            select(Topic.name, Topic.slug, Topic.current_score, Topic.previous_score)
            .where(Topic.hidden.is_(False))
            .order_by(desc(Topic.current_score), Topic.id)
            .limit(limit)
        ).all()
        return [
            {"name": r.name, "slug": r.slug, "score": r.current_score,
             "change": r.current_score - r.previous_score}
            for r in rows
        ]

    def movers(self, limit: int = 5) -> list[dict]:
        delta = Topic.current_score - Topic.previous_score
        rows = self.session.execute(
            select(Topic.name, Topic.slug, Topic.current_score, Topic.previous_score, Topic.urgency)
            .where(Topic.hidden.is_(False), Topic.current_score != Topic.previous_score)
            .order_by(desc(func.abs(delta)), Topic.id)
            .limit(limit)
        ).all()
        return [
            {"name": r.name, "slug": r.slug, "currentScore": r.current_score,
             "previousScore": r.previous_score,
             "change": r.current_score - r.previous_score, "urgency": r.urgency}
            for r in rows
        ]

    def sparkline(self, topic_id: int, points: int = SPARKLINE_POINTS) -> list[int]:
        scores = self.session.execute(
            select(ScoreHistory.score)
            .where(ScoreHistory.topic_id == topic_id)
            .order_by(desc(ScoreHistory.recorded_at))
            .limit(points)
        ).scalars().all()
        return list(reversed(scores))

    def list_topics(self, urgency: Optional[str] = None, category: Optional[str] = None,
                    include_hidden: bool = False) -> list[dict]:
        query = select(Topic)
        if not include_hidden:
            query = query.where(Topic.hidden.is_(False))
        if urgency:
            query = query.where(Topic.urgency == urgency)
        if category:
            query = query.where(Topic.category == category)
        topics = self.session.execute(
            query.order_by(desc(Topic.current_score), Topic.id)
        ).scalars().all()
        return [serialize_topic(t, self.sparkline(t.id)) for t in topics]

    def get_topic_by_slug(self, slug: str) -> Topic:
        topic = self.session.execute(select(Topic).where(Topic.slug == slug)).scalar_one_or_none()
        if topic is None:
            raise NotFound("Topic not found")
        return topic

    def topic_detail(self, slug: str) -> dict:
        topic = self.get_topic_by_slug(slug)
        articles = self.session.execute(
            select(Article)
            .where(Article.topic_id == topic.id)
            .order_by(desc(Article.published_at), desc(Article.id))
        ).scalars().all()
        history = self.session.execute(
            select(ScoreHistory)
            .where(ScoreHistory.topic_id == topic.id)
            .order_by(ScoreHistory.recorded_at)
        ).scalars().all()
        return {
            "topic": serialize_topic(topic),
            "articles": [serialize_article(a) for a in articles],
            "scoreHistory": [serialize_history(h) for h in history],
        }

    def list_articles(self, topic_id: Optional[int] = None, source: Optional[str] = None,
                      url: Optional[str] = None, limit: int = 50, offset: int = 0) -> tuple[list[Article], int]:
        conditions = []
        if topic_id is not None:
            conditions.append(Article.topic_id == topic_id)
        if source:
            conditions.append(Article.source == source)
        if url:
            conditions.append(Article.url == url)
        where = and_(*conditions) if conditions else None

        query = select(Article)
        count_q = select(func.count()).select_from(Article)
        if where is not None:
            query = query.where(where)
            count_q = count_q.where(where)

        articles = self.session.execute(
            query.order_by(desc(Article.published_at), desc(Article.fetched_at), desc(Article.id))
            .limit(limit).offset(offset)
        ).scalars().all()
        total = self.session.execute(count_q).scalar() or 0
        return list(articles), total

    def get_article(self, article_id: int) -> Article:
        article = self.session.get(Article, article_id)
        if article is None:
            raise NotFound("Article not found")
        return article

    def topic_ids_with_article_count(self, article_count: int) -> list[int]:
        return list(self.session.execute(
            select(Topic.id).where(Topic.article_count == article_count)
        ).scalars().all())

    # ─── Write ───

    def update_topic(self, slug: str, changes: dict) -> Topic:
        topic = self.get_topic_by_slug(slug)
        for field, value in changes.items():
            if field not in TOPIC_EDITABLE_FIELDS:
                raise ValueError(f"{field} is not editable")
            setattr(topic, field, value)
        topic.updated_at = datetime.now(timezone.utc)
        self.session.flush()
        return topic

    def create_article(self, topic_id: int, title: str, url: str, source: Optional[str] = None,
                       summary: Optional[str] = None, image_url: Optional[str] = None,
                       published_at: Optional[datetime] = None, source_type: str = "api") -> Article:
        topic = self.session.get(Topic, topic_id)
        if topic is None:
            raise NotFound("Topic not found")
        existing = self.session.execute(select(Article.id).where(Article.url == url)).scalar()
        if existing is not None:
            raise Conflict("Article with this URL already exists")

        article = Article(
            topic_id=topic_id, title=title, url=url, source=source, summary=summary,
            image_url=image_url, published_at=published_at, source_type=source_type,
        )
        self.session.add(article)
        topic.article_count = (topic.article_count or 0) + 1
        self.session.flush()
        return article

    def update_article(self, article_id: int, changes: dict) -> Article:
        article = self.get_article(article_id)
        old_topic_id = article.topic_id
        if "topic_id" in changes and self.session.get(Topic, changes["topic_id"]) is None:
            raise NotFound("Topic not found")
        if "url" in changes and changes["url"] != article.url:
            taken = self.session.execute(
                select(Article.id).where(Article.url == changes["url"])
            ).scalar()
            if taken is not None:
                raise Conflict("Article with this URL already exists")
        for field, value in changes.items():
            if field not in ARTICLE_EDITABLE_FIELDS:
                raise ValueError(f"{field} is not editable")
            setattr(article, field, value)
        self.session.flush()
        if article.topic_id != old_topic_id:
            self._recount({old_topic_id, article.topic_id})
        return article

    def delete_article(self, article_id: int) -> int:
        article = self.get_article(article_id)
        topic_id = article.topic_id
        self.session.delete(article)
        self.session.flush()
        self._recount({topic_id})
        return 1

    def delete_articles(self, ids: Optional[list[int]] = None, url: Optional[str] = None,
                        topic_id: Optional[int] = None, source: Optional[str] = None) -> int:
        """Delete by the first filter given: ids, url LIKE pattern, topic_id, source."""
        if ids:
            condition = Article.id.in_(ids)
        elif url:
            condition = Article.url.like(url)
        elif topic_id is not None:
            condition = Article.topic_id == topic_id
        elif source:
            condition = Article.source == source
        else:
            raise ValueError("at least one filter is required")

        affected = set(self.session.execute(
            select(Article.topic_id).where(condition).distinct()
        ).scalars().all())
        result = self.session.execute(
            delete(Article).where(condition).execution_options(synchronize_session=False)
        )
        self._recount(affected)
        return result.rowcount or 0

    def _recount(self, topic_ids: set[int]) -> None:
        for tid in topic_ids:
            count = self.session.execute(
                select(func.count()).select_from(Article).where(Article.topic_id == tid)
            ).scalar() or 0
            self.session.execute(
                update(Topic).where(Topic.id == tid).values(article_count=count)
                .execution_options(synchronize_session=False)
            )
        self.session.expire_all()

    def preview_delete(self, ids: list[int]) -> dict:
        """Counts of the rows a cascade delete of `ids` would remove."""
        ids = sorted(set(ids))
        if not ids:
            return {"topics": 0, "articles": 0, "scoreHistory": 0, "keywords": 0}
        try:
            counts = {
                key: self.session.execute(
                    select(func.count()).select_from(model).where(column.in_(ids))
                ).scalar_one()
                for key, model, column in (
                    ("topics", Topic, Topic.id),
                    ("articles", Article, Article.topic_id),
                    ("scoreHistory", ScoreHistory, ScoreHistory.topic_id),
                    ("keywords", TopicKeyword, TopicKeyword.topic_id),
                )
            }
        except SQLAlchemyError as e:
            logger.error("topic_store: delete preview failed", topic_ids=ids, error=str(e))
            raise StorageError("Failed to preview topic deletion") from e
        return counts

    def delete_topics(self, ids: list[int]) -> int:
        """Cascade-delete topics; returns the number of topic rows removed.

        Keywords, score history and articles go first, then the topics, all in
        the caller's transaction. A failure at any stage rolls the whole unit
        back and raises StorageError.
        """
        if not ids:
            return 0

        ids = sorted(set(ids))
        try:
            for child in (TopicKeyword, ScoreHistory, Article):
                self.session.execute(
                    delete(child).where(child.topic_id.in_(ids))
                    .execution_options(synchronize_session=False)
                )
            result = self.session.execute(
                delete(Topic).where(Topic.id.in_(ids))
                .execution_options(synchronize_session=False)
            )
            self.session.flush()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error("topic_store: cascade delete failed", topic_ids=ids, error=str(e))
            raise StorageError("Failed to delete topics") from e

        self.session.expire_all()
        deleted = result.rowcount or 0
        logger.info("topic_store: topics deleted", requested=len(ids), deleted=deleted)
        return deleted
