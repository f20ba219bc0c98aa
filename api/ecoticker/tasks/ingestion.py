"""
Article ingestion task: GNews + RSS into topics.

Fetched articles are merged (RSS wins duplicates), stripped of blocked domains
and already-known URLs, then assigned to topics by the classifier. Articles
land with scored_at NULL so the next scoring run picks them up.
"""
from dataclasses import dataclass, asdict
from typing import Callable, Optional, Sequence

import structlog
from slugify import slugify
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ecoticker.config import get_settings
from ecoticker.errors import ExternalServiceFailure
from ecoticker.models import Article, Topic, TopicKeyword
from ecoticker.services.classifier import ArticleText, Classifier, OpenRouterClassifier, TopicAssignment
from ecoticker.services.news import FetchedArticle, feeds_from_settings, fetch_gnews, fetch_rss, merge_and_dedup
from ecoticker.tasks import celery_app
from ecoticker.tasks.db_helpers import SyncSessionLocal, get_sync_db

logger = structlog.get_logger()

FALLBACK_TOPIC = "Environmental News"


@dataclass
class IngestResult:
    fetched: int = 0
    known: int = 0
    inserted: int = 0
    rejected: int = 0
    topics_created: int = 0
    fallback_batches: int = 0


def unique_slug(session: Session, name: str, taken: Optional[set[str]] = None) -> str:
    base = slugify(name)[:80] or "topic"
    taken = taken if taken is not None else set()
    slug, n = base, 2
    while slug in taken or session.execute(select(Topic.id).where(Topic.slug == slug)).scalar() is not None:
        slug = f"{base}-{n}"
        n += 1
    return slug


def _assign(classifier: Classifier, batch: Sequence[FetchedArticle],
            existing: list[tuple[str, list[str]]], result: IngestResult) -> list[TopicAssignment]:
    texts = [ArticleText(title=a.title, summary=a.summary, url=a.url) for a in batch]
    try:
        return classifier.assign_topics(texts, existing)
    except ExternalServiceFailure as e:
        logger.warning("ingest: topic assignment failed, using fallback topic",
                       fallback=FALLBACK_TOPIC, articles=len(batch), error=str(e))
        result.fallback_batches += 1
        return [TopicAssignment(i, FALLBACK_TOPIC, False) for i in range(len(batch))]


def _load_existing(session: Session, urls: list[str]):
    known = set(session.execute(select(Article.url).where(Article.url.in_(urls))).scalars().all())
    topics = {name.lower(): name for name in session.execute(select(Topic.name)).scalars().all()}
    keywords: dict[str, list[str]] = {}
    rows = session.execute(
        select(Topic.name, TopicKeyword.keyword).join(TopicKeyword, TopicKeyword.topic_id == Topic.id)
    ).all()
    for name, keyword in rows:
        keywords.setdefault(name, []).append(keyword)
    return known, topics, keywords


def _store_batch(session: Session, batch: Sequence[FetchedArticle],
                 assignments: list[TopicAssignment], result: IngestResult) -> list[str]:
    """Insert one assigned batch; returns the names of topics it created."""
    created = []
    assigned: set[int] = set()
    taken = set(session.execute(
        select(Article.url).where(Article.url.in_([a.url for a in batch]))
    ).scalars().all())

    for assignment in assignments:
        if assignment.article_index in assigned:
            continue
        assigned.add(assignment.article_index)
        article = batch[assignment.article_index]
        if article.url in taken:
            result.known += 1
            continue

        topic = session.execute(
            select(Topic).where(func.lower(Topic.name) == assignment.topic_name.lower())
        ).scalars().first()
        if topic is None:
            slug = unique_slug(session, assignment.topic_name)
            topic = Topic(name=assignment.topic_name, slug=slug, article_count=0,
                          current_score=0, previous_score=0, urgency="informational")
            session.add(topic)
            session.flush()
            created.append(topic.name)
            logger.info("ingest: topic created", topic=topic.name, slug=slug)

        session.add(Article(
            topic_id=topic.id, title=article.title[:500], url=article.url,
            source=article.source, summary=article.summary, image_url=article.image_url,
            published_at=article.published_at, source_type=article.source_type,
        ))
        topic.article_count = (topic.article_count or 0) + 1
        taken.add(article.url)
        result.inserted += 1

    result.rejected += len(batch) - len(assigned)
    return created


def store_articles(session_factory: Callable[[], Session], classifier: Classifier,
                   articles: list[FetchedArticle], batch_size: int = 10) -> IngestResult:
    """Assign and insert articles, one short transaction per batch.

    Classifier calls run with no session open. A failure part way through
    leaves the batches already stored committed.
    """
    result = IngestResult(fetched=len(articles))
    if not articles:
        return result

    with get_sync_db(session_factory) as session:
        known, topics, keywords = _load_existing(session, [a.url for a in articles])
    fresh = [a for a in articles if a.url not in known]
    result.known = len(articles) - len(fresh)

    for start in range(0, len(fresh), batch_size):
        batch = fresh[start:start + batch_size]
        existing = [(name, keywords.get(name, [])) for name in topics.values()]
        assignments = _assign(classifier, batch, existing, result)
        with get_sync_db(session_factory) as session:
            created = _store_batch(session, batch, assignments, result)
        for name in created:
            topics[name.lower()] = name
        result.topics_created += len(created)

    return result


def collect_articles(settings) -> list[FetchedArticle]:
    rss, _ = fetch_rss(feeds_from_settings(settings), timeout=settings.NEWS_TIMEOUT_SECONDS)
    gnews = fetch_gnews(settings.keywords, settings.GNEWS_API_KEY,
                        group_size=settings.KEYWORD_GROUP_SIZE, timeout=settings.NEWS_TIMEOUT_SECONDS)
    merged = merge_and_dedup(rss, gnews)
    logger.info("ingest: articles collected", rss=len(rss), gnews=len(gnews), merged=len(merged))
    return merged


def run_ingestion(classifier: Optional[Classifier] = None) -> dict:
    settings = get_settings()
    articles = collect_articles(settings)

    own_classifier = classifier is None
    classifier = classifier or OpenRouterClassifier.from_settings(settings)
    try:
        result = store_articles(SyncSessionLocal, classifier, articles,
                                batch_size=settings.CLASSIFICATION_BATCH_SIZE)
    finally:
        if own_classifier:
            classifier.close()

    logger.info("ingest: complete", **asdict(result))
    return asdict(result)


@celery_app.task(name="ecoticker.tasks.ingestion.ingest_articles",
                 bind=True, max_retries=2, default_retry_delay=300)
def ingest_articles(self):
    """Fetch news and store new articles for the next scoring run."""
    return run_ingestion()
