"""
Batch scoring orchestrator.

Pulls every topic with unscored articles, asks the classifier to assess those
articles, and folds the result into the topic in one short transaction per
topic. Classifier calls never run inside a transaction. A topic whose
classification keeps failing is skipped and keeps its prior score; the run
carries on with the rest.

Per-topic transaction:
  previous_score := current_score, current_score := aggregated score
  urgency, sub-scores, article_count, summary/category/region, updated_at
  upsert the (topic, UTC day) score_history row
  add new keywords
  stamp the assessed articles scored_at
"""
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timezone
from typing import Callable, Optional, Sequence

import structlog
from sqlalchemy import select, update, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ecoticker.errors import ExternalServiceFailure, RateLimitExceeded
from ecoticker.models import Topic, Article, ScoreHistory, TopicKeyword
from ecoticker.services.audit import record_audit
from ecoticker.services.classifier import ArticleAssessment, ArticleText, Classifier
from ecoticker.services.rate_limit import RateLimiter
from ecoticker.services.scoring import (
    AggregationPolicy, combine_dimension, derive_urgency, detect_anomaly, score_to_level,
)

logger = structlog.get_logger()


@dataclass
class TopicCandidate:
    topic_id: int
    name: str
    slug: str
    article_ids: list[int]
    articles: list[ArticleText]


@dataclass
class TopicFailure:
    topic_id: int
    slug: str
    error: str
    attempts: int


@dataclass
class BatchRunResult:
    triggered_by: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    topics_attempted: int = 0
    topics_scored: int = 0
    articles_scored: int = 0
    anomalies: int = 0
    failures: list[TopicFailure] = field(default_factory=list)

    @property
    def topics_failed(self) -> int:
        return len(self.failures)

    @property
    def success(self) -> bool:
        return self.topics_attempted == 0 or self.topics_failed < self.topics_attempted

    def to_dict(self) -> dict:
        return {
            "triggeredBy": self.triggered_by,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "topicsAttempted": self.topics_attempted,
            "topicsScored": self.topics_scored,
            "topicsFailed": self.topics_failed,
            "articlesScored": self.articles_scored,
            "anomalies": self.anomalies,
            "failures": [asdict(f) for f in self.failures],
            "success": self.success,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BatchScoringOrchestrator:

    def __init__(self, session_factory: Callable[[], Session], classifier: Classifier,
                 aggregation_policy: AggregationPolicy,
                 rate_limiter: Optional[RateLimiter] = None,
                 batch_size: int = 10, group_size: int = 4,
                 max_attempts: int = 3, retry_delay: float = 2.0,
                 anomaly_threshold: int = 25,
                 call_timeout: Optional[float] = 60.0,
                 clock: Optional[Callable[[], datetime]] = None,
                 sleep: Callable[[float], None] = time.sleep):
        if batch_size < 1 or group_size < 1 or max_attempts < 1:
            raise ValueError("batch_size, group_size and max_attempts must be positive")
        self.session_factory = session_factory
        self.classifier = classifier
        self.aggregation_policy = aggregation_policy
        self.rate_limiter = rate_limiter
        self.batch_size = batch_size
        self.group_size = group_size
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.anomaly_threshold = anomaly_threshold
        self.call_timeout = call_timeout
        self.clock = clock or _utcnow
        self.sleep = sleep

    @contextmanager
    def _transaction(self):
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ─── Run ───

    def run(self, triggered_by: str = "scheduler") -> BatchRunResult:
        if self.rate_limiter is not None and not self.rate_limiter.check(triggered_by):
            reset_at = self.rate_limiter.get_reset_time(triggered_by)
            logger.warning("batch_scoring: run rate limited", triggered_by=triggered_by)
            raise RateLimitExceeded(reset_at, now=self.rate_limiter.clock())

        result = BatchRunResult(triggered_by=triggered_by, started_at=self.clock())
        candidates = self._load_candidates()
        result.topics_attempted = len(candidates)
        logger.info("batch_scoring: run started", triggered_by=triggered_by, topics=len(candidates))

        with ThreadPoolExecutor(max_workers=self.group_size) as pool:
            for start in range(0, len(candidates), self.group_size):
                group = candidates[start:start + self.group_size]
                futures = [(c, pool.submit(self._classify_topic, c)) for c in group]
                for candidate, future in futures:
                    try:
                        assessments = future.result()
                    except ExternalServiceFailure as e:
                        self._record_failure(result, candidate, str(e), self.max_attempts)
                        continue
                    try:
                        self._apply_topic(candidate, assessments, result)
                    except SQLAlchemyError as e:
                        logger.error("batch_scoring: topic update failed", topic=candidate.slug, error=str(e))
                        self._record_failure(result, candidate, "storage failure during topic update", 1)

        result.finished_at = self.clock()
        with self._transaction() as session:
            record_audit(
                session, "batch_run", actor=triggered_by, target="batch",
                metadata=result.to_dict(), success=result.success,
                error_message=None if result.success else "All attempted topics failed",
            )

        log = logger.info if result.success else logger.error
        log("batch_scoring: run finished", scored=result.topics_scored,
            failed=result.topics_failed, articles=result.articles_scored)
        return result

    # ─── Selection ───

    def _load_candidates(self) -> list[TopicCandidate]:
        with self._transaction() as session:
            rows = session.execute(
                select(Topic.id, Topic.name, Topic.slug, Article.id.label("article_id"),
                       Article.title, Article.summary, Article.url)
                .join(Article, Article.topic_id == Topic.id)
                .where(Article.scored_at.is_(None))
                .order_by(Topic.id, Article.id)
            ).all()

        by_topic: dict[int, TopicCandidate] = {}
        for r in rows:
            candidate = by_topic.get(r.id)
            if candidate is None:
                candidate = by_topic[r.id] = TopicCandidate(r.id, r.name, r.slug, [], [])
            candidate.article_ids.append(r.article_id)
            candidate.articles.append(ArticleText(title=r.title, summary=r.summary, url=r.url))
        return list(by_topic.values())

    # ─── Classification ───

    def _classify_topic(self, candidate: TopicCandidate) -> list[ArticleAssessment]:
        assessments: list[ArticleAssessment] = []
        for start in range(0, len(candidate.articles), self.batch_size):
            batch = candidate.articles[start:start + self.batch_size]
            assessments.extend(self._classify_with_retry(candidate, batch))
        return assessments

    def _classify_with_retry(self, candidate: TopicCandidate,
                             batch: Sequence[ArticleText]) -> list[ArticleAssessment]:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                assessments = self._call_classifier(candidate.name, batch)
                if len(assessments) != len(batch):
                    raise ExternalServiceFailure(
                        f"Classifier returned {len(assessments)} assessments for {len(batch)} articles"
                    )
                return list(assessments)
            except Exception as e:
                last_error = e
                logger.warning("batch_scoring: classifier attempt failed", topic=candidate.slug,
                               attempt=attempt, max_attempts=self.max_attempts, error=str(e))
                if attempt < self.max_attempts:
                    self.sleep(self.retry_delay * attempt)
        raise ExternalServiceFailure(str(last_error)) from last_error

    def _call_classifier(self, topic_name: str, batch: Sequence[ArticleText]) -> list[ArticleAssessment]:
        """One classifier call, abandoned once call_timeout seconds pass."""
        if self.call_timeout is None:
            return self.classifier.score_articles(topic_name, batch)
        # A hung call cannot be killed; its thread is left to finish on its own
        pool = ThreadPoolExecutor(max_workers=1)
        try:
            future = pool.submit(self.classifier.score_articles, topic_name, batch)
            try:
                return future.result(timeout=self.call_timeout)
            except FutureTimeout as e:
                future.cancel()
                raise ExternalServiceFailure(
                    f"Classifier call timed out after {self.call_timeout:g}s"
                ) from e
        finally:
            pool.shutdown(wait=False)

    # ─── Per-topic transaction ───

    def _apply_topic(self, candidate: TopicCandidate, assessments: list[ArticleAssessment],
                     result: BatchRunResult) -> None:
        now = self.clock()
        today = now.date()
        health = combine_dimension([(a.health.score, a.confidence) for a in assessments])
        eco = combine_dimension([(a.eco.score, a.confidence) for a in assessments])
        econ = combine_dimension([(a.econ.score, a.confidence) for a in assessments])
        new_score = self.aggregation_policy(health, eco, econ)
        lead = max(assessments, key=lambda a: a.confidence)

        with self._transaction() as session:
            topic = session.get(Topic, candidate.topic_id)
            if topic is None:
                # Deleted while the classifier was busy; nothing left to stamp
                logger.info("batch_scoring: topic vanished mid-run", topic=candidate.slug)
                return

            anomaly = self._is_anomalous(session, topic, today, health, eco, econ)
            previous = topic.current_score

            topic.previous_score = previous
            topic.current_score = new_score
            topic.urgency = derive_urgency(new_score)
            topic.health_score = health
            topic.eco_score = eco
            topic.econ_score = econ
            topic.impact_summary = lead.summary or topic.impact_summary
            topic.score_reasoning = lead.reasoning or topic.score_reasoning
            topic.category = _most_common([a.category for a in assessments]) or topic.category
            topic.region = _most_common([a.region for a in assessments]) or topic.region
            topic.updated_at = now

            self._upsert_history(session, topic, today, anomaly, assessments)
            self._add_keywords(session, topic.id, assessments)

            session.execute(
                update(Article).where(Article.id.in_(candidate.article_ids))
                .values(scored_at=now).execution_options(synchronize_session=False)
            )
            topic.article_count = session.execute(
                select(func.count()).select_from(Article).where(Article.topic_id == topic.id)
            ).scalar() or 0

        result.topics_scored += 1
        result.articles_scored += len(candidate.article_ids)
        if anomaly:
            result.anomalies += 1
        logger.info("batch_scoring: topic scored", topic=candidate.slug, score=new_score,
                    previous=previous, articles=len(candidate.article_ids))

    def _is_anomalous(self, session: Session, topic: Topic, today: date,
                      health: int, eco: int, econ: int) -> bool:
        # A topic with no history yet has nothing to jump from
        has_history = session.execute(
            select(ScoreHistory.id).where(ScoreHistory.topic_id == topic.id).limit(1)
        ).scalar() is not None
        if not has_history:
            return False

        jumped = [
            name for name, prev, new in (
                ("health", topic.health_score, health),
                ("eco", topic.eco_score, eco),
                ("econ", topic.econ_score, econ),
            )
            if detect_anomaly(prev, new, self.anomaly_threshold)
        ]
        if jumped:
            logger.warning("batch_scoring: score anomaly", topic=topic.slug, dimensions=jumped)
        return bool(jumped)

    def _upsert_history(self, session: Session, topic: Topic, today: date, anomaly: bool,
                        assessments: list[ArticleAssessment]) -> None:
        values = dict(
            score=topic.current_score,
            health_score=topic.health_score,
            eco_score=topic.eco_score,
            econ_score=topic.econ_score,
            health_level=score_to_level(topic.health_score),
            eco_level=score_to_level(topic.eco_score),
            econ_level=score_to_level(topic.econ_score),
            impact_summary=topic.impact_summary,
            anomaly_detected=anomaly,
            raw_response={"assessments": [_assessment_dict(a) for a in assessments]},
        )
        row = session.execute(
            select(ScoreHistory).where(
                ScoreHistory.topic_id == topic.id, ScoreHistory.recorded_at == today,
            )
        ).scalar_one_or_none()
        if row is None:
            session.add(ScoreHistory(topic_id=topic.id, recorded_at=today, **values))
        else:
            for key, value in values.items():
                setattr(row, key, value)

    def _add_keywords(self, session: Session, topic_id: int,
                      assessments: list[ArticleAssessment]) -> None:
        existing = set(session.execute(
            select(TopicKeyword.keyword).where(TopicKeyword.topic_id == topic_id)
        ).scalars().all())
        for keyword in sorted({k for a in assessments for k in a.keywords}):
            if keyword and keyword not in existing:
                session.add(TopicKeyword(topic_id=topic_id, keyword=keyword[:200]))
                existing.add(keyword)

    # ─── Failures ───

    def _record_failure(self, result: BatchRunResult, candidate: TopicCandidate,
                        error: str, attempts: int) -> None:
        result.failures.append(TopicFailure(candidate.topic_id, candidate.slug, error, attempts))
        logger.error("batch_scoring: topic skipped", topic=candidate.slug, error=error)
        with self._transaction() as session:
            record_audit(
                session, "score_topic", actor=result.triggered_by, target=candidate.slug,
                metadata={"topicId": candidate.topic_id, "attempts": attempts,
                          "articles": len(candidate.article_ids)},
                success=False, error_message=error,
            )


def _most_common(values: list[Optional[str]]) -> Optional[str]:
    counts = Counter(v for v in values if v)
    return counts.most_common(1)[0][0] if counts else None


def _assessment_dict(a: ArticleAssessment) -> dict:
    return {
        "healthLevel": a.health.level, "healthScore": a.health.score,
        "ecoLevel": a.eco.level, "ecoScore": a.eco.score,
        "econLevel": a.econ.level, "econScore": a.econ.score,
        "confidence": a.confidence, "summary": a.summary,
        "category": a.category, "region": a.region, "keywords": a.keywords,
    }
