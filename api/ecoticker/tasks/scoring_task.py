"""
Scoring tasks.

score_topics runs the batch scoring orchestrator over every topic with
unscored articles; run_batch ingests first, then scores.
"""
from typing import Optional

import structlog

from ecoticker.config import get_settings
from ecoticker.services.batch_scoring import BatchScoringOrchestrator
from ecoticker.services.classifier import Classifier, OpenRouterClassifier
from ecoticker.services.rate_limit import RateLimiter
from ecoticker.services.scoring import WeightedAggregationPolicy
from ecoticker.tasks import celery_app
from ecoticker.tasks.db_helpers import SyncSessionLocal
from ecoticker.tasks.ingestion import run_ingestion

logger = structlog.get_logger()


def build_orchestrator(classifier: Classifier, settings=None,
                       rate_limiter: Optional[RateLimiter] = None) -> BatchScoringOrchestrator:
    settings = settings or get_settings()
    return BatchScoringOrchestrator(
        session_factory=SyncSessionLocal,
        classifier=classifier,
        aggregation_policy=WeightedAggregationPolicy.from_settings(settings),
        rate_limiter=rate_limiter,
        batch_size=settings.CLASSIFICATION_BATCH_SIZE,
        group_size=settings.KEYWORD_GROUP_SIZE,
        max_attempts=settings.CLASSIFIER_MAX_ATTEMPTS,
        retry_delay=settings.CLASSIFIER_RETRY_DELAY_SECONDS,
        anomaly_threshold=settings.ANOMALY_THRESHOLD,
        call_timeout=settings.CLASSIFIER_TIMEOUT_SECONDS,
    )


def run_scoring(triggered_by: str, classifier: Optional[Classifier] = None,
                rate_limiter: Optional[RateLimiter] = None) -> dict:
    settings = get_settings()
    own_classifier = classifier is None
    classifier = classifier or OpenRouterClassifier.from_settings(settings)
    try:
        result = build_orchestrator(classifier, settings, rate_limiter).run(triggered_by)
    finally:
        if own_classifier:
            classifier.close()
    return result.to_dict()


@celery_app.task(name="ecoticker.tasks.scoring_task.score_topics")
def score_topics(triggered_by: str = "scheduler"):
    """Score every topic that has unscored articles."""
    return run_scoring(triggered_by)


@celery_app.task(name="ecoticker.tasks.scoring_task.run_batch")
def run_batch(triggered_by: str = "scheduler"):
    """Daily pipeline: ingest fresh articles, then score the affected topics."""
    logger.info("run_batch: starting", triggered_by=triggered_by)
    ingest = run_ingestion()
    scoring = run_scoring(triggered_by)
    logger.info("run_batch: complete", inserted=ingest["inserted"],
                scored=scoring["topicsScored"], failed=scoring["topicsFailed"])
    return {"ingest": ingest, "scoring": scoring}
