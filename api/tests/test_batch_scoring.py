"""
Tests for the batch scoring orchestrator.

============================================================
TEST SCENARIOS
============================================================
1. Successful run rolls scores, writes today's history, stamps articles
2. Two runs on one UTC day leave one history row per topic
3. Classifier keeps failing -> topic skipped, prior score stands, audited
4. Transient failure is retried with the injected sleep
5. Batch limiter denial raises before any work
============================================================
"""
import threading
import time
from datetime import date, datetime, timezone

import pytest
from sqlalchemy import select

from ecoticker.errors import ExternalServiceFailure, RateLimitExceeded
from ecoticker.models import Article, AuditLog, ScoreHistory, Topic, TopicKeyword
from ecoticker.services.batch_scoring import BatchScoringOrchestrator
from ecoticker.services.classifier import ArticleAssessment
from ecoticker.services.rate_limit import RateLimiter
from ecoticker.services.scoring import WeightedAggregationPolicy, validate_score

RUN_AT = datetime(2026, 3, 10, 6, 0, tzinfo=timezone.utc)


def assessment(level="SIGNIFICANT", score=60, confidence=0.8, keywords=("smoke",)):
    return ArticleAssessment(
        health=validate_score(level, score),
        eco=validate_score(level, score),
        econ=validate_score(level, score),
        confidence=confidence,
        summary="Serious regional impact.",
        category="air_quality",
        region="South Asia",
        keywords=list(keywords),
        reasoning="Articles describe hospital admissions.",
    )


class FakeClassifier:
    """Scripted classifier; `fail_times` calls fail before it starts answering."""

    def __init__(self, score=60, fail_times=0, fail_topics=()):
        self.score = score
        self.fail_times = fail_times
        self.fail_topics = set(fail_topics)
        self.calls = []
        self._lock = threading.Lock()

    def score_articles(self, topic_name, articles):
        with self._lock:
            self.calls.append((topic_name, len(articles)))
            if topic_name in self.fail_topics:
                raise ExternalServiceFailure("Classifier timed out")
            if self.fail_times > 0:
                self.fail_times -= 1
                raise ExternalServiceFailure("Classifier returned an invalid payload")
        level = "SEVERE" if self.score > 75 else "SIGNIFICANT"
        return [assessment(level, self.score) for _ in articles]

    def assign_topics(self, articles, existing_topics):
        return []


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def build(session_factory, sleeps):
    def _build(classifier, **kwargs):
        kwargs.setdefault("clock", lambda: RUN_AT)
        return BatchScoringOrchestrator(
            session_factory=session_factory,
            classifier=classifier,
            aggregation_policy=kwargs.pop("aggregation_policy", WeightedAggregationPolicy()),
            sleep=sleeps.append,
            **kwargs,
        )
    return _build


@pytest.fixture
def smog(session, make_topic, make_article):
    topic = make_topic(session, "Delhi Smog", current=40, previous=35, urgency="moderate")
    make_article(session, topic, "https://news.test/smog-1")
    make_article(session, topic, "https://news.test/smog-2")
    session.commit()
    return topic


def _history(session, topic_id):
    return session.execute(
        select(ScoreHistory).where(ScoreHistory.topic_id == topic_id)
    ).scalars().all()


def _audits(session, action):
    return session.execute(
        select(AuditLog).where(AuditLog.action == action).order_by(AuditLog.id)
    ).scalars().all()


# ============================================================
# TEST: SUCCESSFUL RUN
# ============================================================

class TestSuccessfulRun:

    def test_scores_roll_forward(self, build, session_factory, smog):
        result = build(FakeClassifier(score=60)).run("scheduler")

        assert result.topics_attempted == 1
        assert result.topics_scored == 1
        assert result.articles_scored == 2
        assert result.success is True

        with session_factory() as s:
            topic = s.get(Topic, smog.id)
            assert topic.previous_score == 40
            assert topic.current_score == 60
            assert topic.urgency == "critical"
            assert (topic.health_score, topic.eco_score, topic.econ_score) == (60, 60, 60)
            assert topic.category == "air_quality"
            assert topic.region == "South Asia"
            assert topic.article_count == 2

    def test_history_keywords_and_stamps(self, build, session_factory, smog):
        build(FakeClassifier(score=60)).run("scheduler")

        with session_factory() as s:
            rows = _history(s, smog.id)
            assert len(rows) == 1
            assert rows[0].recorded_at == date(2026, 3, 10)
            assert rows[0].score == 60
            assert rows[0].health_level == "SIGNIFICANT"

            keywords = s.execute(select(TopicKeyword.keyword)).scalars().all()
            assert keywords == ["smoke"]

            unscored = s.execute(select(Article).where(Article.scored_at.is_(None))).scalars().all()
            assert unscored == []

    def test_run_is_audited(self, build, session_factory, smog):
        build(FakeClassifier()).run("10.1.2.3")
        with session_factory() as s:
            entries = _audits(s, "batch_run")
            assert len(entries) == 1
            assert entries[0].success is True
            assert entries[0].actor == "10.1.2.0"
            assert entries[0].details["topicsScored"] == 1

    def test_custom_aggregation_policy_is_used(self, build, session_factory, smog):
        build(FakeClassifier(score=60), aggregation_policy=lambda h, e, c: 99).run()
        with session_factory() as s:
            topic = s.get(Topic, smog.id)
            assert topic.current_score == 99
            assert topic.urgency == "breaking"

    def test_articles_sent_in_batches_of_ten(self, build, session, make_topic, make_article):
        topic = make_topic(session, "Coral Bleaching")
        for i in range(23):
            make_article(session, topic, f"https://news.test/reef-{i}")
        session.commit()

        classifier = FakeClassifier()
        build(classifier).run()
        assert sorted(n for _, n in classifier.calls) == [3, 10, 10]

    def test_no_unscored_articles_is_a_quiet_run(self, build, session_factory, session,
                                                 make_topic, make_article):
        topic = make_topic(session, "Old News", current=30, previous=30)
        make_article(session, topic, "https://news.test/old", scored=True)
        session.commit()

        classifier = FakeClassifier()
        result = build(classifier).run()
        assert result.topics_attempted == 0
        assert result.success is True
        assert classifier.calls == []


# ============================================================
# TEST: IDEMPOTENCE
# ============================================================

class TestSameDayReruns:

    def test_two_runs_one_history_row(self, build, session_factory, smog, make_article):
        build(FakeClassifier(score=60)).run()

        with session_factory() as s:
            topic = s.get(Topic, smog.id)
            make_article(s, topic, "https://news.test/smog-3")
            s.commit()

        build(FakeClassifier(score=80)).run()

        with session_factory() as s:
            rows = _history(s, smog.id)
            assert len(rows) == 1
            assert rows[0].score == 80
            topic = s.get(Topic, smog.id)
            assert topic.previous_score == 60
            assert topic.current_score == 80
            assert topic.article_count == 3

    def test_rerun_without_new_articles_changes_nothing(self, build, session_factory, smog):
        build(FakeClassifier(score=60)).run()
        classifier = FakeClassifier(score=10)
        build(classifier).run()

        assert classifier.calls == []
        with session_factory() as s:
            assert len(_history(s, smog.id)) == 1
            assert s.get(Topic, smog.id).current_score == 60


# ============================================================
# TEST: FAILURES
# ============================================================

class TestClassifierFailures:

    def test_failing_topic_is_skipped_and_audited(self, build, session_factory, session,
                                                  smog, make_topic, make_article):
        reef = make_topic(session, "Reef Bleaching", current=70, previous=70)
        make_article(session, reef, "https://news.test/reef")
        session.commit()

        classifier = FakeClassifier(score=60, fail_topics={"Reef Bleaching"})
        result = build(classifier, max_attempts=3).run()

        assert result.topics_scored == 1
        assert result.topics_failed == 1
        assert result.success is True
        assert sum(1 for name, _ in classifier.calls if name == "Reef Bleaching") == 3

        with session_factory() as s:
            reef_now = s.get(Topic, reef.id)
            assert (reef_now.current_score, reef_now.previous_score) == (70, 70)
            assert _history(s, reef.id) == []
            assert s.execute(
                select(Article.scored_at).where(Article.topic_id == reef.id)
            ).scalar() is None

            failures = _audits(s, "score_topic")
            assert len(failures) == 1
            assert failures[0].success is False
            assert failures[0].target == "reef-bleaching"

    def test_all_topics_failing_marks_run_failed(self, build, session_factory, smog):
        result = build(FakeClassifier(fail_topics={"Delhi Smog"})).run()

        assert result.success is False
        with session_factory() as s:
            run = _audits(s, "batch_run")[0]
            assert run.success is False
            assert run.error_message == "All attempted topics failed"
            assert s.get(Topic, smog.id).current_score == 40

    def test_transient_failure_is_retried(self, build, session_factory, smog, sleeps):
        result = build(FakeClassifier(fail_times=2), max_attempts=3, retry_delay=2.0).run()

        assert result.topics_scored == 1
        assert sleeps == [2.0, 4.0]

    def test_wrong_number_of_assessments_counts_as_failure(self, build, smog):
        class ShortClassifier(FakeClassifier):
            def score_articles(self, topic_name, articles):
                return [assessment()]

        result = build(ShortClassifier(), max_attempts=2).run()
        assert result.topics_failed == 1


# ============================================================
# TEST: RATE LIMITING
# ============================================================

class TestBatchLimiter:

    def test_denied_run_does_nothing(self, build, session_factory, smog, clock):
        limiter = RateLimiter(window_seconds=3600, max_requests=2, clock=clock)
        classifier = FakeClassifier()
        orchestrator = build(classifier, rate_limiter=limiter)

        orchestrator.run("admin")
        orchestrator.run("admin")
        with pytest.raises(RateLimitExceeded) as exc_info:
            orchestrator.run("admin")

        assert exc_info.value.retry_after == 3600
        with session_factory() as s:
            assert len(_audits(s, "batch_run")) == 2


# ============================================================
# TEST: CALL TIMEOUT
# ============================================================

class TestCallTimeout:

    def test_slow_classifier_is_abandoned_and_topic_skipped(self, build, session_factory, smog, sleeps):
        release = threading.Event()

        class HangingClassifier(FakeClassifier):
            def score_articles(self, topic_name, articles):
                self.calls.append((topic_name, len(articles)))
                release.wait(5)
                return super().score_articles(topic_name, articles)

        classifier = HangingClassifier()
        started = time.monotonic()
        try:
            result = build(classifier, call_timeout=0.05, max_attempts=2).run()
        finally:
            release.set()

        assert time.monotonic() - started < 2
        assert result.topics_failed == 1
        assert "timed out" in result.failures[0].error
        assert sleeps == [2.0]
        with session_factory() as s:
            assert s.get(Topic, smog.id).current_score == 40
            assert _audits(s, "score_topic")[0].success is False

    def test_fast_classifier_unaffected(self, build, smog):
        result = build(FakeClassifier(), call_timeout=5).run()
        assert result.topics_scored == 1
