"""
HTTP-level tests: routing, auth, caching, rate limiting, audit of admin calls.
"""
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import pytest
from kombu.exceptions import OperationalError as BrokerError
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from ecoticker.models import Article, AuditLog, ScoreHistory, Topic
from ecoticker.services.audit import record_audit
from ecoticker.services.rate_limit import RateLimiter, RateLimiters

ADMIN_HEADERS = {"X-API-Key": "test-admin-key"}


def seed_topic(db, name, current, previous, hidden=False, articles=0):
    topic = Topic(name=name, slug=name.lower().replace(" ", "-"), current_score=current,
                  previous_score=previous, urgency="moderate", hidden=hidden)
    db.add(topic)
    db.flush()
    for i in range(articles):
        db.add(Article(topic_id=topic.id, title=f"{name} {i}", url=f"https://n.test/{topic.slug}/{i}",
                       source="Wire", source_type="rss"))
    topic.article_count = articles
    db.commit()
    return topic


def break_database(client):
    """Route every query through a session whose driver rejects the connection."""
    from ecoticker.database import get_db

    failing = SimpleNamespace(execute=Mock(side_effect=OperationalError(
        "SELECT max(recorded_at)", {}, Exception("password authentication failed"),
    )))
    broken = SimpleNamespace(run_sync=AsyncMock(side_effect=lambda fn: fn(failing)))

    async def broken_db():
        yield broken

    client.app.dependency_overrides[get_db] = broken_db


def audits(db, action):
    db.expire_all()
    return db.execute(
        select(AuditLog).where(AuditLog.action == action).order_by(AuditLog.id)
    ).scalars().all()


# ============================================================
# TEST: READ API
# ============================================================

class TestReadApi:

    def test_root(self, client):
        assert client.get("/").json()["health"] == "/api/health"

    def test_health_without_history_is_stale(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"lastBatchAt": None, "isStale": True}

    def test_health_with_todays_snapshot(self, client, db):
        topic = seed_topic(db, "Delhi Smog", 60, 40)
        today = datetime.now(timezone.utc).date()
        db.add(ScoreHistory(topic_id=topic.id, recorded_at=today, score=60))
        db.commit()

        body = client.get("/api/health").json()
        assert body == {"lastBatchAt": today.isoformat(), "isStale": False}

    def test_ticker_orders_by_score_and_hides_hidden(self, client, db):
        seed_topic(db, "Delhi Smog", 60, 40)
        seed_topic(db, "Reef Bleaching", 80, 85)
        seed_topic(db, "Hidden Spill", 95, 10, hidden=True)

        response = client.get("/api/ticker")
        assert response.status_code == 200
        assert response.headers["Cache-Control"] == "public, max-age=300, stale-while-revalidate=600"
        assert response.json()["items"] == [
            {"name": "Reef Bleaching", "slug": "reef-bleaching", "score": 80, "change": -5},
            {"name": "Delhi Smog", "slug": "delhi-smog", "score": 60, "change": 20},
        ]

    def test_movers_by_absolute_change(self, client, db):
        seed_topic(db, "Small Move", 50, 48)
        seed_topic(db, "Big Drop", 20, 70)
        seed_topic(db, "Flat", 30, 30)

        movers = client.get("/api/movers").json()["movers"]
        assert [m["slug"] for m in movers] == ["big-drop", "small-move"]
        assert movers[0]["change"] == -50
        assert movers[0]["currentScore"] == 20

    def test_ticker_degrades_to_empty_list_on_storage_failure(self, client):
        break_database(client)
        response = client.get("/api/ticker")

        assert response.status_code == 200
        assert response.json() == {"items": []}
        assert response.headers["Cache-Control"] == "no-store"

    def test_movers_degrade_to_empty_list_on_storage_failure(self, client):
        break_database(client)
        response = client.get("/api/movers")

        assert response.status_code == 200
        assert response.json() == {"movers": []}
        assert response.headers["Cache-Control"] == "no-store"

    def test_health_storage_failure_is_a_bare_500(self, client, monkeypatch):
        from ecoticker.config import get_settings

        monkeypatch.setattr(get_settings(), "ENVIRONMENT", "development")
        break_database(client)
        response = client.get("/api/health")

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}

    def test_topic_detail_and_not_found(self, client, db):
        seed_topic(db, "Delhi Smog", 60, 40, articles=2)

        body = client.get("/api/topics/delhi-smog").json()
        assert body["topic"]["currentScore"] == 60
        assert len(body["articles"]) == 2

        missing = client.get("/api/topics/nope")
        assert missing.status_code == 404
        assert missing.json() == {"error": "Topic not found"}

    def test_security_headers_on_every_response(self, client):
        response = client.get("/api/health")
        assert response.headers["X-Frame-Options"] == "SAMEORIGIN"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"


# ============================================================
# TEST: RATE LIMITING
# ============================================================

class TestRateLimiting:

    def test_read_tier_returns_429_with_headers(self, client):
        client.app.state.rate_limiters = RateLimiters(
            read=RateLimiter(60, 2), write=RateLimiter(60, 2), batch=RateLimiter(3600, 1),
        )
        assert client.get("/api/health").status_code == 200
        assert client.get("/api/health").status_code == 200

        denied = client.get("/api/health")
        assert denied.status_code == 429
        assert denied.json()["error"] == "Too Many Requests"
        assert "resetAt" in denied.json()
        assert 0 < int(denied.headers["Retry-After"]) <= 60
        assert int(denied.headers["X-RateLimit-Reset"]) > 0
        assert denied.headers["X-Frame-Options"] == "SAMEORIGIN"

    def test_clients_are_counted_separately_behind_trusted_proxy(self, client, monkeypatch):
        from ecoticker.config import get_settings

        monkeypatch.setattr(get_settings(), "TRUST_PROXY_HEADERS", True)
        client.app.state.rate_limiters = RateLimiters(
            read=RateLimiter(60, 1), write=RateLimiter(60, 1), batch=RateLimiter(3600, 1),
        )
        assert client.get("/api/health", headers={"X-Forwarded-For": "1.1.1.1"}).status_code == 200
        assert client.get("/api/health", headers={"X-Forwarded-For": "2.2.2.2"}).status_code == 200
        assert client.get("/api/health", headers={"X-Forwarded-For": "1.1.1.1"}).status_code == 429

    def test_spoofed_headers_do_not_open_new_buckets(self, client):
        client.app.state.rate_limiters = RateLimiters(
            read=RateLimiter(60, 1), write=RateLimiter(60, 1), batch=RateLimiter(3600, 1),
        )
        assert client.get("/api/health", headers={"CF-Connecting-IP": "1.1.1.1"}).status_code == 200
        assert client.get("/api/health", headers={"CF-Connecting-IP": "2.2.2.2"}).status_code == 429

    def test_root_is_not_limited(self, client):
        client.app.state.rate_limiters = RateLimiters(
            read=RateLimiter(60, 1), write=RateLimiter(60, 1), batch=RateLimiter(3600, 1),
        )
        for _ in range(3):
            assert client.get("/").status_code == 200


# ============================================================
# TEST: ADMIN AUTH AND AUDIT LOGS
# ============================================================

class TestAdmin:

    @pytest.mark.parametrize("headers", [{}, {"X-API-Key": "wrong"}])
    def test_requires_api_key(self, client, headers):
        response = client.get("/api/audit-logs", headers=headers)
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "API-Key"
        assert response.json() == {"error": "Unauthorized - Valid API key required"}

    def test_audit_log_pagination(self, client, db):
        for i in range(3):
            record_audit(db, "update_topic", "10.0.0.1", target=f"t{i}")
        db.commit()

        body = client.get("/api/audit-logs?limit=2", headers=ADMIN_HEADERS).json()
        assert body["success"] is True
        assert [e["target"] for e in body["logs"]] == ["t2", "t1"]
        assert body["pagination"] == {"total": 3, "limit": 2, "offset": 0, "hasMore": True}

        last = client.get("/api/audit-logs?limit=2&offset=2", headers=ADMIN_HEADERS).json()
        assert last["pagination"]["hasMore"] is False

    def test_audit_log_limit_is_capped(self, client):
        body = client.get("/api/audit-logs?limit=5000", headers=ADMIN_HEADERS).json()
        assert body["pagination"]["limit"] == 1000

    def test_audit_stats(self, client, db):
        record_audit(db, "delete_topics", "10.0.0.1")
        record_audit(db, "delete_topics", "10.0.0.2", success=False, error_message="boom")
        db.commit()

        stats = client.get("/api/audit-logs?stats=true", headers=ADMIN_HEADERS).json()["stats"]
        assert stats["total"] == 2
        assert stats["failed"] == 1
        assert stats["recentFailures"] == [{"action": "delete_topics", "count": 1}]


# ============================================================
# TEST: ADMIN MUTATIONS
# ============================================================

class TestTopicMutations:

    def test_delete_topics_cascades_and_audits(self, client, db):
        doomed = seed_topic(db, "Doomed", 50, 50, articles=2)
        kept = seed_topic(db, "Kept", 40, 40, articles=1)
        db.add(ScoreHistory(topic_id=doomed.id, recorded_at=datetime(2026, 3, 1).date(), score=50))
        db.commit()

        doomed_id, kept_id = doomed.id, kept.id
        response = client.request("DELETE", "/api/topics", json={"ids": [doomed_id]},
                                  headers=ADMIN_HEADERS)
        assert response.status_code == 200
        assert response.json() == {"success": True, "deleted": 1}

        db.expire_all()
        assert db.get(Topic, doomed_id) is None
        assert db.get(Topic, kept_id) is not None
        assert db.execute(select(Article).where(Article.topic_id == doomed_id)).first() is None

        entry = audits(db, "delete_topics")[0]
        assert entry.success is True
        assert entry.details["deleted"] == 1

    def test_delete_topics_dry_run_reports_counts_and_keeps_rows(self, client, db):
        doomed = seed_topic(db, "Doomed", 50, 50, articles=2)
        db.add(ScoreHistory(topic_id=doomed.id, recorded_at=datetime(2026, 3, 1).date(), score=50))
        db.commit()
        doomed_id = doomed.id

        response = client.request("DELETE", "/api/topics?dryRun=true", json={"ids": [doomed_id]},
                                  headers=ADMIN_HEADERS)
        assert response.status_code == 200
        body = response.json()
        assert body["dryRun"] is True
        assert body["ids"] == [doomed_id]
        assert (body["topics"], body["articles"], body["scoreHistory"]) == (1, 2, 1)

        db.expire_all()
        assert db.get(Topic, doomed_id) is not None
        assert audits(db, "delete_topics") == []
        assert audits(db, "delete_topics_preview")[0].details["articles"] == 2

    def test_dry_run_flag_in_body(self, client, db):
        seed_topic(db, "Empty", 0, 0, articles=0)

        response = client.request("DELETE", "/api/topics", json={"articleCount": 0, "dryRun": True},
                                  headers=ADMIN_HEADERS)
        assert response.json()["topics"] == 1
        db.expire_all()
        assert db.execute(select(Topic)).first() is not None

    def test_delete_topics_by_article_count(self, client, db):
        seed_topic(db, "Empty", 0, 0, articles=0)
        seed_topic(db, "Busy", 0, 0, articles=3)

        response = client.request("DELETE", "/api/topics", json={"articleCount": 0},
                                  headers=ADMIN_HEADERS)
        assert response.json()["deleted"] == 1

    def test_invalid_delete_is_rejected_and_audited(self, client, db):
        response = client.request("DELETE", "/api/topics", json={}, headers=ADMIN_HEADERS)

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Validation failed"
        assert body["details"] == ["root: Must provide either ids array or articleCount"]

        entry = audits(db, "delete_topics")[0]
        assert entry.success is False
        assert entry.error_message == "Validation failed"

    def test_patch_topic(self, client, db):
        seed_topic(db, "Delhi Smog", 60, 40)

        response = client.patch("/api/topics/delhi-smog", json={"hidden": True, "region": "India"},
                                headers=ADMIN_HEADERS)
        assert response.status_code == 200
        topic = response.json()["topic"]
        assert topic["hidden"] is True
        assert topic["region"] == "India"
        assert audits(db, "update_topic")[0].details == {"fields": ["hidden", "region"]}

    def test_patch_requires_auth(self, client, db):
        seed_topic(db, "Delhi Smog", 60, 40)
        assert client.patch("/api/topics/delhi-smog", json={"hidden": True}).status_code == 401


class TestArticleMutations:

    def test_create_then_conflict(self, client, db):
        topic = seed_topic(db, "Delhi Smog", 60, 40)
        payload = {"topicId": topic.id, "title": "Schools shut", "url": "https://n.test/schools"}

        created = client.post("/api/articles", json=payload, headers=ADMIN_HEADERS)
        assert created.status_code == 201
        assert created.json()["article"]["sourceType"] == "api"

        again = client.post("/api/articles", json=payload, headers=ADMIN_HEADERS)
        assert again.status_code == 409
        assert again.json() == {"error": "Article with this URL already exists"}

        entries = audits(db, "create_article")
        assert [e.success for e in entries] == [True, False]
        db.expire_all()
        assert db.get(Topic, topic.id).article_count == 1

    def test_create_rejects_non_http_url(self, client, db):
        topic = seed_topic(db, "Delhi Smog", 60, 40)
        response = client.post("/api/articles", headers=ADMIN_HEADERS, json={
            "topicId": topic.id, "title": "Bad link", "url": "ftp://n.test/file",
        })
        assert response.status_code == 400
        assert response.json()["details"][0].startswith("url:")

    def test_list_articles_paginates(self, client, db):
        topic = seed_topic(db, "Delhi Smog", 60, 40, articles=3)
        body = client.get(f"/api/articles?topicId={topic.id}&limit=2").json()
        assert len(body["articles"]) == 2
        assert body["pagination"]["total"] == 3
        assert body["pagination"]["hasMore"] is True

    def test_delete_single_article_recounts(self, client, db):
        topic = seed_topic(db, "Delhi Smog", 60, 40, articles=2)
        article_id = db.execute(select(Article.id).where(Article.topic_id == topic.id)).scalars().first()

        response = client.delete(f"/api/articles/{article_id}", headers=ADMIN_HEADERS)
        assert response.json() == {"success": True, "deleted": 1}
        db.expire_all()
        assert db.get(Topic, topic.id).article_count == 1


# ============================================================
# TEST: BATCH TRIGGER
# ============================================================

class TestBatchTrigger:

    def test_queues_task_and_audits(self, client, db, monkeypatch):
        calls = []

        def fake_delay(**kwargs):
            calls.append(kwargs)
            return SimpleNamespace(id="task-123")

        monkeypatch.setattr("ecoticker.routers.admin.run_batch", SimpleNamespace(delay=fake_delay))

        response = client.post("/api/batch", headers=ADMIN_HEADERS)
        assert response.status_code == 202
        assert response.json() == {"message": "Batch run queued", "taskId": "task-123", "status": "queued"}
        assert calls == [{"triggered_by": "testclient"}]
        assert audits(db, "trigger_batch")[0].success is True

    def test_broker_down_is_502_and_audited(self, client, db, monkeypatch):
        def fake_delay(**kwargs):
            raise BrokerError("connection refused")

        monkeypatch.setattr("ecoticker.routers.admin.run_batch", SimpleNamespace(delay=fake_delay))

        response = client.post("/api/batch", headers=ADMIN_HEADERS)
        assert response.status_code == 502
        assert response.json() == {"error": "Task queue unavailable"}

        entries = audits(db, "trigger_batch")
        assert [e.success for e in entries] == [False]

    def test_batch_tier_limits_manual_triggers(self, client, monkeypatch):
        monkeypatch.setattr("ecoticker.routers.admin.run_batch",
                            SimpleNamespace(delay=lambda **kw: SimpleNamespace(id="t")))

        statuses = [client.post("/api/batch", headers=ADMIN_HEADERS).status_code for _ in range(3)]
        assert statuses == [202, 202, 429]
