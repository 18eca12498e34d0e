"""
Tests for src/api/health.py - health check endpoints (liveness, readiness, deep).
"""
import pytest
from datetime import datetime
from unittest.mock import AsyncMock, patch

from src.api.health import (
    APP_VERSION,
    MAX_PENDING_AGE_SECONDS,
    WORKER_NAMES,
    health_check,
    readiness_check,
    deep_health_check,
    _check_database,
    _check_redis,
    _check_webhook_queue,
    _check_workers,
)
from src.utils.redis_client import HEARTBEAT_KEY_PREFIX


def _beat_all(fake_redis):
    for name in WORKER_NAMES:
        fake_redis.store[f"{HEARTBEAT_KEY_PREFIX}{name}"] = "2026-10-18T12:00:00+00:00"


# ---------------------------------------------------------------------------
# GET /health - basic liveness
# ---------------------------------------------------------------------------


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_returns_healthy(self):
        """Liveness check always returns healthy with timestamp and version."""
        result = await health_check()
        assert result["status"] == "healthy"
        assert result["version"] == APP_VERSION
        assert "timestamp" in result

    @pytest.mark.asyncio
    async def test_timestamp_is_utc_iso(self):
        """Timestamp should be parseable ISO format."""
        result = await health_check()
        parsed = datetime.fromisoformat(result["timestamp"])
        assert parsed.tzinfo is not None


# ---------------------------------------------------------------------------
# GET /health/ready - readiness check (DB + Redis)
# ---------------------------------------------------------------------------


class TestReadinessCheck:
    @pytest.mark.asyncio
    async def test_all_healthy_returns_ready(self, db):
        """When both DB and Redis are healthy, status is 'ready'."""
        result = await readiness_check(db=db)
        assert result["status"] == "ready"
        assert result["checks"] == {"database": True, "redis": True}

    @pytest.mark.asyncio
    async def test_db_failure_returns_degraded(self):
        """When DB fails, status is 'degraded'."""
        mock_db = AsyncMock()
        mock_db.execute = AsyncMock(side_effect=Exception("connection refused"))

        result = await readiness_check(db=mock_db)

        assert result["status"] == "degraded"
        assert result["checks"]["database"] is False

    @pytest.mark.asyncio
    async def test_redis_failure_returns_degraded(self, db, fake_redis):
        """When Redis fails, status is 'degraded'."""
        fake_redis.fail = True
        result = await readiness_check(db=db)
        assert result["status"] == "degraded"
        assert result["checks"]["redis"] is False


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------


class TestCheckDatabase:
    @pytest.mark.asyncio
    async def test_healthy_database(self, db):
        assert await _check_database(db) == {"healthy": True}

    @pytest.mark.asyncio
    async def test_database_error(self):
        mock_db = AsyncMock()
        mock_db.execute = AsyncMock(side_effect=Exception("timeout"))
        result = await _check_database(mock_db)
        assert result["healthy"] is False
        assert "timeout" in result["error"]


class TestCheckRedis:
    @pytest.mark.asyncio
    async def test_healthy_redis(self):
        assert await _check_redis() == {"healthy": True}

    @pytest.mark.asyncio
    async def test_redis_error(self, fake_redis):
        fake_redis.fail = True
        result = await _check_redis()
        assert result["healthy"] is False
        assert "redis unavailable" in result["error"]


class TestCheckWebhookQueue:
    @pytest.mark.asyncio
    async def test_empty_queue_healthy(self, db):
        result = await _check_webhook_queue(db)
        assert result["healthy"] is True
        assert result["pending"] == 0

    @pytest.mark.asyncio
    async def test_parked_events_unhealthy(self):
        stats = {"pending": 0, "processed": 3, "failed": 1, "parked": 1, "oldest_pending_age_seconds": None}
        with patch("src.services.event_store.queue_stats", new_callable=AsyncMock, return_value=stats):
            result = await _check_webhook_queue(AsyncMock())
        assert result["healthy"] is False
        assert result["parked"] == 1

    @pytest.mark.asyncio
    async def test_stale_backlog_unhealthy(self):
        stats = {
            "pending": 40, "processed": 0, "failed": 0, "parked": 0,
            "oldest_pending_age_seconds": MAX_PENDING_AGE_SECONDS + 1,
        }
        with patch("src.services.event_store.queue_stats", new_callable=AsyncMock, return_value=stats):
            result = await _check_webhook_queue(AsyncMock())
        assert result["healthy"] is False

    @pytest.mark.asyncio
    async def test_query_error(self):
        with patch("src.services.event_store.queue_stats", new_callable=AsyncMock, side_effect=Exception("boom")):
            result = await _check_webhook_queue(AsyncMock())
        assert result == {"healthy": False, "error": "boom"}


class TestCheckWorkers:
    @pytest.mark.asyncio
    async def test_all_workers_have_heartbeats(self, fake_redis):
        _beat_all(fake_redis)
        result = await _check_workers()
        assert result["healthy"] is True
        assert set(result["workers"]) == set(WORKER_NAMES)

    @pytest.mark.asyncio
    async def test_some_workers_missing_heartbeats(self, fake_redis):
        fake_redis.store[f"{HEARTBEAT_KEY_PREFIX}webhook_dispatcher"] = "2026-10-18T12:00:00+00:00"
        result = await _check_workers()
        assert result["healthy"] is False
        assert result["workers"]["webhook_dispatcher"]["healthy"] is True
        assert result["workers"]["order_reaper"]["healthy"] is False

    @pytest.mark.asyncio
    async def test_redis_error_returns_healthy_with_note(self, fake_redis):
        fake_redis.fail = True
        result = await _check_workers()
        assert result["healthy"] is True
        assert "note" in result


# ---------------------------------------------------------------------------
# GET /health/deep
# ---------------------------------------------------------------------------


class TestDeepHealthCheck:
    @pytest.mark.asyncio
    async def test_all_healthy_returns_healthy(self, db, fake_redis):
        _beat_all(fake_redis)
        result = await deep_health_check(db=db)
        assert result["status"] == "healthy"
        assert set(result["checks"]) == {"database", "redis", "webhook_queue", "workers"}
        assert result["version"] == APP_VERSION

    @pytest.mark.asyncio
    async def test_missing_worker_degrades(self, db):
        result = await deep_health_check(db=db)
        assert result["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_database_down_unhealthy(self, fake_redis):
        _beat_all(fake_redis)
        mock_db = AsyncMock()
        mock_db.execute = AsyncMock(side_effect=Exception("db down"))
        result = await deep_health_check(db=mock_db)
        assert result["status"] == "unhealthy"
