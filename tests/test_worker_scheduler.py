"""
Tests for src/workers/scheduler.py and the worker entry points built on it.
"""
import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from src.utils.alerting import AlertType
from src.utils.redis_client import HEARTBEAT_KEY_PREFIX
from src.workers.scheduler import run_periodic


class TestRunPeriodic:
    @pytest.mark.asyncio
    async def test_stops_when_event_set(self, fake_redis):
        stop_event = asyncio.Event()
        ticks = 0

        async def tick():
            nonlocal ticks
            ticks += 1
            if ticks == 3:
                stop_event.set()

        await asyncio.wait_for(run_periodic("test_worker", tick, 0.01, stop_event), timeout=2)

        assert ticks == 3

    @pytest.mark.asyncio
    async def test_failing_tick_does_not_stop_loop(self, fake_redis):
        stop_event = asyncio.Event()
        calls = []

        async def tick():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("transient")
            stop_event.set()

        with patch("src.workers.scheduler.logger") as mock_logger:
            await asyncio.wait_for(run_periodic("test_worker", tick, 0.01, stop_event), timeout=2)

        assert len(calls) == 2
        assert mock_logger.error.call_args[1]["exc_info"] is True

    @pytest.mark.asyncio
    async def test_failing_tick_alerts_once_per_worker(self, fake_redis):
        stop_event = asyncio.Event()

        async def tick():
            stop_event.set()
            raise RuntimeError("db unreachable")

        with patch("src.workers.scheduler.send_alert", new_callable=AsyncMock) as mock_alert:
            await run_periodic("test_worker", tick, 0.01, stop_event)

        mock_alert.assert_awaited_once()
        assert mock_alert.call_args[0][0] == AlertType.WORKER_ERROR
        assert "RuntimeError: db unreachable" in mock_alert.call_args[0][1]
        assert mock_alert.call_args[1]["dedup_key"] == "test_worker"

    @pytest.mark.asyncio
    async def test_writes_heartbeat(self, fake_redis):
        stop_event = asyncio.Event()

        async def tick():
            stop_event.set()

        await run_periodic("test_worker", tick, 0.01, stop_event)

        assert f"{HEARTBEAT_KEY_PREFIX}test_worker" in fake_redis.store

    @pytest.mark.asyncio
    async def test_heartbeat_failure_is_ignored(self, fake_redis):
        fake_redis.fail = True
        stop_event = asyncio.Event()

        async def tick():
            stop_event.set()

        await run_periodic("test_worker", tick, 0.01, stop_event)

    @pytest.mark.asyncio
    async def test_stop_interrupts_sleep(self, fake_redis):
        stop_event = asyncio.Event()
        tick = AsyncMock()

        task = asyncio.create_task(run_periodic("test_worker", tick, 3600, stop_event))
        await asyncio.sleep(0.05)
        stop_event.set()
        await asyncio.wait_for(task, timeout=1)

        tick.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_already_stopped_runs_nothing(self, fake_redis):
        stop_event = asyncio.Event()
        stop_event.set()
        tick = AsyncMock()
        await run_periodic("test_worker", tick, 0.01, stop_event)
        tick.assert_not_awaited()


class TestWorkerEntryPoints:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("module,runner,tick,interval_setting", [
        ("src.workers.webhook_dispatcher", "run_webhook_dispatcher", "dispatch_once", "dispatcher_poll_interval_seconds"),
        ("src.workers.order_reaper", "run_order_reaper", "reap_once", "reaper_interval_seconds"),
        ("src.workers.token_hygiene", "run_token_hygiene", "purge_once", "token_hygiene_interval_seconds"),
    ])
    async def test_runner_delegates_to_run_periodic(self, module, runner, tick, interval_setting):
        import importlib
        from src.config import get_settings

        mod = importlib.import_module(module)
        stop_event = asyncio.Event()
        with patch("src.workers.scheduler.run_periodic", new_callable=AsyncMock) as mock_run:
            await getattr(mod, runner)(stop_event)

        args = mock_run.call_args[0]
        assert args[0] == mod.WORKER_NAME
        assert args[1] is getattr(mod, tick)
        assert args[2] == getattr(get_settings(), interval_setting)
        assert args[3] is stop_event
