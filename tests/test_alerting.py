"""
Tests for src/utils/alerting.py - cooldowns, severity routing and webhook formatting.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from src.utils import alerting
from src.utils.alerting import (
    ALERT_COOLDOWN_SECONDS,
    AlertType,
    _acquire_cooldown,
    _get_cooldown_seconds,
    _send_webhook_alert,
    send_alert,
)


@pytest.fixture(autouse=True)
def clear_local_cooldowns():
    alerting._local_cooldowns.clear()
    yield
    alerting._local_cooldowns.clear()


def _mock_http_client():
    mock_client = AsyncMock()
    mock_client.post = AsyncMock()
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    return mock_client


class TestCooldowns:
    def test_reaper_summary_has_1_hour_cooldown(self):
        assert _get_cooldown_seconds(AlertType.ABANDONED_ORDERS_REAPED) == 3600

    def test_default_cooldown_for_unknown_type(self):
        assert _get_cooldown_seconds("something_else") == ALERT_COOLDOWN_SECONDS

    @pytest.mark.asyncio
    async def test_second_alert_suppressed(self, fake_redis):
        assert await _acquire_cooldown(AlertType.PAYMENT_ANOMALY) is True
        assert await _acquire_cooldown(AlertType.PAYMENT_ANOMALY) is False

    @pytest.mark.asyncio
    async def test_dedup_key_scopes_cooldown(self, fake_redis):
        assert await _acquire_cooldown(AlertType.PAYMENT_ANOMALY, "order-a") is True
        assert await _acquire_cooldown(AlertType.PAYMENT_ANOMALY, "order-b") is True
        assert await _acquire_cooldown(AlertType.PAYMENT_ANOMALY, "order-a") is False
        assert "tourpay:alert_cooldown:payment_anomaly:order-a" in fake_redis.store

    @pytest.mark.asyncio
    async def test_in_memory_fallback_when_redis_down(self, fake_redis):
        fake_redis.fail = True
        assert await _acquire_cooldown(AlertType.WEBHOOK_EVENT_PARKED, "evt_1") is True
        assert await _acquire_cooldown(AlertType.WEBHOOK_EVENT_PARKED, "evt_1") is False

    @pytest.mark.asyncio
    async def test_in_memory_fallback_prunes_expired_keys(self, fake_redis):
        fake_redis.fail = True
        alerting._local_cooldowns["webhook_event_parked:evt_old"] = 0.0
        alerting._local_cooldowns["payment_anomaly:order-live"] = float("inf")

        assert await _acquire_cooldown(AlertType.WEBHOOK_EVENT_PARKED, "evt_new") is True

        assert "webhook_event_parked:evt_old" not in alerting._local_cooldowns
        assert "payment_anomaly:order-live" in alerting._local_cooldowns
        assert "webhook_event_parked:evt_new" in alerting._local_cooldowns


class TestSendAlert:
    @pytest.mark.asyncio
    async def test_error_severity_logs_error(self):
        with (
            patch("src.utils.alerting.logger") as mock_logger,
            patch("src.utils.alerting._send_webhook_alert", new_callable=AsyncMock) as mock_webhook,
        ):
            await send_alert(AlertType.WEBHOOK_EVENT_PARKED, "evt_1 parked", correlation_id="cid-1")

        message = mock_logger.error.call_args[0][0]
        assert "ALERT [webhook_event_parked]" in message
        assert "correlation_id=cid-1" in message
        mock_webhook.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_warning_severity(self):
        with (
            patch("src.utils.alerting.logger") as mock_logger,
            patch("src.utils.alerting._send_webhook_alert", new_callable=AsyncMock),
        ):
            await send_alert(AlertType.ABANDONED_ORDERS_REAPED, "3 reaped", severity="warning")
        mock_logger.warning.assert_called_once()
        mock_logger.error.assert_not_called()

    @pytest.mark.asyncio
    async def test_suppressed_alert_sends_nothing(self):
        with patch("src.utils.alerting._send_webhook_alert", new_callable=AsyncMock) as mock_webhook:
            await send_alert(AlertType.PAYMENT_ANOMALY, "first", dedup_key="o1")
            await send_alert(AlertType.PAYMENT_ANOMALY, "second", dedup_key="o1")
        assert mock_webhook.await_count == 1


class TestSendWebhookAlert:
    @pytest.mark.asyncio
    async def test_webhook_includes_correlation_id_and_extra(self):
        mock_settings = MagicMock()
        mock_settings.alert_webhook_url = "https://hooks.example.com/test"
        mock_client = _mock_http_client()

        with (
            patch("src.config.get_settings", return_value=mock_settings),
            patch("httpx.AsyncClient", return_value=mock_client),
        ):
            await _send_webhook_alert(
                alert_type=AlertType.PAYMENT_ANOMALY,
                message="Payment for cancelled order",
                severity="error",
                correlation_id="corr-abc-123",
                extra={"order_id": "order-999"},
            )

        content = mock_client.post.call_args[1]["json"]["content"]
        assert "**payment_anomaly**" in content
        assert "corr-abc-123" in content
        assert "order_id: order-999" in content

    @pytest.mark.asyncio
    async def test_no_url_configured_skips_post(self):
        mock_settings = MagicMock()
        mock_settings.alert_webhook_url = ""
        with (
            patch("src.config.get_settings", return_value=mock_settings),
            patch("httpx.AsyncClient") as mock_cls,
        ):
            await _send_webhook_alert(AlertType.PAYMENT_ANOMALY, "msg", "error", None, None)
        mock_cls.assert_not_called()

    @pytest.mark.asyncio
    async def test_post_failure_is_logged(self):
        mock_settings = MagicMock()
        mock_settings.alert_webhook_url = "https://hooks.example.com/test"
        mock_client = _mock_http_client()
        mock_client.post = AsyncMock(side_effect=Exception("connection reset"))

        with (
            patch("src.config.get_settings", return_value=mock_settings),
            patch("httpx.AsyncClient", return_value=mock_client),
            patch("src.utils.alerting.logger") as mock_logger,
        ):
            await _send_webhook_alert(AlertType.PAYMENT_ANOMALY, "msg", "error", None, None)

        mock_logger.warning.assert_called_once()
