"""
Webhook signature validation tests.
These protect the authentication boundary for all inbound gateway data.
"""
import hashlib
import hmac

import pytest

from src.utils.webhook_signatures import (
    GENERIC_SIGNATURE_HEADER,
    PAYMONGO_SIGNATURE_HEADER,
    compute_payload_hash,
    parse_paymongo_signature,
    sign_paymongo_payload,
    validate_gateway_signature,
    validate_hmac_sha256,
    validate_paymongo_signature,
)

SECRET = "whsk_test_secret"
BODY = b'{"provider_event_id": "evt_1", "event_type": "payment.paid"}'
TIMESTAMP = 1760788800


class TestValidateHmacSha256:
    """Test generic HMAC-SHA256 signature validation."""

    def test_valid_signature(self):
        secret = "my_secret"
        body = b'{"event": "test"}'
        expected_sig = hmac.new(
            secret.encode(), body, hashlib.sha256
        ).hexdigest()

        result = validate_hmac_sha256(secret, f"sha256={expected_sig}", body)
        assert result is True

    def test_valid_signature_without_prefix(self):
        secret = "my_secret"
        body = b'{"event": "test"}'
        expected_sig = hmac.new(
            secret.encode(), body, hashlib.sha256
        ).hexdigest()

        result = validate_hmac_sha256(
            secret, expected_sig, body, header_prefix=""
        )
        assert result is True

    def test_invalid_signature(self):
        result = validate_hmac_sha256(
            "my_secret", "sha256=invalid_hex", b"body"
        )
        assert result is False

    def test_empty_secret_returns_false(self):
        result = validate_hmac_sha256("", "sha256=abc", b"body")
        assert result is False

    def test_empty_signature_returns_false(self):
        result = validate_hmac_sha256("secret", "", b"body")
        assert result is False

    def test_none_secret_returns_false(self):
        result = validate_hmac_sha256(None, "sha256=abc", b"body")
        assert result is False


class TestPaymongoSignature:
    """Test the t=..,te=..,li=.. header scheme."""

    def test_parse_header(self):
        parts = parse_paymongo_signature("t=123, te=abc ,li=")
        assert parts == {"t": "123", "te": "abc", "li": ""}

    def test_parse_ignores_garbage(self):
        assert parse_paymongo_signature("nonsense,=x,t=1") == {"t": "1"}
        assert parse_paymongo_signature(None) == {}

    def test_test_mode_signature_valid(self):
        header = sign_paymongo_payload(SECRET, BODY, TIMESTAMP)
        assert validate_paymongo_signature(SECRET, header, BODY, livemode=False) is True

    def test_live_mode_signature_valid(self):
        header = sign_paymongo_payload(SECRET, BODY, TIMESTAMP, livemode=True)
        assert validate_paymongo_signature(SECRET, header, BODY, livemode=True) is True

    def test_test_signature_rejected_in_live_mode(self):
        header = sign_paymongo_payload(SECRET, BODY, TIMESTAMP)
        assert validate_paymongo_signature(SECRET, header, BODY, livemode=True) is False

    def test_tampered_body_rejected(self):
        header = sign_paymongo_payload(SECRET, BODY, TIMESTAMP)
        assert validate_paymongo_signature(SECRET, header, BODY + b" ", livemode=False) is False

    def test_wrong_secret_rejected(self):
        header = sign_paymongo_payload("other", BODY, TIMESTAMP)
        assert validate_paymongo_signature(SECRET, header, BODY, livemode=False) is False

    def test_timestamp_is_signed(self):
        header = sign_paymongo_payload(SECRET, BODY, TIMESTAMP).replace(f"t={TIMESTAMP}", "t=1")
        assert validate_paymongo_signature(SECRET, header, BODY, livemode=False) is False

    def test_missing_parts_rejected(self):
        assert validate_paymongo_signature(SECRET, "te=abc", BODY, livemode=False) is False
        assert validate_paymongo_signature(SECRET, "", BODY, livemode=False) is False
        assert validate_paymongo_signature("", "t=1,te=abc", BODY, livemode=False) is False


class TestValidateGatewaySignature:
    def test_paymongo_header(self, settings_override):
        settings_override(gateway_webhook_secret=SECRET, app_env="test")
        headers = {PAYMONGO_SIGNATURE_HEADER: sign_paymongo_payload(SECRET, BODY, TIMESTAMP)}
        assert validate_gateway_signature(headers, BODY) is True

    def test_production_requires_live_signature(self, settings_override):
        settings_override(gateway_webhook_secret=SECRET, app_env="production")
        test_headers = {PAYMONGO_SIGNATURE_HEADER: sign_paymongo_payload(SECRET, BODY, TIMESTAMP)}
        live_headers = {PAYMONGO_SIGNATURE_HEADER: sign_paymongo_payload(SECRET, BODY, TIMESTAMP, livemode=True)}
        assert validate_gateway_signature(test_headers, BODY) is False
        assert validate_gateway_signature(live_headers, BODY) is True

    def test_generic_header(self, settings_override):
        settings_override(gateway_webhook_secret=SECRET)
        digest = hmac.new(SECRET.encode(), BODY, hashlib.sha256).hexdigest()
        assert validate_gateway_signature({GENERIC_SIGNATURE_HEADER: f"sha256={digest}"}, BODY) is True

    def test_no_header_rejected(self, settings_override):
        settings_override(gateway_webhook_secret=SECRET)
        assert validate_gateway_signature({}, BODY) is False

    def test_no_secret_rejects_by_default(self, settings_override):
        settings_override(gateway_webhook_secret="", allow_unsigned_webhooks=False)
        assert validate_gateway_signature({}, BODY) is False

    def test_unsigned_allowed_outside_production(self, settings_override):
        settings_override(gateway_webhook_secret="", allow_unsigned_webhooks=True, app_env="development")
        assert validate_gateway_signature({}, BODY) is True

    def test_unsigned_never_allowed_in_production(self, settings_override):
        settings_override(gateway_webhook_secret="", allow_unsigned_webhooks=True, app_env="production")
        assert validate_gateway_signature({}, BODY) is False


class TestComputePayloadHash:
    def test_consistent_hash(self):
        body = b'{"test": true}'
        h1 = compute_payload_hash(body)
        h2 = compute_payload_hash(body)
        assert h1 == h2
        assert len(h1) == 64  # SHA-256 hex digest

    def test_different_payloads_different_hashes(self):
        assert compute_payload_hash(b"a") != compute_payload_hash(b"b")
