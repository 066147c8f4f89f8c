"""
Tests for billing_sentinel/utils - redaction, encryption, alerting, background tasks, logging.
"""
import asyncio
import json
import logging
import pytest
from unittest.mock import AsyncMock, patch

from billing_sentinel.exceptions import KeyManagementError
from billing_sentinel.utils import alerting
from billing_sentinel.utils.alerting import AlertType, send_alert
from billing_sentinel.utils.encryption import (
    decrypt_value,
    encrypt_value,
    fingerprint,
    get_fernet,
)
from billing_sentinel.utils.logging import (
    StructuredJsonFormatter,
    correlation_scope,
    generate_correlation_id,
    get_correlation_id,
    set_correlation_id,
)
from billing_sentinel.utils.redaction import TRUNCATED, redact_details, redact_value
from billing_sentinel.utils.tasks import BackgroundTasks


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------


class TestRedaction:
    def test_sensitive_keys_masked(self):
        result = redact_details({"api_key": "anything", "password": "hunter2", "ok": "fine"})
        assert result["api_key"] == f"[redacted:{fingerprint('anything')}]"
        assert result["password"].startswith("[redacted:")
        assert result["ok"] == "fine"

    def test_key_like_values_masked_anywhere(self):
        text = redact_value("failed with sk_live_ABC123 and pk_test_xyz")
        assert "sk_live_ABC123" not in text
        assert "pk_test_xyz" not in text
        assert text.count("[redacted:") == 2

    def test_nested_structures(self):
        result = redact_details({
            "outer": {"token": "t0k3n", "note": "whsec_nested"},
            "items": [{"secret": "s"}, "rk_test_listed", 3],
        })
        assert result["outer"]["token"].startswith("[redacted:")
        assert "whsec_nested" not in result["outer"]["note"]
        assert result["items"][0]["secret"].startswith("[redacted:")
        assert "rk_test_listed" not in result["items"][1]
        assert result["items"][2] == 3

    def test_deep_nesting_truncated(self):
        deep = {"a": {"b": {"c": {"d": {"e": {"f": {"g": "sk_live_ABCDEF123"}}}}}}}
        result = redact_details(deep)

        assert "sk_live_ABCDEF123" not in repr(result)
        assert result["a"]["b"]["c"]["d"]["e"]["f"] == TRUNCATED

    def test_lists_inside_lists(self):
        result = redact_details({"rows": [["whsec_inner", 1], [{"api_key": "k"}]]})
        assert "whsec_inner" not in repr(result)
        assert result["rows"][0][1] == 1
        assert result["rows"][1][0]["api_key"].startswith("[redacted:")

    def test_empty_sensitive_value_left_alone(self):
        assert redact_details({"token": ""}) == {"token": ""}

    def test_original_not_mutated(self):
        original = {"secret": "abc"}
        redact_details(original)
        assert original == {"secret": "abc"}


# ---------------------------------------------------------------------------
# Encryption
# ---------------------------------------------------------------------------


class TestEncryption:
    def test_round_trip(self, fernet):
        token = encrypt_value("sk_test_value", fernet)
        assert token != "sk_test_value"
        assert decrypt_value(token, fernet) == "sk_test_value"

    def test_empty_value_refused(self, fernet):
        with pytest.raises(KeyManagementError):
            encrypt_value("", fernet)

    def test_tampered_token(self, fernet):
        with pytest.raises(KeyManagementError):
            decrypt_value("not-a-token", fernet)

    def test_missing_key(self):
        with pytest.raises(KeyManagementError):
            get_fernet("")

    def test_invalid_key(self):
        with pytest.raises(KeyManagementError):
            get_fernet("too-short")

    def test_fingerprint_is_short_and_stable(self):
        assert fingerprint("whsec_abc") == fingerprint("whsec_abc")
        assert len(fingerprint("whsec_abc")) == 8
        assert fingerprint("whsec_abc") != fingerprint("whsec_abd")


# ---------------------------------------------------------------------------
# Operational alerts
# ---------------------------------------------------------------------------


class TestSendAlert:
    @pytest.fixture(autouse=True)
    def _clear_local_cooldowns(self):
        alerting._local_cooldowns.clear()
        yield
        alerting._local_cooldowns.clear()

    @pytest.mark.asyncio
    async def test_sent_when_cooldown_acquired(self, mock_redis):
        with patch.object(alerting, "_send_webhook_alert", new_callable=AsyncMock) as webhook:
            assert await send_alert(AlertType.WEBHOOK_RETRIES_EXHAUSTED, "evt_1 gave up") is True
        webhook.assert_awaited_once()
        key = mock_redis.set.call_args.args[0]
        assert key == "billing_sentinel:alert_cooldown:webhook_retries_exhausted"

    @pytest.mark.asyncio
    async def test_suppressed_during_cooldown(self, mock_redis):
        mock_redis.set = AsyncMock(return_value=None)
        with patch.object(alerting, "_send_webhook_alert", new_callable=AsyncMock) as webhook:
            assert await send_alert(AlertType.PAYMENT_FAILED, "declined") is False
        webhook.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disputes_never_rate_limited(self, mock_redis):
        with patch.object(alerting, "_send_webhook_alert", new_callable=AsyncMock):
            assert await send_alert(AlertType.DISPUTE_CREATED, "dp_1") is True
            assert await send_alert(AlertType.DISPUTE_CREATED, "dp_2") is True
        mock_redis.set.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_in_memory_fallback_when_redis_down(self):
        with patch("billing_sentinel.utils.dedup.get_redis", new_callable=AsyncMock,
                   side_effect=ConnectionError("redis down")), \
                patch.object(alerting, "_send_webhook_alert", new_callable=AsyncMock):
            assert await send_alert(AlertType.ACCOUNT_DEAUTHORIZED, "acct_1") is True
            assert await send_alert(AlertType.ACCOUNT_DEAUTHORIZED, "acct_1") is False

    @pytest.mark.asyncio
    async def test_cooldown_key_scopes_rate_limit(self):
        with patch("billing_sentinel.utils.dedup.get_redis", new_callable=AsyncMock,
                   side_effect=ConnectionError("redis down")), \
                patch.object(alerting, "_send_webhook_alert", new_callable=AsyncMock):
            assert await send_alert(AlertType.PAYMENT_FAILED, "a", cooldown_key="payment_failed:cus_1") is True
            assert await send_alert(AlertType.PAYMENT_FAILED, "b", cooldown_key="payment_failed:cus_2") is True
            assert await send_alert(AlertType.PAYMENT_FAILED, "c", cooldown_key="payment_failed:cus_1") is False


# ---------------------------------------------------------------------------
# Background tasks
# ---------------------------------------------------------------------------


class TestBackgroundTasks:
    @pytest.mark.asyncio
    async def test_drain_waits_for_tasks(self):
        tasks = BackgroundTasks("test")
        done = []

        async def work(n):
            await asyncio.sleep(0.01)
            done.append(n)

        for i in range(3):
            tasks.spawn(work(i))
        assert tasks.pending == 3
        await tasks.drain(timeout=5.0)
        assert sorted(done) == [0, 1, 2]
        assert tasks.pending == 0

    @pytest.mark.asyncio
    async def test_failures_are_contained(self):
        tasks = BackgroundTasks("test")

        async def boom():
            raise RuntimeError("boom")

        tasks.spawn(boom())
        await tasks.drain(timeout=5.0)
        assert tasks.pending == 0

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        tasks = BackgroundTasks("test")
        tasks.spawn(asyncio.sleep(60))
        await tasks.cancel_all()
        assert tasks.pending == 0

    def test_spawn_without_loop_drops_task(self):
        async def never():
            return None

        assert BackgroundTasks("test").spawn(never()) is None


# ---------------------------------------------------------------------------
# Structured logging
# ---------------------------------------------------------------------------


class TestStructuredLogging:
    def test_json_line_with_correlation_and_extras(self):
        set_correlation_id("cid-abc")
        try:
            record = logging.LogRecord("billing_sentinel.test", logging.INFO, __file__, 1, "hello %s", ("x",), None)
            record.event_id = "evt_1"
            line = json.loads(StructuredJsonFormatter().format(record))
        finally:
            set_correlation_id(None)

        assert line["message"] == "hello x"
        assert line["correlation_id"] == "cid-abc"
        assert line["event_id"] == "evt_1"
        assert line["level"] == "INFO"

    def test_generated_ids_are_unique_hex(self):
        a, b = generate_correlation_id(), generate_correlation_id()
        assert a != b
        assert len(a) == 32

    def test_static_fields_and_secret_scrubbing(self):
        fmt = StructuredJsonFormatter(service="sentinel", env="production", version="2.0.0")
        record = logging.LogRecord(
            "billing_sentinel.test", logging.WARNING, __file__, 1,
            "rotating %s", ("whsec_abcdef123456",), None,
        )
        line = json.loads(fmt.format(record))

        assert line["service"] == "sentinel"
        assert line["env"] == "production"
        assert line["version"] == "2.0.0"
        assert "whsec_abcdef123456" not in line["message"]
        assert "[redacted:" in line["message"]

    def test_correlation_scope_restores_previous_id(self):
        set_correlation_id("outer")
        try:
            with correlation_scope("evt_scoped") as cid:
                assert cid == "evt_scoped"
                assert get_correlation_id() == "evt_scoped"
            assert get_correlation_id() == "outer"
        finally:
            set_correlation_id(None)
