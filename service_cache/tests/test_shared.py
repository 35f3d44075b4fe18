"""
Tests for shared configuration, errors and retry helpers.
"""

from unittest.mock import AsyncMock, patch

import pytest

from shared.config import get_config
from shared.errors import GatewayException, StoreUnavailable, UpstreamError, ValidationError
from shared.retry import RetryConfig, RetryError, retry_on_exception


class TestConfig:
    """Environment-driven settings."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("GATEWAY_CACHE_BACKEND", raising=False)
        config = get_config("cache", 8000)

        assert config.service_name == "cache"
        assert config.cache_prefix == "meter_api:"
        assert config.cache_health_threshold == 50.0
        assert config.admin_prefix == "/api/cache"

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("GATEWAY_CACHE_BACKEND", "memory")
        monkeypatch.setenv("GATEWAY_CACHE_DEFAULT_TTL", "120")

        config = get_config("cache", 8000)

        assert config.cache_backend == "memory"
        assert config.cache_default_ttl == 120


class TestErrors:
    """Error envelopes and status codes."""

    def test_status_codes(self):
        assert ValidationError().status_code == 400
        assert StoreUnavailable().status_code == 503
        assert UpstreamError().status_code == 502
        assert GatewayException("X", "y").status_code == 500

    def test_envelope(self):
        response = ValidationError("Pattern is required").to_response().model_dump()

        assert response == {
            "status": "error",
            "trace_id": None,
            "code": "VALIDATION_ERROR",
            "message": "Pattern is required",
            "details": {},
        }

    def test_upstream_message_prefix(self):
        assert UpstreamError("timeout").message == "upstream: timeout"


class TestRetry:
    """retry_on_exception decorator."""

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        calls = []

        @retry_on_exception((ConnectionError,), RetryConfig(max_attempts=3, base_delay=0.01))
        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("down")
            return "ok"

        with patch("shared.retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            assert await flaky() == "ok"

        assert len(calls) == 3
        assert mock_sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_attempts_raise_retry_error(self):
        @retry_on_exception((ConnectionError,), RetryConfig(max_attempts=2, base_delay=0.01))
        async def always_down():
            raise ConnectionError("down")

        with patch("shared.retry.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(RetryError) as exc_info:
                await always_down()

        assert exc_info.value.attempts == 2
        assert isinstance(exc_info.value.last_exception, ConnectionError)

    @pytest.mark.asyncio
    async def test_other_exceptions_are_not_retried(self):
        calls = []

        @retry_on_exception((ConnectionError,), RetryConfig(max_attempts=3))
        async def broken():
            calls.append(1)
            raise KeyError("x")

        with pytest.raises(KeyError):
            await broken()

        assert len(calls) == 1

    def test_delay_strategies(self):
        exponential = RetryConfig(base_delay=1.0, jitter=False)
        linear = RetryConfig(base_delay=1.0, jitter=False, backoff_strategy="linear")
        capped = RetryConfig(base_delay=1.0, max_delay=3.0, jitter=False)

        assert exponential.delay_for(3) == 4.0
        assert linear.delay_for(3) == 3.0
        assert capped.delay_for(5) == 3.0
