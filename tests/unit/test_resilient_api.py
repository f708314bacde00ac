"""
Unit tests for resilient_api.py - retry with exponential backoff.

Tests coverage:
- call_with_retry() - success, transient failures, permanent failures
- Exponential backoff calculation and max delay capping
- is_retryable_error() - Google Calendar error classification
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from googleapiclient.errors import HttpError

from shared.resilient_api import call_with_retry, is_retryable_error

# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def mock_http_response():
    """Create a mock HTTP response for HttpError testing."""
    def create_response(status: int):
        response = MagicMock()
        response.status = status
        response.reason = "Test error"
        return response
    return create_response


@pytest.fixture
def http_error(mock_http_response):
    def create(status: int, content: bytes = b"{}") -> HttpError:
        return HttpError(mock_http_response(status), content)
    return create


# ============================================================================
# Test is_retryable_error()
# ============================================================================


class TestIsRetryableError:
    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
    def test_retryable_statuses(self, http_error, status):
        assert is_retryable_error(http_error(status)) is True

    @pytest.mark.parametrize("status", [400, 401, 404, 409, 410])
    def test_client_errors_are_not_retried(self, http_error, status):
        assert is_retryable_error(http_error(status)) is False

    def test_403_rate_limit_is_retried(self, http_error):
        content = b'{"error": {"errors": [{"reason": "rateLimitExceeded"}]}}'
        assert is_retryable_error(http_error(403, content)) is True

    def test_403_user_rate_limit_is_retried(self, http_error):
        content = b'{"error": {"errors": [{"reason": "userRateLimitExceeded"}]}}'
        assert is_retryable_error(http_error(403, content)) is True

    def test_403_forbidden_is_not_retried(self, http_error):
        content = b'{"error": {"errors": [{"reason": "forbidden"}]}}'
        assert is_retryable_error(http_error(403, content)) is False

    @pytest.mark.parametrize(
        "error", [TimeoutError("slow"), ConnectionError("reset"), ValueError("bad")]
    )
    def test_non_http_errors_are_not_retried(self, error):
        assert is_retryable_error(error) is False


# ============================================================================
# Test call_with_retry()
# ============================================================================


class TestCallWithRetry:
    @pytest.mark.asyncio
    async def test_success_first_attempt(self):
        func = AsyncMock(return_value={"id": "evt"})

        result = await call_with_retry(func, "arg", max_retries=3, initial_delay=0, key="value")

        assert result == {"id": "evt"}
        func.assert_awaited_once_with("arg", key="value")

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, http_error):
        func = AsyncMock(side_effect=[http_error(503), http_error(429), {"id": "evt"}])

        with patch("shared.resilient_api.asyncio.sleep", new_callable=AsyncMock) as sleep:
            result = await call_with_retry(func, max_retries=3, initial_delay=1.0)

        assert result == {"id": "evt"}
        assert func.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, http_error):
        func = AsyncMock(side_effect=http_error(500))

        with patch("shared.resilient_api.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(HttpError):
                await call_with_retry(func, max_retries=2, initial_delay=0.5)

        assert func.await_count == 3

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(self, http_error):
        func = AsyncMock(side_effect=http_error(401))

        with pytest.raises(HttpError):
            await call_with_retry(func, max_retries=3)
        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_timeouts_are_not_retried(self):
        func = AsyncMock(side_effect=TimeoutError("slow"))

        with pytest.raises(TimeoutError):
            await call_with_retry(func, max_retries=3)
        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self, http_error):
        func = AsyncMock(side_effect=[http_error(503)] * 4 + ["ok"])

        with patch("shared.resilient_api.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await call_with_retry(func, max_retries=4, initial_delay=2.0, max_delay=5.0)

        assert [c.args[0] for c in sleep.await_args_list] == [2.0, 4.0, 5.0, 5.0]
