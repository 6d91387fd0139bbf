"""마켓 HTTP 클라이언트 통합 테스트"""
import httpx
import pytest

from marketsync.adapters.auth.token_store import TokenInfo, TokenManager
from marketsync.adapters.markets.http_client import MarketHttpClient, extract_error_message
from marketsync.core.entities.credentials import MarketplaceSettings
from marketsync.core.exceptions import (
    ExternalAPIError, PermissionDeniedError, RateLimitError, TransientNetworkError
)


def make_client(api, clock, test_logger, attempts=3, transport=None):
    async def fetch_token():
        return TokenInfo("static-token")

    token_manager = TokenManager(fetch_token, clock, marketplace="test", logger=test_logger)
    settings = MarketplaceSettings(error_retry_attempts=attempts, timeout=5)
    return MarketHttpClient(
        "test",
        "https://api.example.com/v1",
        token_manager,
        lambda token: {"Authorization": f"Bearer {token}"},
        settings,
        clock,
        retry_initial_delay=0.5,
        transport=transport or api.transport,
        logger=test_logger
    )


class TestMarketHttpClient:
    """HTTP 클라이언트 테스트"""

    @pytest.mark.asyncio
    async def test_retry_after_header_is_honored(self, api, clock, test_logger):
        api.add("GET", "/v1/things", 429, json={"message": "throttled"}, headers={"Retry-After": "3"})
        api.add("GET", "/v1/things", json={"things": []})

        client = make_client(api, clock, test_logger)
        body = await client.request_json("GET", "/things")
        await client.aclose()

        assert body == {"things": []}
        assert clock.sleeps == [3.0]
        assert api.calls("GET", "/v1/things")[0].headers["Authorization"] == "Bearer static-token"

    @pytest.mark.asyncio
    async def test_rate_limit_exhausts_attempts(self, api, clock, test_logger):
        api.add("GET", "/v1/things", 429, json={"message": "throttled"})

        client = make_client(api, clock, test_logger, attempts=2)
        with pytest.raises(RateLimitError):
            await client.request("GET", "/things")
        await client.aclose()

        assert len(api.calls("GET", "/v1/things")) == 2

    @pytest.mark.asyncio
    async def test_timeout_becomes_transient_error(self, clock, test_logger, api):
        def timeout(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = make_client(api, clock, test_logger, attempts=2, transport=httpx.MockTransport(timeout))
        with pytest.raises(TransientNetworkError):
            await client.request("GET", "/things")
        await client.aclose()

        assert clock.sleeps == [0.5]

    @pytest.mark.asyncio
    async def test_forbidden_is_not_retried(self, api, clock, test_logger):
        api.add("GET", "/v1/things", 403, json={"errors": [{"message": "Access denied"}]})

        client = make_client(api, clock, test_logger)
        with pytest.raises(PermissionDeniedError) as exc_info:
            await client.request("GET", "/things")
        await client.aclose()

        assert exc_info.value.status_code == 403
        assert "Access denied" in exc_info.value.message
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_non_json_body(self, api, clock, test_logger):
        api.add_handler("GET", "/v1/things", lambda request: httpx.Response(200, text="<html>ok</html>"))

        client = make_client(api, clock, test_logger)
        with pytest.raises(ExternalAPIError):
            await client.request_json("GET", "/things")
        await client.aclose()


class TestExtractErrorMessage:
    @pytest.mark.parametrize("response,expected", [
        (httpx.Response(400, json={"errors": [{"longMessage": "Bad SKU"}]}), "Bad SKU"),
        (httpx.Response(400, json={"error": {"description": "Bad token"}}), "Bad token"),
        (httpx.Response(400, json={"error": "invalid_grant", "error_description": "expired"}), "expired"),
        (httpx.Response(502, text=""), "HTTP 502"),
    ])
    def test_messages(self, response, expected):
        assert extract_error_message(response) == expected
