"""마켓 공통 HTTP 클라이언트 (토큰 주입, 401 재시도, 오류 변환)"""
import logging
from typing import Any, Callable, Dict, Optional

import httpx

from marketsync.adapters.auth.token_store import TokenManager
from marketsync.core.entities.credentials import MarketplaceSettings
from marketsync.core.exceptions import (
    AuthenticationError, ExternalAPIError, PermissionDeniedError,
    RateLimitError, TransientNetworkError, is_retryable
)
from marketsync.core.ports.clock_port import ClockPort
from marketsync.shared.logging import get_logger, log_api_request
from marketsync.shared.retry import retry

AuthHeaders = Callable[[str], Dict[str, str]]


def extract_error_message(response: httpx.Response) -> str:
    """응답 본문에서 오류 메시지 추출"""
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            first = errors[0]
            if isinstance(first, dict):
                message = first.get("message") or first.get("longMessage") or first.get("description")
                if message:
                    return str(message)
        error = body.get("error")
        if isinstance(error, dict):
            message = error.get("description") or error.get("message")
            if message:
                return str(message)
        for key in ("error_description", "message", "error"):
            if body.get(key):
                return str(body[key])

    text = response.text.strip()
    return text[:200] if text else f"HTTP {response.status_code}"


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


class MarketHttpClient:
    """마켓 API 호출용 httpx 래퍼

    요청마다 현재 토큰을 주입하고, 401 응답은 토큰을 강제 갱신한 뒤 한 번만
    다시 보낸다. 전송 오류와 실패 응답은 마켓 예외로 변환되며 재시도 대상
    예외는 retry 유틸리티로 재시도한다.
    """

    def __init__(
        self,
        marketplace: str,
        base_url: str,
        token_manager: TokenManager,
        auth_headers: AuthHeaders,
        settings: MarketplaceSettings,
        clock: ClockPort,
        retry_initial_delay: float = 1.0,
        default_headers: Optional[Dict[str, str]] = None,
        request_headers: Optional[Callable[[], Dict[str, str]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.marketplace = marketplace
        self.token_manager = token_manager
        self._auth_headers = auth_headers
        self._request_headers = request_headers
        self._settings = settings
        self._clock = clock
        self._retry_initial_delay = retry_initial_delay
        self._logger = logger or get_logger(__name__)
        self.client = httpx.AsyncClient(
            base_url=base_url.rstrip('/'),
            timeout=httpx.Timeout(settings.timeout),
            headers=default_headers or {},
            transport=transport
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Any] = None,
        json: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> httpx.Response:
        """인증된 요청 (재시도 포함)"""
        return await retry(
            lambda: self._send_authenticated(method, path, params=params, json=json, headers=headers),
            max_attempts=self._settings.error_retry_attempts or 1,
            initial_delay=self._retry_initial_delay,
            should_retry=is_retryable,
            sleep=self._clock.sleep,
            logger=self._logger,
            description=f"{self.marketplace} {method} {path}"
        )

    async def request_json(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """인증된 요청 후 JSON 본문 반환 (본문 없으면 빈 dict)"""
        response = await self.request(method, path, **kwargs)
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as e:
            raise ExternalAPIError(
                f"{self.marketplace} returned a non-JSON body for {method} {path}",
                status_code=response.status_code,
                marketplace=self.marketplace
            ) from e
        return body if isinstance(body, dict) else {"items": body}

    async def fetch_token(
        self,
        url: str,
        *,
        data: Dict[str, str],
        headers: Optional[Dict[str, str]] = None,
        auth: Optional[httpx.Auth] = None
    ) -> Dict[str, Any]:
        """토큰 엔드포인트 호출 (재시도하지 않음)"""
        try:
            response = await self.client.post(url, data=data, headers=headers, auth=auth)
        except httpx.HTTPError as e:
            raise AuthenticationError(
                f"{self.marketplace} token endpoint unreachable: {e}",
                marketplace=self.marketplace
            ) from e

        if response.status_code >= 400:
            raise AuthenticationError(
                f"{self.marketplace} token request rejected: {extract_error_message(response)}",
                details={'status_code': response.status_code},
                marketplace=self.marketplace
            )

        try:
            return response.json()
        except ValueError as e:
            raise AuthenticationError(
                f"{self.marketplace} token response is not JSON",
                marketplace=self.marketplace
            ) from e

    async def _send_authenticated(
        self,
        method: str,
        path: str,
        **kwargs
    ) -> httpx.Response:
        token = await self.token_manager.get_valid_token()
        response = await self._send(method, path, token, **kwargs)

        if response.status_code == 401:
            self._logger.info(f"{self.marketplace} 401 응답, 토큰 강제 갱신 후 재요청: {path}")
            token = await self.token_manager.force_refresh(token)
            response = await self._send(method, path, token, **kwargs)
            if response.status_code == 401:
                raise AuthenticationError(
                    f"{self.marketplace} rejected refreshed token: {extract_error_message(response)}",
                    details={'path': path},
                    marketplace=self.marketplace
                )

        self._raise_for_status(method, path, response)
        return response

    async def _send(
        self,
        method: str,
        path: str,
        token: str,
        *,
        params: Optional[Any] = None,
        json: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> httpx.Response:
        request_headers = dict(self._auth_headers(token))
        if self._request_headers:
            request_headers.update(self._request_headers())
        if headers:
            request_headers.update(headers)

        started = self._clock.monotonic()
        try:
            response = await self.client.request(
                method, path, params=params, json=json, headers=request_headers
            )
        except httpx.TimeoutException as e:
            raise TransientNetworkError(
                f"{self.marketplace} request timed out: {method} {path}",
                marketplace=self.marketplace
            ) from e
        except httpx.TransportError as e:
            raise TransientNetworkError(
                f"{self.marketplace} connection error: {e}",
                marketplace=self.marketplace
            ) from e

        log_api_request(
            self._logger, method, path, response.status_code,
            self._clock.monotonic() - started
        )
        return response

    def _raise_for_status(self, method: str, path: str, response: httpx.Response) -> None:
        status_code = response.status_code
        if status_code < 400:
            return

        message = f"{self.marketplace} {method} {path} failed ({status_code}): {extract_error_message(response)}"
        details = {'status_code': status_code, 'path': path}

        if status_code == 429:
            raise RateLimitError(
                message,
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
                details=details,
                marketplace=self.marketplace
            )
        if status_code == 403:
            raise PermissionDeniedError(message, status_code=status_code, details=details, marketplace=self.marketplace)
        if status_code >= 500:
            raise TransientNetworkError(message, status_code=status_code, details=details, marketplace=self.marketplace)
        raise ExternalAPIError(message, status_code=status_code, details=details, marketplace=self.marketplace)
