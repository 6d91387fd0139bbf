"""토큰 수명 관리자 (커넥터 인스턴스 단위)"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional

from marketsync.core.exceptions import AuthenticationError
from marketsync.core.ports.clock_port import ClockPort
from marketsync.shared.logging import get_logger


@dataclass(frozen=True)
class TokenInfo:
    """토큰 정보"""
    access_token: str
    expires_at: Optional[datetime] = None  # None 이면 401 을 받을 때까지 유효
    token_type: str = "Bearer"


TokenFetcher = Callable[[], Awaitable[TokenInfo]]


class TokenManager:
    """액세스 토큰 캐시 및 단일 갱신(single-flight) 관리

    토큰은 커넥터 인스턴스 수명 동안만 메모리에 보관하며 저장하지 않는다.
    동시에 갱신이 필요한 호출은 진행 중인 하나의 갱신 작업을 함께 기다린다.
    """

    def __init__(
        self,
        fetcher: TokenFetcher,
        clock: ClockPort,
        expiry_skew_seconds: int = 60,
        initial_token: Optional[TokenInfo] = None,
        marketplace: str = "",
        logger: Optional[logging.Logger] = None
    ):
        self._fetcher = fetcher
        self._clock = clock
        self._expiry_skew_seconds = expiry_skew_seconds
        self._token: Optional[TokenInfo] = initial_token
        self._refresh_task: Optional[asyncio.Task] = None
        self._marketplace = marketplace
        self._logger = logger if logger is not None else get_logger(__name__)
        self.refresh_count = 0

    @property
    def current_token(self) -> Optional[TokenInfo]:
        return self._token

    def _is_valid(self, token: Optional[TokenInfo]) -> bool:
        if token is None or not token.access_token:
            return False
        return not self._clock.is_expired(token.expires_at, self._expiry_skew_seconds)

    async def get_valid_token(self) -> str:
        """유효한 토큰 반환 (만료 시 갱신)"""
        if self._is_valid(self._token):
            return self._token.access_token
        token = await self._refresh()
        return token.access_token

    async def force_refresh(self, rejected_token: Optional[str] = None) -> str:
        """401 응답 후 강제 갱신

        다른 호출이 이미 거부된 토큰을 교체했다면 새 토큰을 그대로 사용한다.
        """
        current = self._token
        if (
            rejected_token is not None
            and current is not None
            and current.access_token != rejected_token
            and self._is_valid(current)
        ):
            return current.access_token

        self.invalidate()
        token = await self._refresh()
        return token.access_token

    def invalidate(self) -> None:
        """캐시된 토큰 무효화"""
        self._token = None

    async def _refresh(self) -> TokenInfo:
        if self._refresh_task is None:
            self._refresh_task = asyncio.ensure_future(self._run_refresh())
        # 대기 중인 한 호출이 취소되어도 갱신 작업은 계속된다
        return await asyncio.shield(self._refresh_task)

    async def _run_refresh(self) -> TokenInfo:
        try:
            self.refresh_count += 1
            self._logger.info(f"{self._marketplace} 토큰 갱신 시작")
            try:
                token = await self._fetcher()
            except AuthenticationError:
                raise
            except Exception as e:
                raise AuthenticationError(
                    f"Token refresh failed: {e}",
                    marketplace=self._marketplace
                ) from e

            if not token.access_token:
                raise AuthenticationError(
                    "Token endpoint returned an empty access token",
                    marketplace=self._marketplace
                )

            self._token = token
            self._logger.info(
                f"{self._marketplace} 토큰 갱신 완료",
                extra={'expires_at': token.expires_at.isoformat() if token.expires_at else None}
            )
            return token
        except AuthenticationError as e:
            self._logger.error(f"{self._marketplace} 토큰 갱신 실패: {e}")
            raise
        finally:
            self._refresh_task = None
