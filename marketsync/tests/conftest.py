"""공통 테스트 픽스처"""
import asyncio
import json as jsonlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import httpx
import pytest

from marketsync.core.ports.clock_port import ClockPort
from marketsync.shared.config import Settings


class FakeClock(ClockPort):
    """테스트용 시계 (sleep 은 시간만 진행시킨다)"""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)
        self._monotonic = 0.0
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self._monotonic

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)
        self._monotonic += seconds


Handler = Callable[[httpx.Request], httpx.Response]
RouteResponse = Union[Tuple[int, Any, Dict[str, str]], Handler]


class FakeMarketplaceAPI:
    """httpx.MockTransport 용 경로별 응답 테이블

    같은 경로에 응답을 여러 개 등록하면 순서대로 사용하고 마지막 응답을 반복한다.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], List[RouteResponse]] = {}
        self.requests: List[httpx.Request] = []

    def add(
        self,
        method: str,
        path: str,
        status_code: int = 200,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None
    ) -> "FakeMarketplaceAPI":
        self.routes.setdefault((method, path), []).append((status_code, json, headers or {}))
        return self

    def add_handler(self, method: str, path: str, handler: Handler) -> "FakeMarketplaceAPI":
        self.routes.setdefault((method, path), []).append(handler)
        return self

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"errors": [{"message": f"no route for {request.method} {request.url.path}"}]})

        route = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(route):
            return route(request)
        status_code, body, headers = route
        if body is None:
            return httpx.Response(status_code, headers=headers)
        return httpx.Response(status_code, json=body, headers=headers)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    @staticmethod
    def body(request: httpx.Request) -> Any:
        return jsonlib.loads(request.content) if request.content else None


@pytest.fixture
def clock():
    """고정 시계"""
    return FakeClock()


@pytest.fixture
def api():
    """가짜 마켓 API"""
    return FakeMarketplaceAPI()


@pytest.fixture
def config():
    """테스트 설정 (짧은 재시도 대기)"""
    return Settings(
        environment="production",
        max_retries=3,
        retry_initial_delay=0.1,
        token_expiry_skew_seconds=60,
        default_currency="USD"
    )


@pytest.fixture
def test_logger():
    """caplog 로 확인 가능한 로거 (root 로 전파)"""
    return logging.getLogger("tests.marketsync")
