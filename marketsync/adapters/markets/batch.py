"""배치 요청 분산 실행 (마켓 초당 호출 제한 준수)"""
import asyncio
import math
import logging
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from marketsync.core.entities.sync_result import BatchReport
from marketsync.core.exceptions import MarketplaceError
from marketsync.core.ports.clock_port import ClockPort

T = TypeVar('T')


class RequestPacer:
    """요청 시작 간격 조절기 (1 / requests_per_second 초)"""

    def __init__(self, requests_per_second: float, clock: ClockPort):
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        self._interval = 1.0 / requests_per_second
        self._clock = clock
        self._lock = asyncio.Lock()
        self._next_slot: Optional[float] = None

    async def wait(self) -> None:
        """다음 요청 시작 가능 시점까지 대기"""
        async with self._lock:
            now = self._clock.monotonic()
            if self._next_slot is not None and self._next_slot > now:
                await self._clock.sleep(self._next_slot - now)
                now = self._next_slot
            self._next_slot = now + self._interval


async def run_batch(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[Optional[str]]],
    requests_per_second: float,
    clock: ClockPort,
    key: Callable[[T], str] = lambda item: item.sku,
    logger: Optional[logging.Logger] = None
) -> BatchReport:
    """항목별 요청을 동시에 실행하고 결과를 모은다

    한 항목의 실패는 다른 항목의 처리/보고를 막지 않는다. worker 는
    성공 시 마켓 식별자(없으면 None)를 반환한다.
    """
    log = logger or logging.getLogger(__name__)
    semaphore = asyncio.Semaphore(max(1, math.ceil(requests_per_second)))
    pacer = RequestPacer(requests_per_second, clock)

    async def run_one(item: T):
        async with semaphore:
            await pacer.wait()
            try:
                return key(item), True, await worker(item)
            except MarketplaceError as e:
                log.error(f"배치 항목 처리 실패 {key(item)}: {e.message}")
                return key(item), False, e.message
            except Exception as e:
                log.error(f"배치 항목 처리 중 예기치 않은 오류 {key(item)}: {e}")
                return key(item), False, str(e) or e.__class__.__name__

    outcomes = await asyncio.gather(*(run_one(item) for item in items))

    # 입력 순서대로 보고
    report = BatchReport()
    for sku, succeeded, value in outcomes:
        if succeeded:
            report.add_success(sku, external_id=value)
        else:
            report.add_failure(sku, value)
    return report
