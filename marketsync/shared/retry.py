"""재시도 유틸리티 (선형 백오프)"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

T = TypeVar('T')

_default_logger = logging.getLogger(__name__)


async def retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    *,
    should_retry: Optional[Callable[[Exception], bool]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    logger: Optional[logging.Logger] = None,
    description: str = "operation"
) -> T:
    """비동기 작업을 최대 max_attempts 회 실행

    실패 시 initial_delay * attempt 초 대기 후 재시도하고, 모든 시도가
    실패하면 마지막 예외를 그대로 전달한다. should_retry 가 False 를
    반환하는 예외는 즉시 전달된다.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    log = logger or _default_logger
    last_error: Optional[Exception] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            last_error = e
            log.warning(
                f"{description} 실패 (attempt {attempt}/{max_attempts}): {e}",
                extra={'attempt': attempt, 'max_attempts': max_attempts}
            )

            if should_retry is not None and not should_retry(e):
                raise

            if attempt < max_attempts:
                delay = initial_delay * attempt
                # 429 응답의 Retry-After 가 더 길면 그 값을 따른다
                retry_after = getattr(e, 'retry_after', None)
                if retry_after:
                    delay = max(delay, retry_after)
                await sleep(delay)

    raise last_error
