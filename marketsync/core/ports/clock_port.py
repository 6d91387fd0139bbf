"""시간 포트 (인터페이스)"""
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Optional


class ClockPort(ABC):
    """시간 및 대기 인터페이스"""

    @abstractmethod
    def now(self) -> datetime:
        """현재 시간 반환 (UTC)"""
        pass

    @abstractmethod
    def monotonic(self) -> float:
        """단조 증가 시간(초) 반환"""
        pass

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        """비동기 대기"""
        pass

    def is_expired(self, expire_at: Optional[datetime], buffer_seconds: int = 0) -> bool:
        """토큰/세션이 만료되었는지 확인"""
        if not expire_at:
            return False
        return self.now() + timedelta(seconds=buffer_seconds) >= expire_at
