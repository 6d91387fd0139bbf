"""마켓 연동 포트 (인터페이스)"""
from abc import ABC, abstractmethod
from typing import List, Optional, Dict, Any, Union
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum

from marketsync.core.entities.listing import (
    ProductListing, ListingUpdate, InventoryUpdate, PriceUpdate
)
from marketsync.core.entities.order import MarketplaceOrder, OrderStatus, ShipmentTracking
from marketsync.core.entities.sync_result import SyncResult


class MarketType(Enum):
    """지원하는 마켓 타입"""
    AMAZON = "amazon"
    EBAY = "ebay"
    WALMART = "walmart"

    @classmethod
    def parse(cls, value: Union[str, "MarketType"]) -> Optional["MarketType"]:
        """문자열을 마켓 타입으로 변환 (대소문자 무시), 없으면 None"""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


@dataclass(frozen=True)
class RateLimits:
    """마켓 API 호출 제한"""
    requests_per_second: float
    requests_per_hour: int

    def fits_hourly_budget(self, request_count: int) -> bool:
        """요청 수가 시간당 한도 안에 들어가는지 확인"""
        return request_count <= self.requests_per_hour


@dataclass(frozen=True)
class MarketplaceInfo:
    """마켓 기능/제한 메타데이터"""
    marketplace: MarketType
    name: str
    description: str
    required_credentials: List[str]
    features: List[str]
    rate_limits: RateLimits
    region: Optional[str] = None
    environment: Optional[str] = None

    def with_connection(self, region: Optional[str], environment: str) -> "MarketplaceInfo":
        return replace(self, region=region, environment=environment)

    def supports(self, feature: str) -> bool:
        return feature in self.features


@dataclass
class ConnectionTestResult:
    """연결 테스트 결과 (인증과 권한을 분리해서 보고)"""
    authenticated: bool
    authorized: Optional[bool] = None  # 인증 실패 시 확인하지 않음
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    duration_ms: float = 0.0
    tested_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.authenticated and bool(self.authorized)


class MarketPort(ABC):
    """마켓 연동 인터페이스"""

    @abstractmethod
    async def authenticate(self) -> bool:
        """인증 정보 검증 및 토큰 발급 (예상된 실패는 False)"""
        pass

    @abstractmethod
    async def get_listings(self) -> List[ProductListing]:
        """전체 리스팅 조회 (페이지네이션 통합)"""
        pass

    @abstractmethod
    async def create_listing(self, listing: ProductListing) -> SyncResult:
        """리스팅 생성"""
        pass

    @abstractmethod
    async def update_listing(self, listing: ListingUpdate) -> SyncResult:
        """리스팅 수정"""
        pass

    @abstractmethod
    async def delete_listing(self, external_id: str) -> SyncResult:
        """리스팅 삭제"""
        pass

    @abstractmethod
    async def get_orders(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[MarketplaceOrder]:
        """주문 조회"""
        pass

    @abstractmethod
    async def update_order_status(
        self,
        external_id: str,
        status: Union[OrderStatus, str],
        tracking: Optional[ShipmentTracking] = None
    ) -> SyncResult:
        """주문 상태 변경"""
        pass

    @abstractmethod
    async def update_inventory(self, updates: List[InventoryUpdate]) -> SyncResult:
        """재고 일괄 수정 (항목별 결과 보고)"""
        pass

    @abstractmethod
    async def update_pricing(self, updates: List[PriceUpdate]) -> SyncResult:
        """가격 일괄 수정 (항목별 결과 보고)"""
        pass

    @abstractmethod
    def get_marketplace_info(self) -> MarketplaceInfo:
        """마켓 기능/제한 정보"""
        pass

    @abstractmethod
    async def test_connection(self) -> ConnectionTestResult:
        """인증 및 권한 연결 테스트"""
        pass

    @abstractmethod
    async def aclose(self) -> None:
        """HTTP 리소스 정리"""
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
