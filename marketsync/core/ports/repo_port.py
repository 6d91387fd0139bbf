"""연동 저장소 포트 (인터페이스)"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from marketsync.core.entities.credentials import MarketplaceCredentials, MarketplaceSettings
from marketsync.core.entities.listing import ProductListing
from marketsync.core.entities.order import MarketplaceOrder
from marketsync.core.entities.sync_result import SyncResult
from marketsync.core.ports.market_port import MarketType


@dataclass
class MarketplaceConnection:
    """테넌트별 마켓 연동 정보"""
    id: str
    tenant_id: str
    market_type: MarketType
    credentials: MarketplaceCredentials
    settings: MarketplaceSettings = field(default_factory=MarketplaceSettings)
    is_active: bool = True
    last_synced_at: Optional[datetime] = None
    # 주문 조회 기준점 (리스팅/재고/가격 동기화와 별도)
    last_orders_synced_at: Optional[datetime] = None


class ConnectionRepositoryPort(ABC):
    """연동 저장소 인터페이스 (호출자가 소유)"""

    @abstractmethod
    async def get_connection(self, connection_id: str) -> Optional[MarketplaceConnection]:
        """연동 정보 조회"""
        pass

    @abstractmethod
    async def get_known_listings(self, connection_id: str) -> List[ProductListing]:
        """마지막으로 동기화된 리스팅 조회"""
        pass

    @abstractmethod
    async def save_listings(self, connection_id: str, listings: List[ProductListing]) -> None:
        pass

    @abstractmethod
    async def save_orders(self, connection_id: str, orders: List[MarketplaceOrder]) -> None:
        pass

    @abstractmethod
    async def record_sync_result(self, connection_id: str, operation: str, result: SyncResult) -> None:
        """동기화 결과 기록"""
        pass

    @abstractmethod
    async def update_last_synced(self, connection_id: str, synced_at: datetime) -> None:
        pass

    @abstractmethod
    async def update_orders_synced(self, connection_id: str, synced_at: datetime) -> None:
        """다음 주문 조회의 시작 시각 저장"""
        pass
