"""마켓 커넥터 팩토리 포트 (인터페이스)"""
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional, Union

from marketsync.core.entities.credentials import MarketplaceCredentials, MarketplaceSettings
from marketsync.core.ports.market_port import MarketPort, MarketplaceInfo, MarketType
from marketsync.shared.config import Settings


class ConnectorFactoryPort(ABC):
    """유즈케이스가 커넥터를 얻는 인터페이스

    config 는 연동별 설정의 기본값으로 쓰인다.
    """

    config: Settings

    @abstractmethod
    def create_connector(
        self,
        marketplace: Union[MarketType, str],
        credentials: Union[MarketplaceCredentials, Mapping[str, Any]],
        settings: Union[MarketplaceSettings, Mapping[str, Any], None] = None
    ) -> MarketPort:
        """인증 정보 검증 후 커넥터 생성"""
        pass

    @abstractmethod
    def get_marketplace_info(self, marketplace: Union[MarketType, str]) -> MarketplaceInfo:
        pass
