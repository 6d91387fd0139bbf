"""마켓 인증 정보 및 연동 설정"""
from typing import Optional, List, Literal, Union
from datetime import datetime, timedelta

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from marketsync.shared.config import Settings


class MarketplaceCredentials(BaseModel):
    """마켓 공통 인증 정보 (저장용 상위 집합)

    필드명은 저장된 문서의 camelCase 키(apiKey, sellerId ...)로도 검증된다.
    생성 후에는 변경할 수 없으며, 키가 바뀌면 커넥터를 새로 만들어야 한다.
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        hide_input_in_errors=True
    )

    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    seller_id: Optional[str] = None
    marketplace_id: Optional[str] = None
    region: Optional[str] = None

    def get_field(self, alias: str) -> Optional[str]:
        """camelCase 별칭으로 값 조회"""
        for name, info in type(self).model_fields.items():
            if info.alias == alias or name == alias:
                return getattr(self, name)
        return None

    def missing_fields(self, required: List[str]) -> List[str]:
        """누락되었거나 빈 필수 항목 목록"""
        missing = []
        for alias in required:
            value = self.get_field(alias)
            if value is None or not str(value).strip():
                missing.append(alias)
        return missing

    def __repr__(self) -> str:
        present = [name for name in type(self).model_fields if getattr(self, name)]
        return f"MarketplaceCredentials(fields={present})"

    __str__ = __repr__


class _ConnectorCredentials(BaseModel):
    model_config = ConfigDict(frozen=True, hide_input_in_errors=True)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(marketplace={getattr(self, 'marketplace', None)!r})"

    __str__ = __repr__


class AmazonCredentials(_ConnectorCredentials):
    """Amazon SP-API 인증 정보 (LWA client id/secret)"""
    marketplace: Literal["amazon"] = "amazon"
    client_id: str
    client_secret: str
    seller_id: str
    marketplace_id: str
    refresh_token: Optional[str] = None
    access_token: Optional[str] = None
    region: str = "us-east-1"


class EbayCredentials(_ConnectorCredentials):
    """eBay REST API 인증 정보 (App ID / Cert ID)"""
    marketplace: Literal["ebay"] = "ebay"
    client_id: str
    client_secret: str
    seller_id: str
    marketplace_id: str  # 예: EBAY_US
    refresh_token: Optional[str] = None
    access_token: Optional[str] = None


class WalmartCredentials(_ConnectorCredentials):
    """Walmart Marketplace 인증 정보"""
    marketplace: Literal["walmart"] = "walmart"
    client_id: str
    client_secret: str
    marketplace_id: str = "US"


ConnectorCredentials = Union[AmazonCredentials, EbayCredentials, WalmartCredentials]


def to_amazon_credentials(credentials: MarketplaceCredentials) -> AmazonCredentials:
    return AmazonCredentials(
        client_id=credentials.api_key,
        client_secret=credentials.api_secret,
        seller_id=credentials.seller_id,
        marketplace_id=credentials.marketplace_id,
        refresh_token=credentials.refresh_token,
        access_token=credentials.access_token,
        region=credentials.region or "us-east-1"
    )


def to_ebay_credentials(credentials: MarketplaceCredentials) -> EbayCredentials:
    return EbayCredentials(
        client_id=credentials.api_key,
        client_secret=credentials.api_secret,
        seller_id=credentials.seller_id,
        marketplace_id=credentials.marketplace_id,
        refresh_token=credentials.refresh_token,
        access_token=credentials.access_token
    )


def to_walmart_credentials(credentials: MarketplaceCredentials) -> WalmartCredentials:
    return WalmartCredentials(
        client_id=credentials.api_key,
        client_secret=credentials.api_secret,
        marketplace_id=credentials.marketplace_id or "US"
    )


class MarketplaceSettings(BaseModel):
    """연동별 운영 설정 (모든 항목 선택)"""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore"
    )

    auto_sync: Optional[bool] = None
    sync_interval: Optional[int] = Field(default=None, gt=0)  # 분
    price_update_threshold: Optional[float] = Field(default=None, ge=0)  # %
    inventory_update_threshold: Optional[int] = Field(default=None, ge=0)  # 수량
    error_retry_attempts: Optional[int] = Field(default=None, ge=1)
    timeout: Optional[float] = Field(default=None, gt=0)  # 초

    def resolved(self, defaults: Settings) -> "MarketplaceSettings":
        """미설정 항목을 기본값으로 채운 설정 반환"""
        return MarketplaceSettings(
            auto_sync=self.auto_sync if self.auto_sync is not None else False,
            sync_interval=self.sync_interval or defaults.default_sync_interval,
            price_update_threshold=self.price_update_threshold or 0.0,
            inventory_update_threshold=self.inventory_update_threshold or 0,
            error_retry_attempts=self.error_retry_attempts or defaults.max_retries,
            timeout=self.timeout or defaults.request_timeout
        )

    def is_sync_due(self, last_synced_at: Optional[datetime], now: datetime) -> bool:
        """자동 동기화 실행 시점인지 확인"""
        if not self.auto_sync:
            return False
        if last_synced_at is None:
            return True
        interval = self.sync_interval or 0
        return now - last_synced_at >= timedelta(minutes=interval)
