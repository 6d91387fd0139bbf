"""상품 리스팅 도메인 엔티티"""
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional
from enum import Enum

from marketsync.core.exceptions import ValidationError


class ListingStatus(Enum):
    """리스팅 상태"""
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"
    ERROR = "error"


def _check_currency(currency: str) -> None:
    if not currency or len(currency) != 3 or not currency.isalpha():
        raise ValidationError(f"Invalid currency code: {currency!r}")


def _check_quantity(quantity: Optional[int]) -> None:
    if quantity is not None and (not isinstance(quantity, int) or quantity < 0):
        raise ValidationError(f"Quantity must be a non-negative integer: {quantity!r}")


def _check_price(price: Optional[float]) -> None:
    if price is not None and price < 0:
        raise ValidationError(f"Price must not be negative: {price!r}")


@dataclass
class ProductListing:
    """마켓 공통 상품 리스팅"""
    id: str
    sku: str
    title: str
    price: float
    currency: str
    quantity: int
    status: ListingStatus = ListingStatus.PENDING
    description: Optional[str] = None
    external_id: Optional[str] = None  # 마켓 생성 후 부여
    attributes: Dict[str, Any] = field(default_factory=dict)
    images: List[str] = field(default_factory=list)
    category: Optional[str] = None
    brand: Optional[str] = None

    def __post_init__(self):
        if not self.sku:
            raise ValidationError("Listing sku is required")
        _check_currency(self.currency)
        _check_quantity(self.quantity)
        _check_price(self.price)
        if isinstance(self.status, str):
            self.status = ListingStatus(self.status)

    def is_published(self) -> bool:
        """마켓에 등록된 리스팅인지 확인"""
        return bool(self.external_id)


@dataclass
class ListingUpdate:
    """리스팅 부분 수정 요청"""
    sku: str
    title: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    currency: Optional[str] = None
    quantity: Optional[int] = None
    status: Optional[ListingStatus] = None
    external_id: Optional[str] = None

    def __post_init__(self):
        if not self.sku:
            raise ValidationError("Listing update sku is required")
        _check_quantity(self.quantity)
        _check_price(self.price)
        if self.currency is not None:
            _check_currency(self.currency)
        if isinstance(self.status, str):
            self.status = ListingStatus(self.status)

    def has_changes(self) -> bool:
        """변경할 필드가 있는지 확인"""
        return any(
            value is not None
            for value in (self.title, self.description, self.price, self.quantity, self.status)
        )


@dataclass
class InventoryUpdate:
    """재고 수정 요청"""
    sku: str
    quantity: int
    external_id: Optional[str] = None

    def __post_init__(self):
        if not self.sku:
            raise ValidationError("Inventory update sku is required")
        _check_quantity(self.quantity)


@dataclass
class PriceUpdate:
    """가격 수정 요청"""
    sku: str
    price: float
    currency: str
    external_id: Optional[str] = None

    def __post_init__(self):
        if not self.sku:
            raise ValidationError("Price update sku is required")
        _check_price(self.price)
        _check_currency(self.currency)
