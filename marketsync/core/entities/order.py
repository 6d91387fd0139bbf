"""주문 도메인 엔티티"""
import logging
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Mapping
from datetime import datetime
from enum import Enum

from marketsync.core.exceptions import ValidationError


class OrderStatus(Enum):
    """공통 주문 상태"""
    PENDING = "pending"          # 주문 대기
    CONFIRMED = "confirmed"      # 주문 확인됨
    SHIPPED = "shipped"          # 발송됨
    DELIVERED = "delivered"      # 배송 완료
    CANCELLED = "cancelled"      # 취소됨

    def is_terminal(self) -> bool:
        """종료 상태 여부"""
        return self in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)

    def can_transition_to(self, target: "OrderStatus") -> bool:
        """상태 전이 가능 여부

        pending -> confirmed -> shipped -> delivered 순으로만 전진하며,
        cancelled 는 종료 상태가 아닌 모든 상태에서 도달 가능하다.
        """
        if self.is_terminal():
            return False
        if target == OrderStatus.CANCELLED:
            return True
        return _FORWARD_ORDER.index(target) > _FORWARD_ORDER.index(self)


_FORWARD_ORDER = [
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
]


def normalize_order_status(
    status_table: Mapping[str, OrderStatus],
    native_status: Optional[str],
    marketplace: str,
    logger: Optional[logging.Logger] = None
) -> OrderStatus:
    """마켓 고유 주문 상태를 공통 상태로 변환

    알 수 없는 상태는 예외 없이 PENDING 으로 처리한다.
    """
    if native_status is not None and native_status in status_table:
        return status_table[native_status]

    (logger or logging.getLogger(__name__)).warning(
        f"unrecognized status from {marketplace}: {native_status!r} -> pending",
        extra={'marketplace': marketplace, 'native_status': native_status}
    )
    return OrderStatus.PENDING


@dataclass
class Address:
    """배송/청구 주소"""
    name: str
    address1: str
    city: str
    state: str
    postal_code: str
    country: str
    address2: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class OrderItem:
    """주문 상품"""
    sku: str
    title: str
    quantity: int
    price: float
    external_id: Optional[str] = None

    def __post_init__(self):
        if self.quantity <= 0:
            raise ValidationError(f"Order item quantity must be positive: {self.sku}")
        if self.price < 0:
            raise ValidationError(f"Order item price must not be negative: {self.sku}")

    def calculate_total(self) -> float:
        """상품 총 금액 계산"""
        return self.quantity * self.price


@dataclass
class ShipmentTracking:
    """발송 정보"""
    carrier: str
    tracking_number: str
    shipped_at: Optional[datetime] = None
    shipping_method: Optional[str] = None


@dataclass
class MarketplaceOrder:
    """마켓 공통 주문"""
    id: str
    external_id: str
    status: OrderStatus
    total_amount: float
    currency: str
    created_at: datetime
    updated_at: datetime
    items: List[OrderItem] = field(default_factory=list)
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None

    def get_item_count(self) -> int:
        """주문 상품 수량 합계"""
        return sum(item.quantity for item in self.items)

    def get_items_by_sku(self) -> Dict[str, OrderItem]:
        return {item.sku: item for item in self.items}
