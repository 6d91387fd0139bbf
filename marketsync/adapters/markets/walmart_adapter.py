"""Walmart Marketplace API 마켓 어댑터"""
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Union
from urllib.parse import parse_qsl, quote

import httpx

from marketsync.adapters.auth.token_store import TokenInfo, TokenManager
from marketsync.adapters.markets.batch import run_batch
from marketsync.adapters.markets.common import (
    coerce_order_status, format_timestamp, map_records, operation_failed,
    parse_timestamp, run_connection_test, to_float, to_int, token_from_response
)
from marketsync.adapters.markets.http_client import MarketHttpClient
from marketsync.adapters.persistence.clock_adapter import ClockAdapter
from marketsync.core.entities.credentials import MarketplaceSettings, WalmartCredentials
from marketsync.core.entities.listing import (
    InventoryUpdate, ListingStatus, ListingUpdate, PriceUpdate, ProductListing
)
from marketsync.core.entities.order import (
    Address, MarketplaceOrder, OrderItem, OrderStatus, ShipmentTracking,
    normalize_order_status
)
from marketsync.core.entities.sync_result import SyncResult
from marketsync.core.ports.clock_port import ClockPort
from marketsync.core.ports.market_port import (
    ConnectionTestResult, MarketPort, MarketplaceInfo, MarketType, RateLimits
)
from marketsync.shared.config import Settings, get_settings
from marketsync.shared.logging import get_logger, log_marketplace_operation

MARKETPLACE = MarketType.WALMART.value

WALMART_HOSTS = {
    "production": "https://marketplace.walmartapis.com/v3",
    "sandbox": "https://sandbox.walmartapis.com/v3",
}

SERVICE_NAME = "Walmart Marketplace"
PAGE_SIZE = 50
ORDER_PAGE_SIZE = 100

WALMART_ORDER_STATUS: Dict[str, OrderStatus] = {
    "Created": OrderStatus.PENDING,
    "Acknowledged": OrderStatus.CONFIRMED,
    "Shipped": OrderStatus.SHIPPED,
    "Delivered": OrderStatus.DELIVERED,
    "Cancelled": OrderStatus.CANCELLED,
}

WALMART_LISTING_STATUS: Dict[str, ListingStatus] = {
    "PUBLISHED": ListingStatus.ACTIVE,
    "UNPUBLISHED": ListingStatus.INACTIVE,
    "READY_TO_PUBLISH": ListingStatus.PENDING,
    "IN_PROGRESS": ListingStatus.PENDING,
    "STAGE": ListingStatus.PENDING,
    "SYSTEM_PROBLEM": ListingStatus.ERROR,
}

WALMART_INFO = MarketplaceInfo(
    marketplace=MarketType.WALMART,
    name="Walmart",
    description="Walmart Marketplace API (Items, Inventory, Prices, Orders)",
    required_credentials=["apiKey", "apiSecret"],
    features=["listings", "orders", "inventory", "pricing", "order_status"],
    rate_limits=RateLimits(requests_per_second=1, requests_per_hour=3600)
)


def walmart_listing_status(item: Mapping[str, Any], logger: logging.Logger) -> ListingStatus:
    if item.get("lifecycleStatus") == "RETIRED":
        return ListingStatus.INACTIVE
    published = item.get("publishedStatus")
    if published in WALMART_LISTING_STATUS:
        return WALMART_LISTING_STATUS[published]
    logger.warning(
        f"unrecognized status from {MARKETPLACE}: {published!r} -> pending",
        extra={'marketplace': MARKETPLACE, 'native_status': published}
    )
    return ListingStatus.PENDING


def walmart_native_order_status(record: Mapping[str, Any]) -> Optional[str]:
    """주문 상태 (주문 단위 상태가 없으면 첫 주문 라인 상태)"""
    if record.get("orderStatus"):
        return record["orderStatus"]
    for line in _order_lines(record):
        statuses = (line.get("orderLineStatuses") or {}).get("orderLineStatus") or []
        if statuses:
            return statuses[0].get("status")
    return None


def _order_lines(record: Mapping[str, Any]) -> List[Dict[str, Any]]:
    return (record.get("orderLines") or {}).get("orderLine") or []


def _line_quantity(line: Mapping[str, Any]) -> int:
    return to_int((line.get("orderLineQuantity") or {}).get("amount"))


def _cursor_params(cursor: str) -> Dict[str, str]:
    """nextCursor (?limit=..&soIndex=..) 를 쿼리 파라미터로 변환"""
    return dict(parse_qsl(cursor.lstrip("?")))


def _epoch_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class WalmartAdapter(MarketPort):
    """Walmart Marketplace API 어댑터

    Walmart API 는 판매자 SKU 로 상품을 식별하므로 external_id 는 SKU 이다.
    wpid 는 attributes 에 보관한다.
    """

    SUPPORTED_STATUS_UPDATES = (OrderStatus.CONFIRMED, OrderStatus.SHIPPED, OrderStatus.CANCELLED)

    def __init__(
        self,
        credentials: WalmartCredentials,
        settings: Optional[MarketplaceSettings] = None,
        *,
        config: Optional[Settings] = None,
        clock: Optional[ClockPort] = None,
        environment: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.credentials = credentials
        self.config = config or get_settings()
        self.settings = (settings or MarketplaceSettings()).resolved(self.config)
        self.environment = environment or self.config.environment
        self.clock = clock or ClockAdapter()
        self.logger = logger if logger is not None else get_logger(__name__)

        default_headers = {
            "WM_SVC.NAME": SERVICE_NAME,
            "Accept": "application/json",
            "User-Agent": self.config.user_agent,
        }
        if credentials.marketplace_id.upper() != "US":
            default_headers["WM_MARKET"] = credentials.marketplace_id.lower()

        self.token_manager = TokenManager(
            self._fetch_token,
            self.clock,
            expiry_skew_seconds=self.config.token_expiry_skew_seconds,
            marketplace=MARKETPLACE,
            logger=self.logger
        )
        self.http = MarketHttpClient(
            MARKETPLACE,
            WALMART_HOSTS.get(self.environment, WALMART_HOSTS["production"]),
            self.token_manager,
            lambda token: {"WM_SEC.ACCESS_TOKEN": token},
            self.settings,
            self.clock,
            retry_initial_delay=self.config.retry_initial_delay,
            default_headers=default_headers,
            # 요청마다 새 correlation id
            request_headers=lambda: {"WM_QOS.CORRELATION_ID": str(uuid.uuid4())},
            transport=transport,
            logger=self.logger
        )

    async def aclose(self) -> None:
        await self.http.aclose()

    def get_marketplace_info(self) -> MarketplaceInfo:
        return WALMART_INFO.with_connection(self.credentials.marketplace_id, self.environment)

    async def _fetch_token(self) -> TokenInfo:
        """client_credentials 토큰 발급 (Basic 인증)"""
        body = await self.http.fetch_token(
            "/token",
            data={"grant_type": "client_credentials"},
            headers={"WM_QOS.CORRELATION_ID": str(uuid.uuid4())},
            auth=httpx.BasicAuth(self.credentials.client_id, self.credentials.client_secret)
        )
        return token_from_response(body, self.clock)

    async def authenticate(self) -> bool:
        """Walmart 인증"""
        try:
            await self.token_manager.get_valid_token()
            log_marketplace_operation(self.logger, MARKETPLACE, "authenticate")
            return True
        except Exception as e:
            self.logger.error(f"Walmart 인증 실패: {e}")
            return False

    async def test_connection(self) -> ConnectionTestResult:
        """토큰 발급 후 상품 1건 조회로 권한 확인"""

        async def probe() -> Dict[str, Any]:
            body = await self.http.request_json("GET", "/items", params={"limit": 1})
            return {'total_items': body.get("totalItems")}

        return await run_connection_test(
            MARKETPLACE,
            self.authenticate,
            probe,
            self.clock,
            {'marketplace_id': self.credentials.marketplace_id, 'environment': self.environment},
            self.logger
        )

    # 리스팅

    async def get_listings(self) -> List[ProductListing]:
        """전체 상품 조회 (nextCursor 페이지네이션) 후 재고 결합"""
        records: List[Dict[str, Any]] = []
        params: Dict[str, Any] = {"limit": PAGE_SIZE, "nextCursor": "*"}
        while True:
            body = await self.http.request_json("GET", "/items", params=params)
            page = body.get("ItemResponse") or []
            records.extend(page)
            next_cursor = body.get("nextCursor")
            if not next_cursor or not page:
                break
            params = {"limit": PAGE_SIZE, "nextCursor": next_cursor}

        quantities = await self._fetch_inventory()
        for record in records:
            record["quantity"] = quantities.get(record.get("sku"), 0)

        listings = map_records(records, self._to_listing, MARKETPLACE, "listing", self.logger)
        log_marketplace_operation(self.logger, MARKETPLACE, "get_listings", count=len(listings))
        return listings

    async def _fetch_inventory(self) -> Dict[str, int]:
        """SKU 별 판매 가능 수량 (모든 출고지 합계)"""
        quantities: Dict[str, int] = {}
        params: Dict[str, Any] = {"limit": PAGE_SIZE}
        while True:
            body = await self.http.request_json("GET", "/inventories", params=params)
            for inventory in (body.get("elements") or {}).get("inventories") or []:
                quantities[inventory.get("sku")] = sum(
                    to_int((node.get("availToSellQty") or {}).get("amount"))
                    for node in inventory.get("nodes") or []
                )
            next_cursor = (body.get("meta") or {}).get("nextCursor")
            if not next_cursor:
                return quantities
            params = {"limit": PAGE_SIZE, "nextCursor": next_cursor}

    def _to_listing(self, item: Mapping[str, Any]) -> ProductListing:
        sku = item["sku"]
        price = item.get("price") or {}
        return ProductListing(
            id=f"walmart-{sku}",
            sku=sku,
            title=item.get("productName") or sku,
            price=to_float(price.get("amount")),
            currency=price.get("currency") or self.config.default_currency,
            quantity=to_int(item.get("quantity")),
            status=walmart_listing_status(item, self.logger),
            external_id=sku,
            category=item.get("productType"),
            attributes={
                'wpid': item.get("wpid"),
                'gtin': item.get("gtin"),
                'upc': item.get("upc"),
                'lifecycleStatus': item.get("lifecycleStatus"),
            }
        )

    async def _submit_feed(self, feed_type: str, payload: Dict[str, Any]) -> str:
        body = await self.http.request_json("POST", "/feeds", params={"feedType": feed_type}, json=payload)
        return body.get("feedId")

    async def _put_inventory(self, sku: str, quantity: int) -> None:
        await self.http.request(
            "PUT",
            "/inventory",
            params={"sku": sku},
            json={"sku": sku, "quantity": {"unit": "EACH", "amount": quantity}}
        )

    async def _put_price(self, sku: str, price: float, currency: str) -> None:
        await self.http.request(
            "PUT",
            "/price",
            json={
                "sku": sku,
                "pricing": [{
                    "currentPriceType": "BASE",
                    "currentPrice": {"currency": currency, "amount": price},
                }],
            }
        )

    async def create_listing(self, listing: ProductListing) -> SyncResult:
        """MP_ITEM 피드로 상품 등록 후 재고 설정"""
        feed_id = None
        try:
            orderable: Dict[str, Any] = {
                "sku": listing.sku,
                "productName": listing.title,
                "price": listing.price,
            }
            if listing.brand:
                orderable["brand"] = listing.brand
            visible: Dict[str, Any] = {}
            if listing.description:
                visible["shortDescription"] = listing.description
            if listing.images:
                visible["mainImageUrl"] = listing.images[0]
                visible["productSecondaryImageURL"] = listing.images[1:]

            feed_id = await self._submit_feed("MP_ITEM", {
                "MPItemFeedHeader": {
                    "version": "4.2",
                    "sellingChannel": "marketplace",
                    "processMode": "REPLACE",
                    "locale": "en",
                    "subset": "EXTERNAL",
                },
                "MPItem": [{
                    "Orderable": orderable,
                    "Visible": {listing.category or "Default": visible},
                }],
            })
            await self._put_inventory(listing.sku, listing.quantity)

            log_marketplace_operation(self.logger, MARKETPLACE, "create_listing", sku=listing.sku, feed_id=feed_id)
            return SyncResult.ok(
                "Listing submitted successfully",
                data={'externalId': listing.sku, 'feedId': feed_id, 'status': ListingStatus.PENDING.value}
            )
        except Exception as e:
            result = operation_failed(self.logger, MARKETPLACE, "create_listing", "Failed to create listing", e)
            if feed_id:
                result.message = "Listing submitted but inventory update failed"
                result.data = {'externalId': listing.sku, 'feedId': feed_id}
            return result

    async def update_listing(self, listing: ListingUpdate) -> SyncResult:
        """가격, 재고, 상품 정보 수정 (게시 상태 변경은 지원하지 않음)"""
        if not listing.has_changes():
            return SyncResult.ok("No updates needed", data={'externalId': listing.sku})
        if listing.status is not None:
            return SyncResult.fail("Walmart does not support changing listing status")

        try:
            data: Dict[str, Any] = {'externalId': listing.sku}
            if listing.price is not None:
                await self._put_price(listing.sku, listing.price, listing.currency or self.config.default_currency)
            if listing.quantity is not None:
                await self._put_inventory(listing.sku, listing.quantity)
            if listing.title is not None or listing.description is not None:
                orderable: Dict[str, Any] = {"sku": listing.sku}
                if listing.title is not None:
                    orderable["productName"] = listing.title
                item: Dict[str, Any] = {"Orderable": orderable}
                if listing.description is not None:
                    item["Visible"] = {"shortDescription": listing.description}
                data['feedId'] = await self._submit_feed("MP_MAINTENANCE", {
                    "MPItemFeedHeader": {
                        "version": "1.5",
                        "sellingChannel": "mpmaintenance",
                        "processMode": "PARTIAL_UPDATE",
                        "locale": "en",
                        "subset": "EXTERNAL",
                    },
                    "MPItem": [item],
                })

            log_marketplace_operation(self.logger, MARKETPLACE, "update_listing", sku=listing.sku)
            return SyncResult.ok("Listing updated successfully", data=data)
        except Exception as e:
            return operation_failed(self.logger, MARKETPLACE, "update_listing", "Failed to update listing", e)

    async def delete_listing(self, external_id: str) -> SyncResult:
        """상품 retire (external_id 는 SKU)"""
        try:
            await self.http.request("DELETE", f"/items/{quote(external_id, safe='')}")
            log_marketplace_operation(self.logger, MARKETPLACE, "delete_listing", sku=external_id)
            return SyncResult.ok("Listing deleted successfully", data={'externalId': external_id})
        except Exception as e:
            return operation_failed(self.logger, MARKETPLACE, "delete_listing", "Failed to delete listing", e)

    async def update_inventory(self, updates: List[InventoryUpdate]) -> SyncResult:
        """재고 일괄 수정"""

        async def push(update: InventoryUpdate) -> str:
            await self._put_inventory(update.sku, update.quantity)
            return update.sku

        report = await run_batch(
            updates, push, WALMART_INFO.rate_limits.requests_per_second, self.clock, logger=self.logger
        )
        log_marketplace_operation(
            self.logger, MARKETPLACE, "update_inventory",
            succeeded=report.success_count, failed=report.failure_count
        )
        return report.to_sync_result("Inventory update")

    async def update_pricing(self, updates: List[PriceUpdate]) -> SyncResult:
        """가격 일괄 수정"""

        async def push(update: PriceUpdate) -> str:
            await self._put_price(update.sku, update.price, update.currency)
            return update.sku

        report = await run_batch(
            updates, push, WALMART_INFO.rate_limits.requests_per_second, self.clock, logger=self.logger
        )
        log_marketplace_operation(
            self.logger, MARKETPLACE, "update_pricing",
            succeeded=report.success_count, failed=report.failure_count
        )
        return report.to_sync_result("Price update")

    # 주문

    async def get_orders(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[MarketplaceOrder]:
        """주문 조회 (nextCursor 페이지네이션)"""
        params: Dict[str, Any] = {"limit": ORDER_PAGE_SIZE}
        if start_date:
            params["createdStartDate"] = format_timestamp(start_date)
        if end_date:
            params["createdEndDate"] = format_timestamp(end_date)

        records: List[Dict[str, Any]] = []
        while True:
            body = await self.http.request_json("GET", "/orders", params=params)
            page_list = body.get("list") or {}
            records.extend((page_list.get("elements") or {}).get("order") or [])
            next_cursor = (page_list.get("meta") or {}).get("nextCursor")
            if not next_cursor:
                break
            # 커서에 이전 필터가 모두 포함되어 있다
            params = _cursor_params(next_cursor)

        orders = map_records(records, self._to_order, MARKETPLACE, "order", self.logger)
        log_marketplace_operation(self.logger, MARKETPLACE, "get_orders", count=len(orders))
        return orders

    def _to_order(self, record: Mapping[str, Any]) -> MarketplaceOrder:
        order_id = record["purchaseOrderId"]
        shipping = record.get("shippingInfo") or {}
        postal = shipping.get("postalAddress")
        created_at = parse_timestamp(record.get("orderDate"), self.clock.now())

        items = []
        total = 0.0
        currency = None
        for line in _order_lines(record):
            quantity = _line_quantity(line)
            charges = (line.get("charges") or {}).get("charge") or []
            product_amount = 0.0
            for charge in charges:
                amount = charge.get("chargeAmount") or {}
                currency = currency or amount.get("currency")
                total += to_float(amount.get("amount"))
                total += to_float(((charge.get("tax") or {}).get("taxAmount") or {}).get("amount"))
                if charge.get("chargeType") == "PRODUCT":
                    product_amount += to_float(amount.get("amount"))
            if quantity <= 0:
                continue
            item = line.get("item") or {}
            items.append(OrderItem(
                sku=item.get("sku") or "",
                title=item.get("productName") or "",
                quantity=quantity,
                price=product_amount / quantity,
                external_id=str(line.get("lineNumber")) if line.get("lineNumber") is not None else None
            ))

        if (record.get("orderTotal") or {}).get("totalAmount") is not None:
            total = to_float(record["orderTotal"]["totalAmount"])

        return MarketplaceOrder(
            id=f"walmart-{order_id}",
            external_id=order_id,
            status=normalize_order_status(
                WALMART_ORDER_STATUS, walmart_native_order_status(record), MARKETPLACE, self.logger
            ),
            total_amount=total,
            currency=currency or self.config.default_currency,
            created_at=created_at,
            updated_at=created_at,
            items=items,
            customer_email=record.get("customerEmailId"),
            customer_name=(postal or {}).get("name"),
            shipping_address=self._to_address(postal, shipping.get("phone")) if postal else None
        )

    @staticmethod
    def _to_address(postal: Mapping[str, Any], phone: Optional[str]) -> Address:
        return Address(
            name=postal.get("name") or "",
            address1=postal.get("address1") or "",
            address2=postal.get("address2"),
            city=postal.get("city") or "",
            state=postal.get("state") or "",
            postal_code=postal.get("postalCode") or "",
            country=postal.get("country") or "",
            phone=phone
        )

    def _shipment_payload(self, lines: List[Dict[str, Any]], tracking: ShipmentTracking) -> Dict[str, Any]:
        shipped_at = tracking.shipped_at or self.clock.now()
        return {
            "orderShipment": {
                "orderLines": {
                    "orderLine": [
                        {
                            "lineNumber": str(line.get("lineNumber")),
                            "orderLineStatuses": {
                                "orderLineStatus": [{
                                    "status": "Shipped",
                                    "statusQuantity": {"unitOfMeasurement": "EACH", "amount": str(_line_quantity(line))},
                                    "trackingInfo": {
                                        "shipDateTime": _epoch_millis(shipped_at),
                                        "carrierName": {"carrier": tracking.carrier},
                                        "methodCode": tracking.shipping_method or "Standard",
                                        "trackingNumber": tracking.tracking_number,
                                    },
                                }]
                            },
                        }
                        for line in lines
                    ]
                }
            }
        }

    @staticmethod
    def _cancellation_payload(lines: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "orderCancellation": {
                "orderLines": {
                    "orderLine": [
                        {
                            "lineNumber": str(line.get("lineNumber")),
                            "orderLineStatuses": {
                                "orderLineStatus": [{
                                    "status": "Cancelled",
                                    "cancellationReason": "CUSTOMER_REQUESTED_SELLER_TO_CANCEL",
                                    "statusQuantity": {"unitOfMeasurement": "EACH", "amount": str(_line_quantity(line))},
                                }]
                            },
                        }
                        for line in lines
                    ]
                }
            }
        }

    async def update_order_status(
        self,
        external_id: str,
        status: Union[OrderStatus, str],
        tracking: Optional[ShipmentTracking] = None
    ) -> SyncResult:
        """주문 상태 변경 (확인, 발송, 취소)"""
        target = coerce_order_status(status)
        if target is None:
            return SyncResult.fail(f"Unknown order status: {status}")
        if target not in self.SUPPORTED_STATUS_UPDATES:
            return SyncResult.fail(f"Walmart does not support updating orders to {target.value}")
        if target == OrderStatus.SHIPPED and tracking is None:
            return SyncResult.fail("Tracking information is required to mark an order shipped")

        try:
            order_path = f"/orders/{quote(external_id, safe='')}"
            body = await self.http.request_json("GET", order_path)
            order = body.get("order") or body
            current = normalize_order_status(
                WALMART_ORDER_STATUS, walmart_native_order_status(order), MARKETPLACE, self.logger
            )
            if not current.can_transition_to(target):
                return SyncResult.fail(
                    f"Illegal order status transition: {current.value} -> {target.value}"
                )

            lines = _order_lines(order)
            if target == OrderStatus.CONFIRMED:
                await self.http.request("POST", f"{order_path}/acknowledge")
            elif target == OrderStatus.SHIPPED:
                await self.http.request("POST", f"{order_path}/shipping", json=self._shipment_payload(lines, tracking))
            else:
                await self.http.request("POST", f"{order_path}/cancel", json=self._cancellation_payload(lines))

            log_marketplace_operation(
                self.logger, MARKETPLACE, "update_order_status",
                order_id=external_id, status=target.value
            )
            return SyncResult.ok(
                "Order status updated successfully",
                data={'externalId': external_id, 'status': target.value}
            )
        except Exception as e:
            return operation_failed(
                self.logger, MARKETPLACE, "update_order_status", "Failed to update order status", e
            )
