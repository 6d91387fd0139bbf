"""eBay Sell API 마켓 어댑터"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Union
from urllib.parse import quote

import httpx

from marketsync.adapters.auth.token_store import TokenInfo, TokenManager
from marketsync.adapters.markets.batch import run_batch
from marketsync.adapters.markets.common import (
    coerce_order_status, format_timestamp, map_records, operation_failed,
    parse_timestamp, run_connection_test, to_float, to_int, token_from_response
)
from marketsync.adapters.markets.http_client import MarketHttpClient
from marketsync.adapters.persistence.clock_adapter import ClockAdapter
from marketsync.core.entities.credentials import EbayCredentials, MarketplaceSettings
from marketsync.core.entities.listing import (
    InventoryUpdate, ListingStatus, ListingUpdate, PriceUpdate, ProductListing
)
from marketsync.core.entities.order import (
    Address, MarketplaceOrder, OrderItem, OrderStatus, ShipmentTracking,
    normalize_order_status
)
from marketsync.core.entities.sync_result import SyncResult
from marketsync.core.exceptions import ExternalAPIError
from marketsync.core.ports.clock_port import ClockPort
from marketsync.core.ports.market_port import (
    ConnectionTestResult, MarketPort, MarketplaceInfo, MarketType, RateLimits
)
from marketsync.shared.config import Settings, get_settings
from marketsync.shared.logging import get_logger, log_marketplace_operation

MARKETPLACE = MarketType.EBAY.value

EBAY_HOSTS = {
    "production": "https://api.ebay.com",
    "sandbox": "https://api.sandbox.ebay.com",
}

TOKEN_PATH = "/identity/v1/oauth2/token"
INVENTORY_API = "/sell/inventory/v1"
FULFILLMENT_API = "/sell/fulfillment/v1"

USER_SCOPES = " ".join([
    "https://api.ebay.com/oauth/api_scope/sell.inventory",
    "https://api.ebay.com/oauth/api_scope/sell.fulfillment",
    "https://api.ebay.com/oauth/api_scope/sell.account",
])
APPLICATION_SCOPE = "https://api.ebay.com/oauth/api_scope"

PAGE_SIZE = 100
ORDER_PAGE_SIZE = 50

# Trading API(OrderStatus) 와 Fulfillment API(orderFulfillmentStatus) 상태를 함께 처리
EBAY_ORDER_STATUS: Dict[str, OrderStatus] = {
    "Active": OrderStatus.PENDING,
    "Pending": OrderStatus.PENDING,
    "Incomplete": OrderStatus.CONFIRMED,
    "InProcess": OrderStatus.CONFIRMED,
    "NOT_STARTED": OrderStatus.CONFIRMED,
    "Shipped": OrderStatus.SHIPPED,
    "IN_PROGRESS": OrderStatus.SHIPPED,
    "FULFILLED": OrderStatus.SHIPPED,
    "Complete": OrderStatus.DELIVERED,
    "Completed": OrderStatus.DELIVERED,
    "Cancelled": OrderStatus.CANCELLED,
    "CancelPending": OrderStatus.CANCELLED,
    "Inactive": OrderStatus.CANCELLED,
}

EBAY_LISTING_STATUS: Dict[str, ListingStatus] = {
    "ACTIVE": ListingStatus.ACTIVE,
    "OUT_OF_STOCK": ListingStatus.INACTIVE,
    "INACTIVE": ListingStatus.INACTIVE,
    "ENDED": ListingStatus.INACTIVE,
    "EBAY_ENDED": ListingStatus.INACTIVE,
    "NOT_LISTED": ListingStatus.PENDING,
}

EBAY_INFO = MarketplaceInfo(
    marketplace=MarketType.EBAY,
    name="eBay",
    description="eBay Sell APIs (Inventory, Fulfillment, Account)",
    required_credentials=["apiKey", "apiSecret", "sellerId", "marketplaceId"],
    features=["listings", "orders", "inventory", "pricing", "order_status"],
    rate_limits=RateLimits(requests_per_second=5, requests_per_hour=5000)
)


def ebay_timestamp(value: datetime) -> str:
    """eBay 필터 형식 (밀리초 포함 UTC)"""
    return format_timestamp(value)[:-1] + ".000Z"


def ebay_native_order_status(record: Mapping[str, Any]) -> Optional[str]:
    """주문의 마켓 고유 상태 (취소 승인 상태 우선)"""
    if (record.get("cancelStatus") or {}).get("cancelState") == "CANCELED":
        return "Cancelled"
    return record.get("orderStatus") or record.get("orderFulfillmentStatus")


def ebay_listing_status(offer: Optional[Mapping[str, Any]]) -> ListingStatus:
    if not offer or offer.get("status") != "PUBLISHED":
        return ListingStatus.PENDING
    listing_status = (offer.get("listing") or {}).get("listingStatus")
    return EBAY_LISTING_STATUS.get(listing_status, ListingStatus.ACTIVE)


class EbayAdapter(MarketPort):
    """eBay Sell API 어댑터

    리스팅은 Inventory API 의 inventory item + offer 로 관리한다.
    external_id 는 offerId 이며, 게시된 listingId 는 attributes 에 보관한다.
    """

    SUPPORTED_STATUS_UPDATES = (OrderStatus.SHIPPED, OrderStatus.CANCELLED)
    SUPPORTED_LISTING_STATUSES = (ListingStatus.ACTIVE, ListingStatus.INACTIVE)

    def __init__(
        self,
        credentials: EbayCredentials,
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

        initial_token = TokenInfo(credentials.access_token) if credentials.access_token else None
        self.token_manager = TokenManager(
            self._fetch_token,
            self.clock,
            expiry_skew_seconds=self.config.token_expiry_skew_seconds,
            initial_token=initial_token,
            marketplace=MARKETPLACE,
            logger=self.logger
        )
        self.http = MarketHttpClient(
            MARKETPLACE,
            EBAY_HOSTS.get(self.environment, EBAY_HOSTS["production"]),
            self.token_manager,
            lambda token: {"Authorization": f"Bearer {token}"},
            self.settings,
            self.clock,
            retry_initial_delay=self.config.retry_initial_delay,
            default_headers={
                "User-Agent": self.config.user_agent,
                "Accept": "application/json",
                "X-EBAY-C-MARKETPLACE-ID": credentials.marketplace_id,
            },
            transport=transport,
            logger=self.logger
        )

    async def aclose(self) -> None:
        await self.http.aclose()

    def get_marketplace_info(self) -> MarketplaceInfo:
        return EBAY_INFO.with_connection(self.credentials.marketplace_id, self.environment)

    async def _fetch_token(self) -> TokenInfo:
        """OAuth 토큰 발급 (Basic 인증 + form body)"""
        if self.credentials.refresh_token:
            data = {
                "grant_type": "refresh_token",
                "refresh_token": self.credentials.refresh_token,
                "scope": USER_SCOPES,
            }
        else:
            data = {"grant_type": "client_credentials", "scope": APPLICATION_SCOPE}

        body = await self.http.fetch_token(
            TOKEN_PATH,
            data=data,
            auth=httpx.BasicAuth(self.credentials.client_id, self.credentials.client_secret)
        )
        return token_from_response(body, self.clock)

    async def authenticate(self) -> bool:
        """eBay OAuth 인증"""
        try:
            await self.token_manager.get_valid_token()
            log_marketplace_operation(self.logger, MARKETPLACE, "authenticate", seller_id=self.credentials.seller_id)
            return True
        except Exception as e:
            self.logger.error(f"eBay 인증 실패: {e}")
            return False

    async def test_connection(self) -> ConnectionTestResult:
        """토큰 발급 후 판매 권한(privilege) 조회로 권한 확인"""

        async def probe() -> Dict[str, Any]:
            body = await self.http.request_json("GET", "/sell/account/v1/privilege")
            return {'seller_registration_completed': body.get("sellerRegistrationCompleted")}

        return await run_connection_test(
            MARKETPLACE,
            self.authenticate,
            probe,
            self.clock,
            {'marketplace_id': self.credentials.marketplace_id, 'environment': self.environment},
            self.logger
        )

    # 리스팅

    async def _find_offer(self, sku: str) -> Optional[Dict[str, Any]]:
        """SKU 의 offer 조회 (없으면 None)"""
        try:
            body = await self.http.request_json(
                "GET",
                f"{INVENTORY_API}/offer",
                params={"sku": sku, "marketplace_id": self.credentials.marketplace_id}
            )
        except ExternalAPIError as e:
            if e.status_code == 404:
                return None
            raise
        offers = body.get("offers") or []
        return offers[0] if offers else None

    async def get_listings(self) -> List[ProductListing]:
        """전체 inventory item 조회 (offset 페이지네이션) 후 SKU 별 offer 결합"""
        records: List[Dict[str, Any]] = []
        offset = 0
        while True:
            body = await self.http.request_json(
                "GET",
                f"{INVENTORY_API}/inventory_item",
                params={"limit": PAGE_SIZE, "offset": offset}
            )
            page = body.get("inventoryItems") or []
            records.extend(page)
            if not body.get("next") or not page:
                break
            offset += len(page)

        for record in records:
            record["offer"] = await self._find_offer(record["sku"])

        listings = map_records(records, self._to_listing, MARKETPLACE, "listing", self.logger)
        log_marketplace_operation(self.logger, MARKETPLACE, "get_listings", count=len(listings))
        return listings

    def _to_listing(self, record: Mapping[str, Any]) -> ProductListing:
        sku = record["sku"]
        product = record.get("product") or {}
        availability = (record.get("availability") or {}).get("shipToLocationAvailability") or {}
        offer = record.get("offer")
        price = ((offer or {}).get("pricingSummary") or {}).get("price") or {}
        listing_id = ((offer or {}).get("listing") or {}).get("listingId")

        return ProductListing(
            id=f"ebay-{sku}",
            sku=sku,
            title=product.get("title") or sku,
            description=product.get("description") or (offer or {}).get("listingDescription"),
            price=to_float(price.get("value")),
            currency=price.get("currency") or self.config.default_currency,
            quantity=to_int(availability.get("quantity")),
            status=ebay_listing_status(offer),
            external_id=(offer or {}).get("offerId"),
            images=list(product.get("imageUrls") or []),
            category=(offer or {}).get("categoryId"),
            brand=product.get("brand"),
            attributes={
                'listingId': listing_id,
                'condition': record.get("condition"),
                'aspects': product.get("aspects") or {},
            }
        )

    def _inventory_path(self, sku: str) -> str:
        return f"{INVENTORY_API}/inventory_item/{quote(sku, safe='')}"

    async def _put_inventory_item(self, sku: str, item: Dict[str, Any]) -> None:
        await self.http.request(
            "PUT", self._inventory_path(sku), json=item, headers={"Content-Language": "en-US"}
        )

    async def create_listing(self, listing: ProductListing) -> SyncResult:
        """inventory item 생성, offer 생성, offer 게시 순으로 리스팅 생성"""
        offer_id = None
        try:
            product: Dict[str, Any] = {"title": listing.title}
            if listing.description:
                product["description"] = listing.description
            if listing.images:
                product["imageUrls"] = listing.images
            if listing.brand:
                product["brand"] = listing.brand
                product["aspects"] = {"Brand": [listing.brand]}

            await self._put_inventory_item(listing.sku, {
                "product": product,
                "condition": listing.attributes.get("condition", "NEW"),
                "availability": {"shipToLocationAvailability": {"quantity": listing.quantity}},
            })

            offer: Dict[str, Any] = {
                "sku": listing.sku,
                "marketplaceId": self.credentials.marketplace_id,
                "format": "FIXED_PRICE",
                "availableQuantity": listing.quantity,
                "pricingSummary": {
                    "price": {"value": f"{listing.price:.2f}", "currency": listing.currency}
                },
            }
            if listing.category:
                offer["categoryId"] = listing.category
            if listing.description:
                offer["listingDescription"] = listing.description

            created = await self.http.request_json("POST", f"{INVENTORY_API}/offer", json=offer)
            offer_id = created.get("offerId")
            if not offer_id:
                raise ExternalAPIError("eBay did not return an offerId", marketplace=MARKETPLACE)

            published = await self.http.request_json(
                "POST", f"{INVENTORY_API}/offer/{quote(offer_id, safe='')}/publish"
            )
            log_marketplace_operation(self.logger, MARKETPLACE, "create_listing", sku=listing.sku)
            return SyncResult.ok(
                "Listing created successfully",
                data={'externalId': offer_id, 'listingId': published.get("listingId")}
            )
        except Exception as e:
            result = operation_failed(self.logger, MARKETPLACE, "create_listing", "Failed to create listing", e)
            if offer_id:
                # offer 는 생성되었으나 게시 실패
                result.message = "Listing created but publishing failed"
                result.data = {'externalId': offer_id}
            return result

    async def _bulk_update(
        self,
        sku: str,
        quantity: Optional[int] = None,
        offer_id: Optional[str] = None,
        price: Optional[float] = None,
        currency: Optional[str] = None
    ) -> Optional[str]:
        """bulk_update_price_quantity 단건 요청, 항목 오류는 예외로 변환"""
        request: Dict[str, Any] = {"sku": sku}
        if quantity is not None:
            request["shipToLocationAvailability"] = {"quantity": quantity}
        if offer_id and price is not None:
            offer: Dict[str, Any] = {
                "offerId": offer_id,
                "price": {"value": f"{price:.2f}", "currency": currency or self.config.default_currency},
            }
            if quantity is not None:
                offer["availableQuantity"] = quantity
            request["offers"] = [offer]

        body = await self.http.request_json(
            "POST", f"{INVENTORY_API}/bulk_update_price_quantity", json={"requests": [request]}
        )
        for response in body.get("responses") or []:
            if to_int(response.get("statusCode"), 200) >= 400:
                errors = response.get("errors") or [{}]
                raise ExternalAPIError(
                    f"eBay rejected update for {sku}: {errors[0].get('message', 'unknown error')}",
                    status_code=to_int(response.get("statusCode")),
                    marketplace=MARKETPLACE
                )
        return offer_id

    async def _require_offer_id(self, sku: str, external_id: Optional[str]) -> str:
        if external_id:
            return external_id
        offer = await self._find_offer(sku)
        if not offer or not offer.get("offerId"):
            raise ExternalAPIError(f"No eBay offer found for SKU {sku}", status_code=404, marketplace=MARKETPLACE)
        return offer["offerId"]

    async def update_listing(self, listing: ListingUpdate) -> SyncResult:
        """리스팅 부분 수정 (상품 정보, 가격/수량, 게시 상태)"""
        if not listing.has_changes():
            return SyncResult.ok("No updates needed", data={'externalId': listing.external_id})
        if listing.status is not None and listing.status not in self.SUPPORTED_LISTING_STATUSES:
            return SyncResult.fail(f"eBay does not support setting listing status to {listing.status.value}")

        try:
            if listing.title is not None or listing.description is not None:
                # createOrReplace 는 전체 교체이므로 현재 값과 병합
                item = await self.http.request_json("GET", self._inventory_path(listing.sku))
                item.pop("sku", None)
                item.pop("locale", None)
                product = item.setdefault("product", {})
                if listing.title is not None:
                    product["title"] = listing.title
                if listing.description is not None:
                    product["description"] = listing.description
                await self._put_inventory_item(listing.sku, item)

            offer_id = listing.external_id
            if listing.price is not None or listing.status is not None:
                offer_id = await self._require_offer_id(listing.sku, listing.external_id)

            if listing.price is not None or listing.quantity is not None:
                await self._bulk_update(
                    listing.sku,
                    quantity=listing.quantity,
                    offer_id=offer_id,
                    price=listing.price,
                    currency=listing.currency
                )

            if listing.status == ListingStatus.ACTIVE:
                await self.http.request("POST", f"{INVENTORY_API}/offer/{quote(offer_id, safe='')}/publish")
            elif listing.status == ListingStatus.INACTIVE:
                await self.http.request("POST", f"{INVENTORY_API}/offer/{quote(offer_id, safe='')}/withdraw")

            log_marketplace_operation(self.logger, MARKETPLACE, "update_listing", sku=listing.sku)
            return SyncResult.ok("Listing updated successfully", data={'externalId': offer_id})
        except Exception as e:
            return operation_failed(self.logger, MARKETPLACE, "update_listing", "Failed to update listing", e)

    async def delete_listing(self, external_id: str) -> SyncResult:
        """offer 삭제 (게시된 리스팅도 종료됨)"""
        try:
            await self.http.request("DELETE", f"{INVENTORY_API}/offer/{quote(external_id, safe='')}")
            log_marketplace_operation(self.logger, MARKETPLACE, "delete_listing", offer_id=external_id)
            return SyncResult.ok("Listing deleted successfully", data={'externalId': external_id})
        except Exception as e:
            return operation_failed(self.logger, MARKETPLACE, "delete_listing", "Failed to delete listing", e)

    async def update_inventory(self, updates: List[InventoryUpdate]) -> SyncResult:
        """재고 일괄 수정"""

        async def push(update: InventoryUpdate) -> Optional[str]:
            await self._bulk_update(update.sku, quantity=update.quantity)
            return update.external_id

        report = await run_batch(
            updates, push, EBAY_INFO.rate_limits.requests_per_second, self.clock, logger=self.logger
        )
        log_marketplace_operation(
            self.logger, MARKETPLACE, "update_inventory",
            succeeded=report.success_count, failed=report.failure_count
        )
        return report.to_sync_result("Inventory update")

    async def update_pricing(self, updates: List[PriceUpdate]) -> SyncResult:
        """가격 일괄 수정 (offer 단위)"""

        async def push(update: PriceUpdate) -> Optional[str]:
            offer_id = await self._require_offer_id(update.sku, update.external_id)
            return await self._bulk_update(
                update.sku, offer_id=offer_id, price=update.price, currency=update.currency
            )

        report = await run_batch(
            updates, push, EBAY_INFO.rate_limits.requests_per_second, self.clock, logger=self.logger
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
        """주문 조회 (offset 페이지네이션)"""
        params: Dict[str, Any] = {"limit": ORDER_PAGE_SIZE, "offset": 0}
        if start_date or end_date:
            start = ebay_timestamp(start_date) if start_date else ""
            end = ebay_timestamp(end_date) if end_date else ""
            params["filter"] = f"creationdate:[{start}..{end}]"

        records: List[Dict[str, Any]] = []
        while True:
            body = await self.http.request_json("GET", f"{FULFILLMENT_API}/order", params=params)
            page = body.get("orders") or []
            records.extend(page)
            if not body.get("next") or not page:
                break
            params = {**params, "offset": params["offset"] + len(page)}

        orders = map_records(records, self._to_order, MARKETPLACE, "order", self.logger)
        log_marketplace_operation(self.logger, MARKETPLACE, "get_orders", count=len(orders))
        return orders

    def _to_order(self, record: Mapping[str, Any]) -> MarketplaceOrder:
        order_id = record["orderId"]
        total = (record.get("pricingSummary") or {}).get("total") or {}
        buyer = record.get("buyer") or {}
        instructions = record.get("fulfillmentStartInstructions") or [{}]
        ship_to = (instructions[0].get("shippingStep") or {}).get("shipTo") or {}
        created_at = parse_timestamp(record.get("creationDate"), self.clock.now())

        items = []
        for line in record.get("lineItems") or []:
            quantity = to_int(line.get("quantity"))
            if quantity <= 0:
                continue
            line_total = to_float((line.get("lineItemCost") or {}).get("value"))
            items.append(OrderItem(
                sku=line.get("sku") or line.get("legacyItemId") or "",
                title=line.get("title") or "",
                quantity=quantity,
                price=line_total / quantity,
                external_id=line.get("lineItemId")
            ))

        return MarketplaceOrder(
            id=f"ebay-{order_id}",
            external_id=order_id,
            status=normalize_order_status(
                EBAY_ORDER_STATUS, ebay_native_order_status(record), MARKETPLACE, self.logger
            ),
            total_amount=to_float(total.get("value")),
            currency=total.get("currency") or self.config.default_currency,
            created_at=created_at,
            updated_at=parse_timestamp(record.get("lastModifiedDate"), created_at),
            items=items,
            customer_email=(buyer.get("buyerRegistrationAddress") or {}).get("email") or ship_to.get("email"),
            customer_name=ship_to.get("fullName") or buyer.get("username"),
            shipping_address=self._to_address(ship_to) if ship_to.get("contactAddress") else None
        )

    @staticmethod
    def _to_address(ship_to: Mapping[str, Any]) -> Address:
        contact = ship_to.get("contactAddress") or {}
        return Address(
            name=ship_to.get("fullName") or "",
            address1=contact.get("addressLine1") or "",
            address2=contact.get("addressLine2"),
            city=contact.get("city") or "",
            state=contact.get("stateOrProvince") or "",
            postal_code=contact.get("postalCode") or "",
            country=contact.get("countryCode") or "",
            phone=(ship_to.get("primaryPhone") or {}).get("phoneNumber")
        )

    async def update_order_status(
        self,
        external_id: str,
        status: Union[OrderStatus, str],
        tracking: Optional[ShipmentTracking] = None
    ) -> SyncResult:
        """주문 상태 변경 (발송 등록, 취소 요청)"""
        target = coerce_order_status(status)
        if target is None:
            return SyncResult.fail(f"Unknown order status: {status}")
        if target not in self.SUPPORTED_STATUS_UPDATES:
            return SyncResult.fail(f"eBay does not support updating orders to {target.value}")
        if target == OrderStatus.SHIPPED and tracking is None:
            return SyncResult.fail("Tracking information is required to mark an order shipped")

        try:
            order_path = f"{FULFILLMENT_API}/order/{quote(external_id, safe='')}"
            order = await self.http.request_json("GET", order_path)
            current = normalize_order_status(
                EBAY_ORDER_STATUS, ebay_native_order_status(order), MARKETPLACE, self.logger
            )
            if not current.can_transition_to(target):
                return SyncResult.fail(
                    f"Illegal order status transition: {current.value} -> {target.value}"
                )

            data: Dict[str, Any] = {'externalId': external_id, 'status': target.value}
            if target == OrderStatus.SHIPPED:
                response = await self.http.request(
                    "POST",
                    f"{order_path}/shipping_fulfillment",
                    json={
                        "lineItems": [
                            {"lineItemId": line.get("lineItemId"), "quantity": to_int(line.get("quantity"))}
                            for line in order.get("lineItems") or []
                        ],
                        "shippedDate": ebay_timestamp(tracking.shipped_at or self.clock.now()),
                        "shippingCarrierCode": tracking.carrier,
                        "trackingNumber": tracking.tracking_number,
                    }
                )
                # 생성된 fulfillment 는 Location 헤더로 반환된다
                location = response.headers.get("Location")
                if location:
                    data['fulfillmentId'] = location.rstrip('/').rsplit('/', 1)[-1]
            else:
                body = await self.http.request_json(
                    "POST",
                    "/post-order/v2/cancellation",
                    json={
                        "legacyOrderId": order.get("legacyOrderId") or external_id,
                        "cancelReason": "OUT_OF_STOCK_OR_CANNOT_FULFILL",
                    }
                )
                data['cancelId'] = body.get("cancelId")

            log_marketplace_operation(
                self.logger, MARKETPLACE, "update_order_status",
                order_id=external_id, status=target.value
            )
            return SyncResult.ok("Order status updated successfully", data=data)
        except Exception as e:
            return operation_failed(
                self.logger, MARKETPLACE, "update_order_status", "Failed to update order status", e
            )
