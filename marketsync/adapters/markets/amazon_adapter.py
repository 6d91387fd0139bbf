"""Amazon SP-API 마켓 어댑터"""
import logging
from datetime import datetime, timedelta
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
from marketsync.core.entities.credentials import AmazonCredentials, MarketplaceSettings
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

MARKETPLACE = MarketType.AMAZON.value

LWA_TOKEN_URL = "https://api.amazon.com/auth/o2/token"

# 지역 그룹별 SP-API 호스트
SP_API_HOSTS = {
    "na": "sellingpartnerapi-na.amazon.com",
    "eu": "sellingpartnerapi-eu.amazon.com",
    "fe": "sellingpartnerapi-fe.amazon.com",
}

# AWS 리전 -> SP-API 지역 그룹
REGION_GROUPS = {
    "us-east-1": "na",
    "eu-west-1": "eu",
    "us-west-2": "fe",
}

LISTINGS_API = "/listings/2021-08-01/items"
ORDERS_API = "/orders/v0/orders"

# 주문 조회 시작일이 없으면 최근 30일 조회 (SP-API 필수 파라미터)
DEFAULT_ORDER_LOOKBACK = timedelta(days=30)

AMAZON_ORDER_STATUS: Dict[str, OrderStatus] = {
    "PendingAvailability": OrderStatus.PENDING,
    "Pending": OrderStatus.PENDING,
    "Unshipped": OrderStatus.CONFIRMED,
    "PartiallyShipped": OrderStatus.SHIPPED,
    "Shipped": OrderStatus.SHIPPED,
    "InvoiceUnconfirmed": OrderStatus.SHIPPED,
    "Canceled": OrderStatus.CANCELLED,
    "Unfulfillable": OrderStatus.CANCELLED,
}

# 공통 상태는 shipped 이지만 남은 상품의 발송 확인이 필요한 상태
PARTIAL_SHIPMENT_STATUSES = ("PartiallyShipped",)

AMAZON_INFO = MarketplaceInfo(
    marketplace=MarketType.AMAZON,
    name="Amazon",
    description="Amazon Selling Partner API (Listings Items, Orders)",
    required_credentials=["apiKey", "apiSecret", "sellerId", "marketplaceId"],
    features=["listings", "orders", "inventory", "pricing", "order_status"],
    rate_limits=RateLimits(requests_per_second=2, requests_per_hour=7200)
)


def amazon_base_url(region: Optional[str], environment: str) -> str:
    """리전/환경에 맞는 SP-API 기본 URL"""
    key = (region or "us-east-1").lower()
    group = key if key in SP_API_HOSTS else REGION_GROUPS.get(key, "na")
    host = SP_API_HOSTS[group]
    if environment == "sandbox":
        host = f"sandbox.{host}"
    return f"https://{host}"


def amazon_listing_status(statuses: List[str], issues: List[Mapping[str, Any]]) -> ListingStatus:
    """summaries.status (BUYABLE/DISCOVERABLE) 와 issues 로 리스팅 상태 결정"""
    if any(issue.get("severity") == "ERROR" for issue in issues):
        return ListingStatus.ERROR
    if "BUYABLE" in statuses:
        return ListingStatus.ACTIVE
    if "DISCOVERABLE" in statuses:
        return ListingStatus.INACTIVE
    return ListingStatus.PENDING


def unshipped_quantity(line: Mapping[str, Any]) -> int:
    """주문 상품 라인의 미발송 수량"""
    return max(to_int(line.get("QuantityOrdered")) - to_int(line.get("QuantityShipped")), 0)


def _attribute_value(attributes: Mapping[str, Any], name: str) -> Optional[Any]:
    values = attributes.get(name)
    if isinstance(values, list) and values and isinstance(values[0], dict):
        return values[0].get("value")
    return None


class AmazonAdapter(MarketPort):
    """Amazon SP-API 어댑터

    Listings Items API 는 판매자 SKU 로 리스팅을 식별하므로 이 커넥터의
    external_id 는 SKU 이다. ASIN 은 attributes['asin'] 에 보관한다.
    """

    SUPPORTED_STATUS_UPDATES = (OrderStatus.SHIPPED,)

    def __init__(
        self,
        credentials: AmazonCredentials,
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
            amazon_base_url(credentials.region, self.environment),
            self.token_manager,
            lambda token: {"x-amz-access-token": token},
            self.settings,
            self.clock,
            retry_initial_delay=self.config.retry_initial_delay,
            default_headers={
                "user-agent": self.config.user_agent,
                "accept": "application/json",
            },
            transport=transport,
            logger=self.logger
        )

    async def aclose(self) -> None:
        await self.http.aclose()

    def get_marketplace_info(self) -> MarketplaceInfo:
        return AMAZON_INFO.with_connection(self.credentials.region, self.environment)

    async def _fetch_token(self) -> TokenInfo:
        """LWA 토큰 발급 (refresh token 이 있으면 refresh_token grant)"""
        data = {
            "client_id": self.credentials.client_id,
            "client_secret": self.credentials.client_secret,
        }
        if self.credentials.refresh_token:
            data["grant_type"] = "refresh_token"
            data["refresh_token"] = self.credentials.refresh_token
        else:
            data["grant_type"] = "client_credentials"
            data["scope"] = "sellingpartnerapi::migration"

        body = await self.http.fetch_token(LWA_TOKEN_URL, data=data)
        return token_from_response(body, self.clock)

    async def authenticate(self) -> bool:
        """Amazon LWA 인증"""
        try:
            await self.token_manager.get_valid_token()
            log_marketplace_operation(self.logger, MARKETPLACE, "authenticate", seller_id=self.credentials.seller_id)
            return True
        except Exception as e:
            self.logger.error(f"Amazon 인증 실패: {e}")
            return False

    async def test_connection(self) -> ConnectionTestResult:
        """LWA 토큰 발급 후 marketplaceParticipations 로 권한 확인"""

        async def probe() -> Dict[str, Any]:
            body = await self.http.request_json("GET", "/sellers/v1/marketplaceParticipations")
            participations = body.get("payload") or []
            return {
                'marketplaces': [
                    (p.get("marketplace") or {}).get("id") for p in participations
                ]
            }

        return await run_connection_test(
            MARKETPLACE,
            self.authenticate,
            probe,
            self.clock,
            {'seller_id': self.credentials.seller_id, 'environment': self.environment},
            self.logger
        )

    # 리스팅

    def _listing_path(self, sku: str) -> str:
        return f"{LISTINGS_API}/{quote(self.credentials.seller_id, safe='')}/{quote(sku, safe='')}"

    async def get_listings(self) -> List[ProductListing]:
        """판매자 전체 리스팅 조회 (pageToken 페이지네이션)"""
        params: Dict[str, Any] = {
            "marketplaceIds": self.credentials.marketplace_id,
            "includedData": "summaries,attributes,issues,offers,fulfillmentAvailability",
            "pageSize": 20,
        }
        path = f"{LISTINGS_API}/{quote(self.credentials.seller_id, safe='')}"

        records: List[Dict[str, Any]] = []
        while True:
            body = await self.http.request_json("GET", path, params=params)
            records.extend(body.get("items") or [])
            next_token = (body.get("pagination") or {}).get("nextToken")
            if not next_token:
                break
            params = {**params, "pageToken": next_token}

        listings = map_records(records, self._to_listing, MARKETPLACE, "listing", self.logger)
        log_marketplace_operation(self.logger, MARKETPLACE, "get_listings", count=len(listings))
        return listings

    def _to_listing(self, item: Mapping[str, Any]) -> ProductListing:
        sku = item["sku"]
        summaries = item.get("summaries") or []
        summary = next(
            (s for s in summaries if s.get("marketplaceId") == self.credentials.marketplace_id),
            summaries[0] if summaries else {}
        )
        attributes = item.get("attributes") or {}
        offers = item.get("offers") or []
        offer_price = (offers[0].get("price") or {}) if offers else {}
        availability = item.get("fulfillmentAvailability") or []
        main_image = (summary.get("mainImage") or {}).get("link")

        return ProductListing(
            id=f"amazon-{sku}",
            sku=sku,
            title=summary.get("itemName") or _attribute_value(attributes, "item_name") or sku,
            description=_attribute_value(attributes, "product_description"),
            price=to_float(offer_price.get("amount")),
            currency=offer_price.get("currencyCode") or self.config.default_currency,
            quantity=to_int(availability[0].get("quantity")) if availability else 0,
            status=amazon_listing_status(summary.get("status") or [], item.get("issues") or []),
            external_id=sku,
            images=[main_image] if main_image else [],
            category=summary.get("productType"),
            brand=_attribute_value(attributes, "brand"),
            attributes={
                'asin': summary.get("asin"),
                'conditionType': summary.get("conditionType"),
            }
        )

    def _offer_attribute(self, price: float, currency: str) -> List[Dict[str, Any]]:
        return [{
            "marketplace_id": self.credentials.marketplace_id,
            "currency": currency,
            "our_price": [{"schedule": [{"value_with_tax": price}]}],
        }]

    def _quantity_attribute(self, quantity: int) -> List[Dict[str, Any]]:
        return [{"fulfillment_channel_code": "DEFAULT", "quantity": quantity}]

    def _text_attribute(self, value: str) -> List[Dict[str, Any]]:
        return [{"value": value, "marketplace_id": self.credentials.marketplace_id}]

    def _check_submission(self, body: Mapping[str, Any], sku: str) -> Dict[str, Any]:
        """Listings Items 제출 응답 확인 (INVALID 는 실패)"""
        if body.get("status") == "INVALID":
            issues = [
                issue.get("message", "") for issue in body.get("issues") or []
                if issue.get("severity") == "ERROR"
            ]
            raise ExternalAPIError(
                f"Amazon rejected listing submission for {sku}: {'; '.join(issues) or 'INVALID'}",
                details={'issues': body.get("issues") or []},
                marketplace=MARKETPLACE
            )
        return {'externalId': sku, 'submissionId': body.get("submissionId"), 'status': body.get("status")}

    async def create_listing(self, listing: ProductListing) -> SyncResult:
        """리스팅 생성 (putListingsItem)"""
        try:
            attributes: Dict[str, Any] = {
                "item_name": self._text_attribute(listing.title),
                "purchasable_offer": self._offer_attribute(listing.price, listing.currency),
                "fulfillment_availability": self._quantity_attribute(listing.quantity),
            }
            if listing.description:
                attributes["product_description"] = self._text_attribute(listing.description)
            if listing.brand:
                attributes["brand"] = self._text_attribute(listing.brand)
            if listing.images:
                attributes["main_product_image_locator"] = [{
                    "media_location": listing.images[0],
                    "marketplace_id": self.credentials.marketplace_id,
                }]

            body = await self.http.request_json(
                "PUT",
                self._listing_path(listing.sku),
                params={"marketplaceIds": self.credentials.marketplace_id},
                json={
                    "productType": listing.category or "PRODUCT",
                    "requirements": "LISTING",
                    "attributes": attributes,
                }
            )
            data = self._check_submission(body, listing.sku)
            log_marketplace_operation(self.logger, MARKETPLACE, "create_listing", sku=listing.sku)
            return SyncResult.ok("Listing created successfully", data=data)
        except Exception as e:
            return operation_failed(self.logger, MARKETPLACE, "create_listing", "Failed to create listing", e)

    async def _patch_listing(self, sku: str, patches: List[Dict[str, Any]]) -> Dict[str, Any]:
        body = await self.http.request_json(
            "PATCH",
            self._listing_path(sku),
            params={"marketplaceIds": self.credentials.marketplace_id},
            json={"productType": "PRODUCT", "patches": patches}
        )
        return self._check_submission(body, sku)

    async def update_listing(self, listing: ListingUpdate) -> SyncResult:
        """리스팅 부분 수정 (patchListingsItem)"""
        if not listing.has_changes():
            return SyncResult.ok("No updates needed", data={'externalId': listing.sku})

        try:
            patches = []
            if listing.title is not None:
                patches.append(self._replace("item_name", self._text_attribute(listing.title)))
            if listing.description is not None:
                patches.append(self._replace("product_description", self._text_attribute(listing.description)))
            if listing.price is not None:
                currency = listing.currency or self.config.default_currency
                patches.append(self._replace("purchasable_offer", self._offer_attribute(listing.price, currency)))
            if listing.status == ListingStatus.INACTIVE:
                # 판매 중지는 수량 0 으로 처리하며 요청 수량보다 우선한다
                patches.append(self._replace("fulfillment_availability", self._quantity_attribute(0)))
            elif listing.quantity is not None:
                patches.append(self._replace("fulfillment_availability", self._quantity_attribute(listing.quantity)))

            if not patches:
                return SyncResult.fail(
                    f"Amazon does not support setting listing status to {listing.status.value}"
                )

            data = await self._patch_listing(listing.sku, patches)
            log_marketplace_operation(self.logger, MARKETPLACE, "update_listing", sku=listing.sku)
            return SyncResult.ok("Listing updated successfully", data=data)
        except Exception as e:
            return operation_failed(self.logger, MARKETPLACE, "update_listing", "Failed to update listing", e)

    @staticmethod
    def _replace(attribute: str, value: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {"op": "replace", "path": f"/attributes/{attribute}", "value": value}

    async def delete_listing(self, external_id: str) -> SyncResult:
        """리스팅 삭제 (external_id 는 판매자 SKU)"""
        try:
            await self.http.request(
                "DELETE",
                self._listing_path(external_id),
                params={"marketplaceIds": self.credentials.marketplace_id}
            )
            log_marketplace_operation(self.logger, MARKETPLACE, "delete_listing", sku=external_id)
            return SyncResult.ok("Listing deleted successfully", data={'externalId': external_id})
        except Exception as e:
            return operation_failed(self.logger, MARKETPLACE, "delete_listing", "Failed to delete listing", e)

    async def update_inventory(self, updates: List[InventoryUpdate]) -> SyncResult:
        """재고 일괄 수정"""

        async def push(update: InventoryUpdate) -> str:
            await self._patch_listing(
                update.sku,
                [self._replace("fulfillment_availability", self._quantity_attribute(update.quantity))]
            )
            return update.sku

        report = await run_batch(
            updates, push, AMAZON_INFO.rate_limits.requests_per_second, self.clock, logger=self.logger
        )
        log_marketplace_operation(
            self.logger, MARKETPLACE, "update_inventory",
            succeeded=report.success_count, failed=report.failure_count
        )
        return report.to_sync_result("Inventory update")

    async def update_pricing(self, updates: List[PriceUpdate]) -> SyncResult:
        """가격 일괄 수정"""

        async def push(update: PriceUpdate) -> str:
            await self._patch_listing(
                update.sku,
                [self._replace("purchasable_offer", self._offer_attribute(update.price, update.currency))]
            )
            return update.sku

        report = await run_batch(
            updates, push, AMAZON_INFO.rate_limits.requests_per_second, self.clock, logger=self.logger
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
        """주문 조회 (NextToken 페이지네이션, 주문별 상품 조회 포함)"""
        created_after = start_date or (self.clock.now() - DEFAULT_ORDER_LOOKBACK)
        base_params: Dict[str, Any] = {"MarketplaceIds": self.credentials.marketplace_id}
        params = {**base_params, "CreatedAfter": format_timestamp(created_after)}
        if end_date:
            params["CreatedBefore"] = format_timestamp(end_date)

        records: List[Dict[str, Any]] = []
        while True:
            body = await self.http.request_json("GET", ORDERS_API, params=params)
            payload = body.get("payload") or {}
            records.extend(payload.get("Orders") or [])
            next_token = payload.get("NextToken")
            if not next_token:
                break
            # NextToken 요청에는 다른 필터를 함께 보내지 않는다
            params = {**base_params, "NextToken": next_token}

        for record in records:
            record["OrderItems"] = await self._fetch_order_items(record["AmazonOrderId"])

        orders = map_records(records, self._to_order, MARKETPLACE, "order", self.logger)
        log_marketplace_operation(self.logger, MARKETPLACE, "get_orders", count=len(orders))
        return orders

    async def _fetch_order(self, order_id: str) -> Dict[str, Any]:
        body = await self.http.request_json("GET", f"{ORDERS_API}/{quote(order_id, safe='')}")
        return body.get("payload") or {}

    async def _fetch_order_items(self, order_id: str) -> List[Dict[str, Any]]:
        path = f"{ORDERS_API}/{quote(order_id, safe='')}/orderItems"
        params: Dict[str, Any] = {}
        items: List[Dict[str, Any]] = []
        while True:
            body = await self.http.request_json("GET", path, params=params or None)
            payload = body.get("payload") or {}
            items.extend(payload.get("OrderItems") or [])
            next_token = payload.get("NextToken")
            if not next_token:
                return items
            params = {"NextToken": next_token}

    def _to_order(self, record: Mapping[str, Any]) -> MarketplaceOrder:
        order_id = record["AmazonOrderId"]
        order_total = record.get("OrderTotal") or {}
        buyer = record.get("BuyerInfo") or {}
        shipping = record.get("ShippingAddress")
        now = self.clock.now()
        created_at = parse_timestamp(record.get("PurchaseDate"), now)

        items = []
        for line in record.get("OrderItems") or []:
            quantity = to_int(line.get("QuantityOrdered"))
            if quantity <= 0:
                # 취소된 상품 라인은 수량 0 으로 내려온다
                continue
            line_total = to_float((line.get("ItemPrice") or {}).get("Amount"))
            items.append(OrderItem(
                sku=line.get("SellerSKU") or line.get("ASIN") or "",
                title=line.get("Title") or "",
                quantity=quantity,
                price=line_total / quantity,
                external_id=line.get("OrderItemId")
            ))

        return MarketplaceOrder(
            id=f"amazon-{order_id}",
            external_id=order_id,
            status=normalize_order_status(AMAZON_ORDER_STATUS, record.get("OrderStatus"), MARKETPLACE, self.logger),
            total_amount=to_float(order_total.get("Amount")),
            currency=order_total.get("CurrencyCode") or self.config.default_currency,
            created_at=created_at,
            updated_at=parse_timestamp(record.get("LastUpdateDate"), created_at),
            items=items,
            customer_email=buyer.get("BuyerEmail"),
            customer_name=buyer.get("BuyerName") or (shipping or {}).get("Name"),
            shipping_address=self._to_address(shipping) if shipping else None
        )

    @staticmethod
    def _to_address(address: Mapping[str, Any]) -> Address:
        return Address(
            name=address.get("Name") or "",
            address1=address.get("AddressLine1") or "",
            address2=address.get("AddressLine2"),
            city=address.get("City") or "",
            state=address.get("StateOrRegion") or "",
            postal_code=address.get("PostalCode") or "",
            country=address.get("CountryCode") or "",
            phone=address.get("Phone")
        )

    async def update_order_status(
        self,
        external_id: str,
        status: Union[OrderStatus, str],
        tracking: Optional[ShipmentTracking] = None
    ) -> SyncResult:
        """주문 상태 변경 (발송 확인만 지원)"""
        target = coerce_order_status(status)
        if target is None:
            return SyncResult.fail(f"Unknown order status: {status}")
        if target not in self.SUPPORTED_STATUS_UPDATES:
            return SyncResult.fail(f"Amazon does not support updating orders to {target.value}")
        if tracking is None:
            return SyncResult.fail("Tracking information is required to mark an order shipped")

        try:
            order = await self._fetch_order(external_id)
            native_status = order.get("OrderStatus")
            current = normalize_order_status(
                AMAZON_ORDER_STATUS, native_status, MARKETPLACE, self.logger
            )
            # 부분 발송 주문은 남은 상품을 추가로 발송 확인할 수 있다
            if native_status not in PARTIAL_SHIPMENT_STATUSES and not current.can_transition_to(target):
                return SyncResult.fail(
                    f"Illegal order status transition: {current.value} -> {target.value}"
                )

            order_items = await self._fetch_order_items(external_id)
            unshipped = [
                {"orderItemId": line.get("OrderItemId"), "quantity": unshipped_quantity(line)}
                for line in order_items
                if unshipped_quantity(line) > 0
            ]
            if not unshipped:
                return SyncResult.fail(f"Order {external_id} has no unshipped items")

            await self.http.request(
                "POST",
                f"{ORDERS_API}/{quote(external_id, safe='')}/shipmentConfirmation",
                json={
                    "marketplaceId": self.credentials.marketplace_id,
                    "packageDetail": {
                        "packageReferenceId": "1",
                        "carrierCode": tracking.carrier,
                        "shippingMethod": tracking.shipping_method,
                        "trackingNumber": tracking.tracking_number,
                        "shipDate": format_timestamp(tracking.shipped_at or self.clock.now()),
                        "orderItems": unshipped,
                    },
                }
            )
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
