"""Amazon 어댑터 통합 테스트 (MockTransport)"""
import pytest

from marketsync.adapters.markets.amazon_adapter import AmazonAdapter, amazon_base_url
from marketsync.core.entities.credentials import AmazonCredentials, MarketplaceSettings
from marketsync.core.entities.listing import InventoryUpdate, ListingStatus, ListingUpdate, ProductListing
from marketsync.core.entities.order import OrderStatus, ShipmentTracking
from marketsync.core.exceptions import AuthenticationError

SELLER = "SELLER1"
MARKETPLACE_ID = "ATVPDKIKX0DER"
TOKEN_PATH = "/auth/o2/token"
ORDERS_PATH = "/orders/v0/orders"
LISTINGS_PATH = f"/listings/2021-08-01/items/{SELLER}"


def make_adapter(api, clock, config, logger, **kwargs):
    credentials = AmazonCredentials(
        client_id="client",
        client_secret="secret",
        seller_id=SELLER,
        marketplace_id=MARKETPLACE_ID,
        refresh_token="refresh"
    )
    return AmazonAdapter(
        credentials,
        MarketplaceSettings(error_retry_attempts=3),
        config=config,
        clock=clock,
        transport=api.transport,
        logger=logger,
        **kwargs
    )


def listing_item(sku, asin, status=("BUYABLE",), price="19.99", quantity=5):
    return {
        "sku": sku,
        "summaries": [{
            "marketplaceId": MARKETPLACE_ID,
            "asin": asin,
            "productType": "HOME",
            "itemName": f"Item {sku}",
            "status": list(status),
            "mainImage": {"link": f"https://images.example.com/{sku}.jpg"},
        }],
        "attributes": {"brand": [{"value": "Acme", "marketplace_id": MARKETPLACE_ID}]},
        "offers": [{"offerType": "B2C", "price": {"currencyCode": "USD", "amount": price}}],
        "fulfillmentAvailability": [{"fulfillmentChannelCode": "DEFAULT", "quantity": quantity}],
    }


ORDER = {
    "AmazonOrderId": "111-222",
    "OrderStatus": "Unshipped",
    "PurchaseDate": "2024-01-10T08:00:00Z",
    "LastUpdateDate": "2024-01-11T09:30:00Z",
    "OrderTotal": {"CurrencyCode": "USD", "Amount": "45.00"},
    "BuyerInfo": {"BuyerEmail": "buyer@marketplace.amazon.com"},
    "ShippingAddress": {
        "Name": "Jane Doe",
        "AddressLine1": "1 Main St",
        "City": "Seattle",
        "StateOrRegion": "WA",
        "PostalCode": "98101",
        "CountryCode": "US",
    },
}

ORDER_ITEMS = {
    "payload": {
        "AmazonOrderId": "111-222",
        "OrderItems": [
            {"OrderItemId": "oi-1", "SellerSKU": "SKU-1", "Title": "Mug", "QuantityOrdered": 3,
             "ItemPrice": {"CurrencyCode": "USD", "Amount": "45.00"}},
            {"OrderItemId": "oi-2", "SellerSKU": "SKU-2", "Title": "Cancelled line", "QuantityOrdered": 0},
        ],
    }
}


class TestAmazonAdapter:
    """Amazon SP-API 어댑터 테스트"""

    def test_base_url_by_region_and_environment(self):
        assert amazon_base_url("us-east-1", "production") == "https://sellingpartnerapi-na.amazon.com"
        assert amazon_base_url("eu-west-1", "sandbox") == "https://sandbox.sellingpartnerapi-eu.amazon.com"
        assert amazon_base_url("fe", "production") == "https://sellingpartnerapi-fe.amazon.com"

    @pytest.mark.asyncio
    async def test_get_listings_collapses_pages(self, api, clock, config, test_logger):
        """nextToken 페이지를 모두 모아 하나의 결과로 반환"""
        api.add("POST", TOKEN_PATH, json={"access_token": "tok-1", "expires_in": 3600})
        api.add("GET", LISTINGS_PATH, json={
            "items": [listing_item("SKU-1", "B001")],
            "pagination": {"nextToken": "page-2"},
        })
        api.add("GET", LISTINGS_PATH, json={
            "items": [listing_item("SKU-2", "B002", status=("DISCOVERABLE",))],
        })

        async with make_adapter(api, clock, config, test_logger) as adapter:
            listings = await adapter.get_listings()

        assert [l.sku for l in listings] == ["SKU-1", "SKU-2"]
        first = listings[0]
        assert first.price == 19.99
        assert first.quantity == 5
        assert first.status == ListingStatus.ACTIVE
        assert first.external_id == "SKU-1"
        assert first.attributes["asin"] == "B001"
        assert first.brand == "Acme"
        assert listings[1].status == ListingStatus.INACTIVE

        pages = api.calls("GET", LISTINGS_PATH)
        assert "pageToken" not in pages[0].url.params
        assert pages[1].url.params["pageToken"] == "page-2"
        assert pages[0].headers["x-amz-access-token"] == "tok-1"
        assert len(api.calls("POST", TOKEN_PATH)) == 1

    @pytest.mark.asyncio
    async def test_refresh_token_grant(self, api, clock, config, test_logger):
        api.add("POST", TOKEN_PATH, json={"access_token": "tok-1", "expires_in": 3600})

        async with make_adapter(api, clock, config, test_logger) as adapter:
            assert await adapter.authenticate()

        form = api.calls("POST", TOKEN_PATH)[0].content.decode()
        assert "grant_type=refresh_token" in form
        assert "refresh_token=refresh" in form

    @pytest.mark.asyncio
    async def test_401_refreshes_token_once_and_retries(self, api, clock, config, test_logger):
        """401 응답 시 토큰 강제 갱신 후 한 번 재요청"""
        api.add("POST", TOKEN_PATH, json={"access_token": "tok-1", "expires_in": 3600})
        api.add("POST", TOKEN_PATH, json={"access_token": "tok-2", "expires_in": 3600})
        api.add("GET", ORDERS_PATH, 401, json={"errors": [{"message": "Access token expired"}]})
        api.add("GET", ORDERS_PATH, json={"payload": {"Orders": [dict(ORDER)]}})
        api.add("GET", f"{ORDERS_PATH}/111-222/orderItems", json=ORDER_ITEMS)

        async with make_adapter(api, clock, config, test_logger) as adapter:
            orders = await adapter.get_orders()

        assert len(orders) == 1
        order_calls = api.calls("GET", ORDERS_PATH)
        assert [c.headers["x-amz-access-token"] for c in order_calls] == ["tok-1", "tok-2"]
        assert len(api.calls("POST", TOKEN_PATH)) == 2

    @pytest.mark.asyncio
    async def test_persistent_401_raises_authentication_error(self, api, clock, config, test_logger):
        api.add("POST", TOKEN_PATH, json={"access_token": "tok", "expires_in": 3600})
        api.add("GET", ORDERS_PATH, 401, json={"errors": [{"message": "Unauthorized"}]})

        async with make_adapter(api, clock, config, test_logger) as adapter:
            with pytest.raises(AuthenticationError):
                await adapter.get_orders()

        # 인증 실패는 재시도하지 않는다
        assert len(api.calls("GET", ORDERS_PATH)) == 2
        assert len(api.calls("POST", TOKEN_PATH)) == 2

    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self, api, clock, config, test_logger):
        api.add("POST", TOKEN_PATH, json={"access_token": "tok", "expires_in": 3600})
        api.add("GET", ORDERS_PATH, 503, json={"errors": [{"message": "Service unavailable"}]})
        api.add("GET", ORDERS_PATH, json={"payload": {"Orders": []}})

        async with make_adapter(api, clock, config, test_logger) as adapter:
            orders = await adapter.get_orders()

        assert orders == []
        assert clock.sleeps == [0.1]

    @pytest.mark.asyncio
    async def test_order_mapping(self, api, clock, config, test_logger):
        api.add("POST", TOKEN_PATH, json={"access_token": "tok", "expires_in": 3600})
        api.add("GET", ORDERS_PATH, json={"payload": {"Orders": [dict(ORDER)], "NextToken": "n2"}})
        api.add("GET", ORDERS_PATH, json={"payload": {"Orders": []}})
        api.add("GET", f"{ORDERS_PATH}/111-222/orderItems", json=ORDER_ITEMS)

        async with make_adapter(api, clock, config, test_logger) as adapter:
            orders = await adapter.get_orders()

        order = orders[0]
        assert order.id == "amazon-111-222"
        assert order.status == OrderStatus.CONFIRMED
        assert order.total_amount == 45.0
        assert order.customer_name == "Jane Doe"
        assert order.shipping_address.city == "Seattle"
        # 수량 0 인 라인은 제외, 단가는 라인 금액 / 수량
        assert len(order.items) == 1
        assert order.items[0].price == 15.0

        first, second = api.calls("GET", ORDERS_PATH)
        assert first.url.params["CreatedAfter"] == "2023-12-16T12:00:00Z"
        assert second.url.params["NextToken"] == "n2"
        assert "CreatedAfter" not in second.url.params

    @pytest.mark.asyncio
    async def test_update_inventory_reports_items(self, api, clock, config, test_logger):
        """배치 중 한 항목 실패 시 나머지는 성공으로 보고"""
        api.add("POST", TOKEN_PATH, json={"access_token": "tok", "expires_in": 3600})
        for sku in ("SKU-1", "SKU-3"):
            api.add("PATCH", f"{LISTINGS_PATH}/{sku}", json={"sku": sku, "status": "ACCEPTED", "submissionId": "s"})
        api.add("PATCH", f"{LISTINGS_PATH}/SKU-2", 400, json={"errors": [{"message": "Invalid quantity"}]})

        updates = [InventoryUpdate(sku=f"SKU-{i}", quantity=i) for i in (1, 2, 3)]
        async with make_adapter(api, clock, config, test_logger) as adapter:
            result = await adapter.update_inventory(updates)

        assert result.success is False
        assert result.data.succeeded_skus == ["SKU-1", "SKU-3"]
        assert result.data.failed_skus == ["SKU-2"]
        assert "Invalid quantity" in result.errors[0]

        body = api.body(api.calls("PATCH", f"{LISTINGS_PATH}/SKU-3")[0])
        assert body["patches"][0]["path"] == "/attributes/fulfillment_availability"
        assert body["patches"][0]["value"][0]["quantity"] == 3

    @pytest.mark.asyncio
    async def test_create_listing_invalid_submission(self, api, clock, config, test_logger):
        api.add("POST", TOKEN_PATH, json={"access_token": "tok", "expires_in": 3600})
        api.add("PUT", f"{LISTINGS_PATH}/SKU-9", json={
            "sku": "SKU-9",
            "status": "INVALID",
            "issues": [{"code": "90220", "message": "'brand' is required", "severity": "ERROR"}],
        })

        listing = ProductListing(id="l9", sku="SKU-9", title="Lamp", price=30.0, currency="USD", quantity=2)
        async with make_adapter(api, clock, config, test_logger) as adapter:
            result = await adapter.create_listing(listing)

        assert result.success is False
        assert "'brand' is required" in result.errors[0]

    @pytest.mark.asyncio
    async def test_deactivate_listing_sends_zero_quantity_only(self, api, clock, config, test_logger):
        """판매 중지 요청은 함께 온 수량보다 우선"""
        api.add("POST", TOKEN_PATH, json={"access_token": "tok", "expires_in": 3600})
        api.add("PATCH", f"{LISTINGS_PATH}/SKU-1", json={"sku": "SKU-1", "status": "ACCEPTED", "submissionId": "s"})

        update = ListingUpdate(sku="SKU-1", quantity=7, status=ListingStatus.INACTIVE)
        async with make_adapter(api, clock, config, test_logger) as adapter:
            result = await adapter.update_listing(update)

        assert result.success
        patches = api.body(api.calls("PATCH", f"{LISTINGS_PATH}/SKU-1")[0])["patches"]
        assert len(patches) == 1
        assert patches[0]["path"] == "/attributes/fulfillment_availability"
        assert patches[0]["value"][0]["quantity"] == 0

    @pytest.mark.asyncio
    async def test_delete_listing(self, api, clock, config, test_logger):
        api.add("POST", TOKEN_PATH, json={"access_token": "tok", "expires_in": 3600})
        api.add("DELETE", f"{LISTINGS_PATH}/SKU-1", json={"sku": "SKU-1", "status": "ACCEPTED", "submissionId": "s"})

        async with make_adapter(api, clock, config, test_logger) as adapter:
            result = await adapter.delete_listing("SKU-1")

        assert result.success
        assert result.data == {'externalId': "SKU-1"}
        assert api.calls("DELETE", f"{LISTINGS_PATH}/SKU-1")[0].url.params["marketplaceIds"] == MARKETPLACE_ID

    @pytest.mark.asyncio
    async def test_delete_unknown_listing_fails(self, api, clock, config, test_logger):
        api.add("POST", TOKEN_PATH, json={"access_token": "tok", "expires_in": 3600})
        api.add("DELETE", f"{LISTINGS_PATH}/SKU-404", 404, json={"errors": [{"message": "SKU not found"}]})

        async with make_adapter(api, clock, config, test_logger) as adapter:
            result = await adapter.delete_listing("SKU-404")

        assert result.success is False
        assert "SKU not found" in result.errors[0]
        assert len(api.calls("DELETE", f"{LISTINGS_PATH}/SKU-404")) == 1

    @pytest.mark.asyncio
    async def test_ship_order_with_tracking(self, api, clock, config, test_logger):
        api.add("POST", TOKEN_PATH, json={"access_token": "tok", "expires_in": 3600})
        api.add("GET", f"{ORDERS_PATH}/111-222", json={"payload": dict(ORDER)})
        api.add("GET", f"{ORDERS_PATH}/111-222/orderItems", json=ORDER_ITEMS)
        api.add("POST", f"{ORDERS_PATH}/111-222/shipmentConfirmation", 204)

        tracking = ShipmentTracking(carrier="UPS", tracking_number="1Z999")
        async with make_adapter(api, clock, config, test_logger) as adapter:
            result = await adapter.update_order_status("111-222", OrderStatus.SHIPPED, tracking)

        assert result.success
        package = api.body(api.calls("POST", f"{ORDERS_PATH}/111-222/shipmentConfirmation")[0])["packageDetail"]
        assert package["trackingNumber"] == "1Z999"
        assert package["orderItems"] == [{"orderItemId": "oi-1", "quantity": 3}]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,tracking", [
        ("confirmed", None),
        ("shipped", None),
        ("refunded", None),
    ])
    async def test_rejected_status_updates_make_no_requests(self, api, clock, config, test_logger, status, tracking):
        async with make_adapter(api, clock, config, test_logger) as adapter:
            result = await adapter.update_order_status("111-222", status, tracking)

        assert result.success is False
        assert api.requests == []

    @pytest.mark.asyncio
    async def test_illegal_transition(self, api, clock, config, test_logger):
        api.add("POST", TOKEN_PATH, json={"access_token": "tok", "expires_in": 3600})
        api.add("GET", f"{ORDERS_PATH}/111-222", json={"payload": dict(ORDER, OrderStatus="Canceled")})

        tracking = ShipmentTracking(carrier="UPS", tracking_number="1Z999")
        async with make_adapter(api, clock, config, test_logger) as adapter:
            result = await adapter.update_order_status("111-222", "shipped", tracking)

        assert result.success is False
        assert "cancelled -> shipped" in result.message
        assert api.calls("POST", f"{ORDERS_PATH}/111-222/shipmentConfirmation") == []

    @pytest.mark.asyncio
    async def test_partially_shipped_order_confirms_remaining_items(self, api, clock, config, test_logger):
        api.add("POST", TOKEN_PATH, json={"access_token": "tok", "expires_in": 3600})
        api.add("GET", f"{ORDERS_PATH}/111-222", json={"payload": dict(ORDER, OrderStatus="PartiallyShipped")})
        api.add("GET", f"{ORDERS_PATH}/111-222/orderItems", json={"payload": {"OrderItems": [
            {"OrderItemId": "oi-1", "SellerSKU": "SKU-1", "QuantityOrdered": 3, "QuantityShipped": 1},
            {"OrderItemId": "oi-2", "SellerSKU": "SKU-2", "QuantityOrdered": 2, "QuantityShipped": 2},
        ]}})
        api.add("POST", f"{ORDERS_PATH}/111-222/shipmentConfirmation", 204)

        tracking = ShipmentTracking(carrier="UPS", tracking_number="1Z998")
        async with make_adapter(api, clock, config, test_logger) as adapter:
            result = await adapter.update_order_status("111-222", OrderStatus.SHIPPED, tracking)

        assert result.success
        package = api.body(api.calls("POST", f"{ORDERS_PATH}/111-222/shipmentConfirmation")[0])["packageDetail"]
        assert package["orderItems"] == [{"orderItemId": "oi-1", "quantity": 2}]

    @pytest.mark.asyncio
    async def test_fully_shipped_order_is_rejected(self, api, clock, config, test_logger):
        api.add("POST", TOKEN_PATH, json={"access_token": "tok", "expires_in": 3600})
        api.add("GET", f"{ORDERS_PATH}/111-222", json={"payload": dict(ORDER, OrderStatus="Shipped")})

        tracking = ShipmentTracking(carrier="UPS", tracking_number="1Z998")
        async with make_adapter(api, clock, config, test_logger) as adapter:
            result = await adapter.update_order_status("111-222", OrderStatus.SHIPPED, tracking)

        assert result.success is False
        assert "shipped -> shipped" in result.message
        assert api.calls("POST", f"{ORDERS_PATH}/111-222/shipmentConfirmation") == []

    @pytest.mark.asyncio
    async def test_connection_reports_authorization_separately(self, api, clock, config, test_logger):
        """토큰 발급 성공, 권한 확인 403 이면 authenticated=True, authorized=False"""
        api.add("POST", TOKEN_PATH, json={"access_token": "tok", "expires_in": 3600})
        api.add("GET", "/sellers/v1/marketplaceParticipations", 403,
                json={"errors": [{"message": "Access to requested resource is denied."}]})

        async with make_adapter(api, clock, config, test_logger) as adapter:
            result = await adapter.test_connection()

        assert result.authenticated is True
        assert result.authorized is False
        assert result.success is False
        assert "denied" in result.error

    @pytest.mark.asyncio
    async def test_connection_token_failure(self, api, clock, config, test_logger):
        api.add("POST", TOKEN_PATH, 400, json={"error": "invalid_client", "error_description": "Client authentication failed"})

        async with make_adapter(api, clock, config, test_logger) as adapter:
            result = await adapter.test_connection()

        assert result.authenticated is False
        assert result.authorized is None
        assert api.calls("GET", "/sellers/v1/marketplaceParticipations") == []

    @pytest.mark.asyncio
    async def test_marketplace_info(self, api, clock, config, test_logger):
        async with make_adapter(api, clock, config, test_logger, environment="sandbox") as adapter:
            info = adapter.get_marketplace_info()

        assert info.rate_limits.requests_per_second == 2
        assert info.rate_limits.requests_per_hour == 7200
        assert info.environment == "sandbox"
        assert "marketplaceId" in info.required_credentials
