"""마켓 동기화 유즈케이스 통합 테스트"""
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import httpx
import pytest

from marketsync.adapters.markets.factory import MarketplaceConnectorFactory
from marketsync.adapters.markets.walmart_adapter import WALMART_INFO
from marketsync.core.entities.credentials import MarketplaceCredentials, MarketplaceSettings
from marketsync.core.entities.listing import InventoryUpdate, PriceUpdate, ProductListing
from marketsync.core.entities.order import MarketplaceOrder
from marketsync.core.entities.sync_result import SyncResult
from marketsync.core.exceptions import UnsupportedMarketplaceError
from marketsync.core.ports.connector_factory_port import ConnectorFactoryPort
from marketsync.core.ports.market_port import MarketType, RateLimits
from marketsync.core.ports.repo_port import ConnectionRepositoryPort, MarketplaceConnection
from marketsync.core.usecases.sync_marketplace import SyncMarketplaceUseCase

TOKEN_PATH = "/v3/token"
INVENTORY_PATH = "/v3/inventory"


class InMemoryConnectionRepository(ConnectionRepositoryPort):
    """테스트용 메모리 저장소"""

    def __init__(self):
        self.connections: Dict[str, MarketplaceConnection] = {}
        self.listings: Dict[str, List[ProductListing]] = {}
        self.orders: Dict[str, List[MarketplaceOrder]] = {}
        self.results: List[Tuple[str, str, SyncResult]] = []
        self.synced: Dict[str, datetime] = {}
        self.orders_synced: Dict[str, datetime] = {}

    async def get_connection(self, connection_id: str) -> Optional[MarketplaceConnection]:
        return self.connections.get(connection_id)

    async def get_known_listings(self, connection_id: str) -> List[ProductListing]:
        return self.listings.get(connection_id, [])

    async def save_listings(self, connection_id: str, listings: List[ProductListing]) -> None:
        self.listings[connection_id] = listings

    async def save_orders(self, connection_id: str, orders: List[MarketplaceOrder]) -> None:
        self.orders[connection_id] = orders

    async def record_sync_result(self, connection_id: str, operation: str, result: SyncResult) -> None:
        self.results.append((connection_id, operation, result))

    async def update_last_synced(self, connection_id: str, synced_at: datetime) -> None:
        self.synced[connection_id] = synced_at
        self.connections[connection_id] = replace(self.connections[connection_id], last_synced_at=synced_at)

    async def update_orders_synced(self, connection_id: str, synced_at: datetime) -> None:
        self.orders_synced[connection_id] = synced_at
        self.connections[connection_id] = replace(self.connections[connection_id], last_orders_synced_at=synced_at)


def walmart_connection(settings=None, **kwargs):
    return MarketplaceConnection(
        id="conn-1",
        tenant_id="tenant-1",
        market_type=MarketType.WALMART,
        credentials=MarketplaceCredentials(api_key="client", api_secret="secret"),
        settings=settings or MarketplaceSettings(inventory_update_threshold=5, price_update_threshold=10),
        **kwargs
    )


def known_listing(sku, quantity=10, price=20.0):
    return ProductListing(id=sku, sku=sku, title=sku, price=price, currency="USD", quantity=quantity)


@pytest.fixture
def repository():
    repo = InMemoryConnectionRepository()
    repo.connections["conn-1"] = walmart_connection()
    return repo


@pytest.fixture
def usecase(api, clock, config, test_logger, repository):
    factory = MarketplaceConnectorFactory(logger=test_logger, config=config, transport=api.transport, clock=clock)
    return SyncMarketplaceUseCase(factory, repository, clock)


class TestSyncInventory:
    """재고 동기화 테스트"""

    @pytest.mark.asyncio
    async def test_pushes_only_significant_changes(self, usecase, repository, api, clock):
        api.add("POST", TOKEN_PATH, json={"access_token": "tok", "expires_in": 900})
        api.add("PUT", INVENTORY_PATH, json={})
        repository.listings["conn-1"] = [known_listing("SKU-1", 10), known_listing("SKU-3", 4)]

        result = await usecase.sync_inventory("conn-1", [
            InventoryUpdate(sku="SKU-1", quantity=12),
            InventoryUpdate(sku="SKU-2", quantity=8),
            InventoryUpdate(sku="SKU-3", quantity=0),
        ])

        assert result.is_success()
        assert result.get_value().data.succeeded_skus == ["SKU-2", "SKU-3"]
        assert [r.url.params["sku"] for r in api.calls("PUT", INVENTORY_PATH)] == ["SKU-2", "SKU-3"]
        assert repository.results[0][1] == "sync_inventory"
        assert repository.synced["conn-1"] == clock.now()

    @pytest.mark.asyncio
    async def test_nothing_to_sync(self, usecase, repository, api):
        repository.listings["conn-1"] = [known_listing("SKU-1", 10)]

        result = await usecase.sync_inventory("conn-1", [InventoryUpdate(sku="SKU-1", quantity=11)])

        assert result.is_success()
        assert result.get_value().message == "sync_inventory: nothing to sync"
        assert api.requests == []

    @pytest.mark.asyncio
    async def test_partial_failure_is_failure(self, usecase, repository, api):
        api.add("POST", TOKEN_PATH, json={"access_token": "tok", "expires_in": 900})

        def inventory_handler(request):
            if request.url.params["sku"] == "SKU-2":
                return httpx.Response(400, json={"errors": [{"description": "Invalid SKU"}]})
            return httpx.Response(200, json={})

        api.add_handler("PUT", INVENTORY_PATH, inventory_handler)

        result = await usecase.sync_inventory("conn-1", [
            InventoryUpdate(sku="SKU-1", quantity=1),
            InventoryUpdate(sku="SKU-2", quantity=1),
        ])

        assert result.is_failure()
        assert result.get_value().data.failed_skus == ["SKU-2"]
        assert len(result.errors) == 1
        assert "conn-1" not in repository.synced
        assert repository.results[0][2].success is False

    @pytest.mark.asyncio
    async def test_batch_over_hourly_budget_is_rejected(self, usecase, repository, api):
        updates = [InventoryUpdate(sku=f"SKU-{i}", quantity=1) for i in range(3601)]

        result = await usecase.sync_inventory("conn-1", updates)

        assert result.is_failure()
        assert "exceeds Walmart hourly budget" in result.get_error()
        assert api.requests == []
        assert repository.results[0][2].success is False

    @pytest.mark.asyncio
    async def test_invalid_credentials_are_recorded(self, usecase, repository, api):
        repository.connections["conn-1"] = MarketplaceConnection(
            id="conn-1",
            tenant_id="tenant-1",
            market_type=MarketType.WALMART,
            credentials=MarketplaceCredentials(api_key="client")
        )

        result = await usecase.sync_inventory("conn-1", [InventoryUpdate(sku="SKU-1", quantity=1)])

        assert result.is_failure()
        assert result.errors == ["Missing required credential: apiSecret"]
        assert api.requests == []


class TestSyncPricing:
    @pytest.mark.asyncio
    async def test_small_price_changes_are_skipped(self, usecase, repository, api):
        api.add("POST", TOKEN_PATH, json={"access_token": "tok", "expires_in": 900})
        api.add("PUT", "/v3/price", json={})
        repository.listings["conn-1"] = [known_listing("SKU-1", price=20.0), known_listing("SKU-2", price=20.0)]

        result = await usecase.sync_pricing("conn-1", [
            PriceUpdate(sku="SKU-1", price=21.0, currency="USD"),
            PriceUpdate(sku="SKU-2", price=25.0, currency="USD"),
        ])

        assert result.is_success()
        assert result.get_value().data.succeeded_skus == ["SKU-2"]
        assert len(api.calls("PUT", "/v3/price")) == 1


class TestConnectionLookup:
    """연동 조회 실패 테스트"""

    @pytest.mark.asyncio
    async def test_unknown_connection(self, usecase, repository):
        result = await usecase.sync_listings("missing")

        assert result.is_failure()
        assert "missing" in result.get_error()
        assert repository.results == []

    @pytest.mark.asyncio
    async def test_inactive_connection(self, usecase, repository, api):
        repository.connections["conn-1"] = walmart_connection(is_active=False)

        result = await usecase.sync_orders("conn-1")

        assert result.is_failure()
        assert api.requests == []


class TestSyncOrders:
    @pytest.mark.asyncio
    async def test_starts_from_last_order_sync(self, usecase, repository, api, clock):
        repository.connections["conn-1"] = walmart_connection(
            last_synced_at=clock.now() - timedelta(minutes=5),
            last_orders_synced_at=clock.now() - timedelta(hours=2)
        )
        api.add("POST", TOKEN_PATH, json={"access_token": "tok", "expires_in": 900})
        api.add("GET", "/v3/orders", json={"list": {"meta": {"totalCount": 0}, "elements": {"order": []}}})

        result = await usecase.sync_orders("conn-1")

        assert result.is_success()
        assert result.get_value() == []
        assert api.calls("GET", "/v3/orders")[0].url.params["createdStartDate"] == "2024-01-15T10:00:00Z"
        assert repository.orders["conn-1"] == []
        assert repository.results[0][2].message == "Fetched 0 orders"
        assert repository.orders_synced["conn-1"] == clock.now()
        assert "conn-1" not in repository.synced

    @pytest.mark.asyncio
    async def test_inventory_push_keeps_order_window(self, usecase, repository, api, clock):
        """재고 동기화가 주문 조회 시작 시각을 옮기지 않음"""
        repository.connections["conn-1"] = walmart_connection(
            last_orders_synced_at=datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)
        )
        api.add("POST", TOKEN_PATH, json={"access_token": "tok", "expires_in": 900})
        api.add("PUT", INVENTORY_PATH, json={})
        api.add("GET", "/v3/orders", json={"list": {"meta": {"totalCount": 0}, "elements": {"order": []}}})

        clock.advance(3600)
        pushed = await usecase.sync_inventory("conn-1", [InventoryUpdate(sku="SKU-1", quantity=3)])
        clock.advance(60)
        result = await usecase.sync_orders("conn-1")

        assert pushed.is_success()
        assert result.is_success()
        assert repository.connections["conn-1"].last_synced_at == datetime(2024, 1, 15, 13, 0, tzinfo=timezone.utc)
        assert api.calls("GET", "/v3/orders")[0].url.params["createdStartDate"] == "2024-01-15T10:00:00Z"
        assert repository.connections["conn-1"].last_orders_synced_at == clock.now()

    @pytest.mark.asyncio
    async def test_bounded_window_keeps_order_cursor(self, usecase, repository, api, clock):
        """종료일이 있는 조회는 다음 조회 시작 시각을 바꾸지 않음"""
        api.add("POST", TOKEN_PATH, json={"access_token": "tok", "expires_in": 900})
        api.add("GET", "/v3/orders", json={"list": {"meta": {"totalCount": 0}, "elements": {"order": []}}})

        result = await usecase.sync_orders(
            "conn-1",
            start_date=datetime(2024, 1, 1, tzinfo=timezone.utc),
            end_date=datetime(2024, 1, 2, tzinfo=timezone.utc)
        )

        assert result.is_success()
        assert "conn-1" not in repository.orders_synced

    @pytest.mark.asyncio
    async def test_listing_errors_become_failure(self, usecase, repository, api):
        api.add("POST", TOKEN_PATH, 401, json={"error": "invalid_client"})

        result = await usecase.sync_listings("conn-1")

        assert result.is_failure()
        assert repository.results[0][1] == "sync_listings"
        assert "conn-1" not in repository.synced


class TestSyncIfDue:
    """자동 동기화 주기 테스트"""

    @pytest.mark.asyncio
    async def test_auto_sync_disabled(self, usecase, api):
        result = await usecase.sync_if_due("conn-1")

        assert result.is_success()
        assert result.get_value() == []
        assert api.requests == []

    @pytest.mark.asyncio
    async def test_not_due_yet(self, usecase, repository, api, clock):
        repository.connections["conn-1"] = walmart_connection(
            MarketplaceSettings(auto_sync=True, sync_interval=60),
            last_synced_at=clock.now() - timedelta(minutes=30)
        )

        result = await usecase.sync_if_due("conn-1")

        assert result.get_value() == []
        assert api.requests == []

    @pytest.mark.asyncio
    async def test_due_connection_fetches_listings_and_orders(self, usecase, repository, api, clock):
        repository.connections["conn-1"] = walmart_connection(
            MarketplaceSettings(auto_sync=True, sync_interval=60),
            last_synced_at=datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc),
            last_orders_synced_at=datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc)
        )
        api.add("POST", TOKEN_PATH, json={"access_token": "tok", "expires_in": 900})
        api.add("GET", "/v3/items", json={"ItemResponse": [
            {"sku": "SKU-1", "productName": "Lamp", "price": {"currency": "USD", "amount": 20.0},
             "publishedStatus": "PUBLISHED"},
        ]})
        api.add("GET", "/v3/inventories", json={"elements": {"inventories": []}})
        api.add("GET", "/v3/orders", json={"list": {"meta": {}, "elements": {"order": []}}})

        result = await usecase.sync_if_due("conn-1")

        assert result.is_success()
        assert [listing.sku for listing in repository.listings["conn-1"]] == ["SKU-1"]
        assert [operation for _, operation, _ in repository.results] == ["sync_listings", "sync_orders"]
        assert api.calls("GET", "/v3/orders")[0].url.params["createdStartDate"] == "2024-01-15T09:30:00Z"


class BudgetOnlyFactory(ConnectorFactoryPort):
    """호출 한도만 제공하고 커넥터 생성 요청을 기록하는 팩토리"""

    def __init__(self, config, requests_per_hour):
        self.config = config
        self.info = replace(WALMART_INFO, rate_limits=RateLimits(1, requests_per_hour))
        self.created = []

    def create_connector(self, marketplace, credentials, settings=None):
        self.created.append(marketplace)
        raise UnsupportedMarketplaceError(f"not available: {marketplace.value}")

    def get_marketplace_info(self, marketplace):
        return self.info


class TestConnectorFactoryPort:
    """유즈케이스는 팩토리 인터페이스에만 의존"""

    def test_concrete_factory_implements_port(self, config, test_logger):
        assert isinstance(MarketplaceConnectorFactory(logger=test_logger, config=config), ConnectorFactoryPort)

    @pytest.mark.asyncio
    async def test_usecase_runs_with_any_factory(self, repository, clock, config):
        factory = BudgetOnlyFactory(config, requests_per_hour=2)
        usecase = SyncMarketplaceUseCase(factory, repository, clock)
        updates = [InventoryUpdate(sku=f"SKU-{i}", quantity=1) for i in range(3)]

        over_budget = await usecase.sync_inventory("conn-1", updates)
        within_budget = await usecase.sync_inventory("conn-1", updates[:2])

        assert "exceeds Walmart hourly budget (2/hour)" in over_budget.get_error()
        assert within_budget.is_failure()
        assert within_budget.errors == ["not available: walmart"]
        assert factory.created == [MarketType.WALMART]
