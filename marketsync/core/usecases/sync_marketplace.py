"""마켓 동기화 유즈케이스"""
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from marketsync.core.entities.listing import InventoryUpdate, PriceUpdate, ProductListing
from marketsync.core.entities.order import MarketplaceOrder
from marketsync.core.entities.sync_result import BatchReport, SyncResult
from marketsync.core.ports.clock_port import ClockPort
from marketsync.core.ports.connector_factory_port import ConnectorFactoryPort
from marketsync.core.ports.market_port import ConnectionTestResult
from marketsync.core.ports.repo_port import ConnectionRepositoryPort, MarketplaceConnection
from marketsync.shared.logging import get_logger
from marketsync.shared.result import Failure, Result, Success, from_sync_result

logger = get_logger(__name__)


def filter_inventory_updates(
    updates: List[InventoryUpdate],
    known: Dict[str, ProductListing],
    threshold: int
) -> Tuple[List[InventoryUpdate], List[str]]:
    """재고 변경량이 임계값 미만인 항목 제외 (품절 전환은 항상 반영)"""
    selected, skipped = [], []
    for update in updates:
        previous = known.get(update.sku)
        if previous is None:
            selected.append(update)
            continue

        delta = abs(update.quantity - previous.quantity)
        if delta == 0:
            skipped.append(update.sku)
        elif update.quantity == 0 or delta >= threshold:
            selected.append(update)
        else:
            skipped.append(update.sku)
    return selected, skipped


def filter_price_updates(
    updates: List[PriceUpdate],
    known: Dict[str, ProductListing],
    threshold_percent: float
) -> Tuple[List[PriceUpdate], List[str]]:
    """가격 변동률(%)이 임계값 미만인 항목 제외"""
    selected, skipped = [], []
    for update in updates:
        previous = known.get(update.sku)
        if previous is None or previous.price <= 0 or previous.currency != update.currency:
            selected.append(update)
            continue

        change = abs(update.price - previous.price) / previous.price * 100
        if change == 0 or change < threshold_percent:
            skipped.append(update.sku)
        else:
            selected.append(update)
    return selected, skipped


class SyncMarketplaceUseCase:
    """마켓 동기화 유즈케이스

    연동 정보를 저장소에서 읽어 커넥터를 만들고, 작업 결과를 저장소에
    기록한다. 커넥터는 작업마다 새로 만들고 작업이 끝나면 닫는다.
    """

    def __init__(
        self,
        factory: ConnectorFactoryPort,
        repository: ConnectionRepositoryPort,
        clock: ClockPort
    ):
        self.factory = factory
        self.repository = repository
        self.clock = clock

    async def _load_connection(self, connection_id: str) -> "Result[MarketplaceConnection]":
        connection = await self.repository.get_connection(connection_id)
        if not connection:
            return Failure(f"마켓 연동을 찾을 수 없습니다: {connection_id}")
        if not connection.is_active:
            return Failure(f"비활성화된 마켓 연동입니다: {connection_id}")
        return Success(connection)

    async def _known_listings(self, connection_id: str) -> Dict[str, ProductListing]:
        return {
            listing.sku: listing
            for listing in await self.repository.get_known_listings(connection_id)
        }

    async def _record(self, connection_id: str, operation: str, result: SyncResult) -> "Result[SyncResult]":
        await self.repository.record_sync_result(connection_id, operation, result)
        return from_sync_result(result)

    async def _fail(self, connection_id: str, operation: str, message: str, errors: List[str]) -> "Result[SyncResult]":
        logger.error(f"{operation} 실패 ({connection_id}): {message}")
        return await self._record(connection_id, operation, SyncResult.fail(message, errors=errors))

    def _check_budget(self, connection: MarketplaceConnection, request_count: int) -> Optional[str]:
        """시간당 호출 한도를 넘는 배치인지 사전 확인"""
        info = self.factory.get_marketplace_info(connection.market_type)
        if info.rate_limits.fits_hourly_budget(request_count):
            return None
        return (
            f"Batch of {request_count} requests exceeds {info.name} hourly budget "
            f"({info.rate_limits.requests_per_hour}/hour)"
        )

    async def test_connection(self, connection_id: str) -> "Result[ConnectionTestResult]":
        """연동 연결 테스트"""
        loaded = await self._load_connection(connection_id)
        if loaded.is_failure():
            return loaded
        connection = loaded.get_value()

        try:
            async with self.factory.create_connector(
                connection.market_type, connection.credentials, connection.settings
            ) as connector:
                result = await connector.test_connection()
        except Exception as e:
            logger.error(f"연결 테스트 중 오류 발생 ({connection_id}): {e}", exc_info=True)
            return Failure(f"연결 테스트 중 오류 발생: {e}", errors=getattr(e, 'errors', [str(e)]))

        if result.success:
            return Success(result)
        return Failure(result.error or "연결 테스트 실패", result)

    async def sync_inventory(self, connection_id: str, updates: List[InventoryUpdate]) -> "Result[SyncResult]":
        """재고 동기화 (임계값 미만 변경 제외)"""
        operation = "sync_inventory"
        loaded = await self._load_connection(connection_id)
        if loaded.is_failure():
            return loaded
        connection = loaded.get_value()
        threshold = connection.settings.inventory_update_threshold or 0

        selected, skipped = filter_inventory_updates(
            updates, await self._known_listings(connection_id), threshold
        )
        if skipped:
            logger.info(f"재고 변경 {len(skipped)}건 임계값 미만으로 건너뜀: {connection_id}")

        return await self._push_batch(connection, operation, selected, "update_inventory")

    async def sync_pricing(self, connection_id: str, updates: List[PriceUpdate]) -> "Result[SyncResult]":
        """가격 동기화 (변동률 임계값 미만 제외)"""
        operation = "sync_pricing"
        loaded = await self._load_connection(connection_id)
        if loaded.is_failure():
            return loaded
        connection = loaded.get_value()
        threshold = connection.settings.price_update_threshold or 0.0

        selected, skipped = filter_price_updates(
            updates, await self._known_listings(connection_id), threshold
        )
        if skipped:
            logger.info(f"가격 변경 {len(skipped)}건 임계값 미만으로 건너뜀: {connection_id}")

        return await self._push_batch(connection, operation, selected, "update_pricing")

    async def _push_batch(
        self,
        connection: MarketplaceConnection,
        operation: str,
        updates: list,
        method: str
    ) -> "Result[SyncResult]":
        if not updates:
            return await self._record(
                connection.id, operation, SyncResult.ok(f"{operation}: nothing to sync", data=BatchReport())
            )

        over_budget = self._check_budget(connection, len(updates))
        if over_budget:
            return await self._fail(connection.id, operation, over_budget, [over_budget])

        try:
            async with self.factory.create_connector(
                connection.market_type, connection.credentials, connection.settings
            ) as connector:
                result = await getattr(connector, method)(updates)
        except Exception as e:
            return await self._fail(
                connection.id, operation, f"{operation} 중 오류 발생: {e}", getattr(e, 'errors', [str(e)])
            )

        if result.success:
            await self.repository.update_last_synced(connection.id, self.clock.now())
        return await self._record(connection.id, operation, result)

    async def sync_listings(self, connection_id: str) -> "Result[List[ProductListing]]":
        """마켓 리스팅 가져오기"""
        operation = "sync_listings"
        loaded = await self._load_connection(connection_id)
        if loaded.is_failure():
            return loaded
        connection = loaded.get_value()

        try:
            async with self.factory.create_connector(
                connection.market_type, connection.credentials, connection.settings
            ) as connector:
                listings = await connector.get_listings()
        except Exception as e:
            failed = await self._fail(
                connection_id, operation, f"리스팅 동기화 중 오류 발생: {e}", getattr(e, 'errors', [str(e)])
            )
            return Failure(failed.get_error(), errors=failed.errors)

        await self.repository.save_listings(connection_id, listings)
        await self.repository.update_last_synced(connection_id, self.clock.now())
        await self._record(connection_id, operation, SyncResult.ok(f"Fetched {len(listings)} listings"))
        return Success(listings)

    async def sync_orders(
        self,
        connection_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> "Result[List[MarketplaceOrder]]":
        """마켓 주문 가져오기 (시작일 미지정 시 마지막 주문 동기화 시점부터)"""
        operation = "sync_orders"
        loaded = await self._load_connection(connection_id)
        if loaded.is_failure():
            return loaded
        connection = loaded.get_value()
        # 주문 기준점은 조회 시작 시각
        started_at = self.clock.now()

        try:
            async with self.factory.create_connector(
                connection.market_type, connection.credentials, connection.settings
            ) as connector:
                orders = await connector.get_orders(start_date or connection.last_orders_synced_at, end_date)
        except Exception as e:
            failed = await self._fail(
                connection_id, operation, f"주문 동기화 중 오류 발생: {e}", getattr(e, 'errors', [str(e)])
            )
            return Failure(failed.get_error(), errors=failed.errors)

        await self.repository.save_orders(connection_id, orders)
        if end_date is None:
            await self.repository.update_orders_synced(connection_id, started_at)
        await self._record(connection_id, operation, SyncResult.ok(f"Fetched {len(orders)} orders"))
        return Success(orders)

    async def sync_if_due(self, connection_id: str) -> "Result[List[MarketplaceOrder]]":
        """자동 동기화 주기가 되었으면 리스팅과 주문을 가져온다"""
        loaded = await self._load_connection(connection_id)
        if loaded.is_failure():
            return loaded
        connection = loaded.get_value()

        settings = connection.settings.resolved(self.factory.config)
        if not settings.is_sync_due(connection.last_synced_at, self.clock.now()):
            return Success([])

        listings = await self.sync_listings(connection_id)
        if listings.is_failure():
            return listings
        return await self.sync_orders(connection_id)
