"""마켓 커넥터 팩토리"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional, Type, Union

import httpx
from pydantic import ValidationError as PydanticValidationError

from marketsync.adapters.markets.amazon_adapter import AMAZON_INFO, AmazonAdapter
from marketsync.adapters.markets.ebay_adapter import EBAY_INFO, EbayAdapter
from marketsync.adapters.markets.walmart_adapter import WALMART_INFO, WalmartAdapter
from marketsync.adapters.persistence.clock_adapter import ClockAdapter
from marketsync.core.entities.credentials import (
    ConnectorCredentials, MarketplaceCredentials, MarketplaceSettings,
    to_amazon_credentials, to_ebay_credentials, to_walmart_credentials
)
from marketsync.core.exceptions import UnsupportedMarketplaceError, ValidationError
from marketsync.core.ports.clock_port import ClockPort
from marketsync.core.ports.connector_factory_port import ConnectorFactoryPort
from marketsync.core.ports.market_port import MarketPort, MarketplaceInfo, MarketType
from marketsync.shared.config import Settings, get_settings
from marketsync.shared.logging import get_logger, log_marketplace_operation

CredentialsInput = Union[MarketplaceCredentials, Mapping[str, Any]]
SettingsInput = Union[MarketplaceSettings, Mapping[str, Any], None]


class _Registration(NamedTuple):
    info: MarketplaceInfo
    convert: Callable[[MarketplaceCredentials], ConnectorCredentials]
    adapter: Type[MarketPort]


MARKETPLACE_REGISTRY: Dict[MarketType, _Registration] = {
    MarketType.AMAZON: _Registration(AMAZON_INFO, to_amazon_credentials, AmazonAdapter),
    MarketType.EBAY: _Registration(EBAY_INFO, to_ebay_credentials, EbayAdapter),
    MarketType.WALMART: _Registration(WALMART_INFO, to_walmart_credentials, WalmartAdapter),
}


@dataclass
class CredentialValidation:
    """인증 정보 검증 결과"""
    valid: bool
    errors: List[str] = field(default_factory=list)


def _parse_credentials(credentials: CredentialsInput) -> MarketplaceCredentials:
    if isinstance(credentials, MarketplaceCredentials):
        return credentials
    try:
        return MarketplaceCredentials.model_validate(dict(credentials))
    except PydanticValidationError as e:
        errors = [
            f"Invalid credential: {'.'.join(str(part) for part in error['loc'])}"
            for error in e.errors()
        ]
        raise ValidationError("Invalid credentials", errors=errors) from e


def _parse_settings(settings: SettingsInput) -> MarketplaceSettings:
    if settings is None:
        return MarketplaceSettings()
    if isinstance(settings, MarketplaceSettings):
        return settings
    try:
        return MarketplaceSettings.model_validate(dict(settings))
    except PydanticValidationError as e:
        errors = [
            f"Invalid setting: {'.'.join(str(part) for part in error['loc'])} ({error['msg']})"
            for error in e.errors()
        ]
        raise ValidationError("Invalid marketplace settings", errors=errors) from e


class MarketplaceConnectorFactory(ConnectorFactoryPort):
    """마켓 커넥터 생성 및 기능 정보 제공

    로거, 설정, 시계, HTTP transport 는 생성자로 주입하며 생성하는 모든
    커넥터에 그대로 전달한다.
    """

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        config: Optional[Settings] = None,
        environment: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[ClockPort] = None
    ):
        self.logger = logger if logger is not None else get_logger(__name__)
        self.config = config or get_settings()
        self.environment = environment or self.config.environment
        self.transport = transport
        self.clock = clock or ClockAdapter()

    def _registration(self, marketplace: Union[MarketType, str]) -> _Registration:
        market_type = MarketType.parse(marketplace)
        if market_type is None or market_type not in MARKETPLACE_REGISTRY:
            raise UnsupportedMarketplaceError(
                f"Unsupported marketplace type: {getattr(marketplace, 'value', marketplace)}",
                details={'supported': [m.value for m in MARKETPLACE_REGISTRY]}
            )
        return MARKETPLACE_REGISTRY[market_type]

    def create_connector(
        self,
        marketplace: Union[MarketType, str],
        credentials: CredentialsInput,
        settings: SettingsInput = None
    ) -> MarketPort:
        """인증 정보 검증 후 마켓 커넥터 생성 (네트워크 호출 없음)"""
        registration = self._registration(marketplace)
        market = registration.info.marketplace.value
        parsed = _parse_credentials(credentials)

        validation = self.validate_credentials(registration.info.marketplace, parsed)
        if not validation.valid:
            self.logger.error(f"{market} 인증 정보 검증 실패: {', '.join(validation.errors)}")
            raise ValidationError(
                f"Invalid credentials for {market}",
                errors=validation.errors,
                marketplace=market
            )

        connector = registration.adapter(
            registration.convert(parsed),
            _parse_settings(settings),
            config=self.config,
            clock=self.clock,
            environment=self.environment,
            transport=self.transport,
            logger=self.logger
        )
        log_marketplace_operation(
            self.logger, market, "create_connector", environment=self.environment
        )
        return connector

    def validate_credentials(
        self,
        marketplace: Union[MarketType, str],
        credentials: CredentialsInput
    ) -> CredentialValidation:
        """필수 인증 정보 확인 (네트워크 호출 없음)"""
        try:
            registration = self._registration(marketplace)
            parsed = _parse_credentials(credentials)
        except (UnsupportedMarketplaceError, ValidationError) as e:
            return CredentialValidation(valid=False, errors=e.errors)

        missing = parsed.missing_fields(registration.info.required_credentials)
        errors = [f"Missing required credential: {name}" for name in missing]
        return CredentialValidation(valid=not errors, errors=errors)

    def get_supported_marketplaces(self) -> List[MarketType]:
        return list(MARKETPLACE_REGISTRY)

    def get_marketplace_info(self, marketplace: Union[MarketType, str]) -> MarketplaceInfo:
        """마켓 기능/호출 제한 정보 (현재 환경 기준)"""
        return self._registration(marketplace).info.with_connection(None, self.environment)
