"""마켓 어댑터 공통 함수 (매핑, 결과 변환, 연결 테스트)"""
import logging
from datetime import datetime, timedelta, timezone
from typing import (
    Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, TypeVar, Union
)

from marketsync.adapters.auth.token_store import TokenInfo
from marketsync.core.entities.order import OrderStatus
from marketsync.core.entities.sync_result import SyncResult
from marketsync.core.exceptions import (
    AuthenticationError, MarketplaceError, PermissionDeniedError, ValidationError
)
from marketsync.core.ports.clock_port import ClockPort
from marketsync.core.ports.market_port import ConnectionTestResult

T = TypeVar('T')


def token_from_response(body: Mapping[str, Any], clock: ClockPort) -> TokenInfo:
    """OAuth 토큰 응답을 TokenInfo 로 변환"""
    access_token = body.get("access_token")
    if not access_token:
        raise AuthenticationError("Token response did not include an access_token")

    expires_in = body.get("expires_in")
    expires_at = None
    if expires_in is not None:
        expires_at = clock.now() + timedelta(seconds=int(expires_in))

    return TokenInfo(
        access_token=access_token,
        expires_at=expires_at,
        token_type=body.get("token_type") or "Bearer"
    )


def parse_timestamp(value: Any, default: Optional[datetime] = None) -> Optional[datetime]:
    """ISO 8601 문자열 또는 epoch(ms) 값을 UTC datetime 으로 변환"""
    if value is None or value == "":
        return default
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    text = str(value).strip()
    if text.isdigit():
        return datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return default
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def format_timestamp(value: datetime) -> str:
    """UTC ISO 8601 (Z) 문자열"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def to_float(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def to_int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def coerce_order_status(status: Union[OrderStatus, str]) -> Optional[OrderStatus]:
    """공통 주문 상태로 변환 (알 수 없으면 None)"""
    if isinstance(status, OrderStatus):
        return status
    try:
        return OrderStatus(str(status).strip().lower())
    except ValueError:
        return None


def operation_failed(
    logger: logging.Logger,
    marketplace: str,
    operation: str,
    message: str,
    error: Exception
) -> SyncResult:
    """작업 실패를 SyncResult 로 변환 (예외를 호출자에게 전달하지 않음)"""
    if isinstance(error, MarketplaceError):
        errors = error.errors
    else:
        errors = [str(error) or error.__class__.__name__]

    logger.error(
        f"Marketplace operation failed: {marketplace}.{operation} - {errors[0]}",
        extra={'marketplace': marketplace, 'operation': operation}
    )
    return SyncResult.fail(message, errors=errors)


async def run_connection_test(
    marketplace: str,
    authenticate: Callable[[], Awaitable[bool]],
    probe: Callable[[], Awaitable[Dict[str, Any]]],
    clock: ClockPort,
    details: Dict[str, Any],
    logger: logging.Logger
) -> ConnectionTestResult:
    """1단계 인증(토큰 발급), 2단계 권한 확인(조회 API) 연결 테스트"""
    started = clock.monotonic()
    result_details = dict(details)

    def finish(**kwargs) -> ConnectionTestResult:
        return ConnectionTestResult(
            details=result_details,
            duration_ms=(clock.monotonic() - started) * 1000,
            tested_at=clock.now(),
            **kwargs
        )

    if not await authenticate():
        result_details['step'] = 'token_request'
        return finish(
            authenticated=False,
            error=f"{marketplace} authentication failed: could not obtain an access token"
        )

    try:
        probe_details = await probe()
    except PermissionDeniedError as e:
        # 토큰은 발급되었으나 리소스 권한이 없음
        logger.warning(f"{marketplace} 연결 테스트: 인증 성공, 권한 없음 - {e.message}")
        result_details['step'] = 'authorization_probe'
        return finish(authenticated=True, authorized=False, error=e.message)
    except MarketplaceError as e:
        logger.error(f"{marketplace} 연결 테스트: 권한 확인 요청 실패 - {e.message}")
        result_details['step'] = 'authorization_probe'
        return finish(authenticated=True, authorized=None, error=e.message)

    result_details.update(probe_details)
    return finish(authenticated=True, authorized=True)


def map_records(
    records: Iterable[Mapping[str, Any]],
    mapper: Callable[[Mapping[str, Any]], T],
    marketplace: str,
    record_type: str,
    logger: logging.Logger
) -> List[T]:
    """마켓 레코드를 공통 엔티티로 변환 (형식이 잘못된 레코드는 건너뜀)"""
    mapped = []
    for record in records:
        try:
            mapped.append(mapper(record))
        except (ValidationError, KeyError, TypeError, ValueError) as e:
            logger.warning(
                f"{marketplace} {record_type} 레코드 변환 실패, 건너뜀: {e}",
                extra={'marketplace': marketplace, 'record_type': record_type}
            )
    return mapped
