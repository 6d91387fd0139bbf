"""마켓 연동 예외 계층"""
from typing import Optional, Dict, Any, List

from fastapi import HTTPException, status


class MarketplaceError(Exception):
    """마켓 연동 기본 예외"""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        marketplace: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.marketplace = marketplace

    @property
    def errors(self) -> List[str]:
        return [self.message]


class ValidationError(MarketplaceError):
    """인증 정보/요청 데이터 검증 에러 (네트워크 호출 전)"""

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None,
        marketplace: Optional[str] = None
    ):
        super().__init__(message, details, marketplace)
        self._errors = list(errors) if errors else [message]

    @property
    def errors(self) -> List[str]:
        return list(self._errors)


class AuthenticationError(MarketplaceError):
    """토큰 발급/갱신 실패"""
    pass


class RateLimitError(MarketplaceError):
    """API 호출 제한 (429)"""

    retryable = True

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
        marketplace: Optional[str] = None
    ):
        super().__init__(message, details, marketplace)
        self.retry_after = retry_after


class TransientNetworkError(MarketplaceError):
    """타임아웃, 연결 오류, 5xx"""

    retryable = True

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        marketplace: Optional[str] = None
    ):
        super().__init__(message, details, marketplace)
        self.status_code = status_code


class ExternalAPIError(MarketplaceError):
    """재시도 대상이 아닌 외부 API 오류 응답"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        marketplace: Optional[str] = None
    ):
        super().__init__(message, details, marketplace)
        self.status_code = status_code


class PermissionDeniedError(ExternalAPIError):
    """인증은 되었으나 권한이 없는 요청 (403)"""
    pass


class UnsupportedMarketplaceError(MarketplaceError):
    """지원하지 않는 마켓 타입"""
    pass


def is_retryable(error: BaseException) -> bool:
    """재시도 가능한 예외인지 확인"""
    if isinstance(error, MarketplaceError):
        return error.retryable
    # 분류되지 않은 예외는 프로그래밍 오류로 보고 재시도하지 않는다
    return False


def create_http_exception(error: Exception) -> HTTPException:
    """마켓 연동 에러를 HTTP 예외로 변환"""

    # 에러 타입별 상태코드 매핑 (하위 타입 우선)
    error_type_mapping = [
        (ValidationError, status.HTTP_400_BAD_REQUEST),
        (UnsupportedMarketplaceError, status.HTTP_400_BAD_REQUEST),
        (AuthenticationError, status.HTTP_401_UNAUTHORIZED),
        (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
        (RateLimitError, status.HTTP_429_TOO_MANY_REQUESTS),
        (TransientNetworkError, status.HTTP_502_BAD_GATEWAY),
        (ExternalAPIError, status.HTTP_502_BAD_GATEWAY),
    ]

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, mapped_status in error_type_mapping:
        if isinstance(error, error_type):
            status_code = mapped_status
            break

    if isinstance(error, MarketplaceError):
        detail = {
            "message": error.message,
            "type": error.__class__.__name__,
            "errors": error.errors,
            "details": error.details
        }
    else:
        detail = {
            "message": str(error),
            "type": error.__class__.__name__,
            "errors": [str(error)],
            "details": {}
        }

    return HTTPException(status_code=status_code, detail=detail)
