"""동기화 결과 도메인 엔티티"""
from dataclasses import dataclass, field
from typing import Any, List, Optional
from datetime import datetime, timezone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SyncResult:
    """변경 작업 공통 결과 (예외 대신 반환)"""
    success: bool
    message: str
    data: Optional[Any] = None
    errors: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=_utcnow)

    @classmethod
    def ok(cls, message: str, data: Optional[Any] = None) -> "SyncResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(
        cls,
        message: str,
        errors: Optional[List[str]] = None,
        data: Optional[Any] = None
    ) -> "SyncResult":
        return cls(success=False, message=message, data=data, errors=list(errors or [message]))


@dataclass
class ItemResult:
    """배치 항목별 처리 결과"""
    sku: str
    success: bool
    error: Optional[str] = None
    external_id: Optional[str] = None


@dataclass
class BatchReport:
    """배치 처리 결과 정보"""
    results: List[ItemResult] = field(default_factory=list)

    def add_success(self, sku: str, external_id: Optional[str] = None) -> None:
        """성공 추가"""
        self.results.append(ItemResult(sku=sku, success=True, external_id=external_id))

    def add_failure(self, sku: str, error: str) -> None:
        """실패 추가"""
        self.results.append(ItemResult(sku=sku, success=False, error=error))

    @property
    def succeeded_skus(self) -> List[str]:
        return [r.sku for r in self.results if r.success]

    @property
    def failed_skus(self) -> List[str]:
        return [r.sku for r in self.results if not r.success]

    @property
    def success_count(self) -> int:
        return len(self.succeeded_skus)

    @property
    def failure_count(self) -> int:
        return len(self.failed_skus)

    @property
    def total_count(self) -> int:
        return len(self.results)

    def is_successful(self) -> bool:
        """전체 성공 여부"""
        return self.failure_count == 0

    def get_errors(self) -> List[str]:
        return [f"{r.sku}: {r.error}" for r in self.results if not r.success]

    def to_sync_result(self, operation: str) -> SyncResult:
        """배치 결과를 SyncResult 로 변환"""
        message = (
            f"{operation}: {self.success_count} successful, "
            f"{self.failure_count} failed"
        )
        return SyncResult(
            success=self.is_successful(),
            message=message,
            data=self,
            errors=self.get_errors()
        )
