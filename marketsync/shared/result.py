"""Result/Either 패턴 (유즈케이스 반환값)"""
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, List, TypeVar, Union

from marketsync.core.entities.sync_result import SyncResult

T = TypeVar('T')


@dataclass
class Success(Generic[T]):
    """성공 결과"""
    value: T

    def is_success(self) -> bool:
        return True

    def is_failure(self) -> bool:
        return False

    def get_value(self) -> T:
        return self.value

    def get_error(self) -> None:
        return None

    def map(self, fn: Callable[[T], Any]) -> 'Result[Any]':
        return Success(fn(self.value))


@dataclass
class Failure(Generic[T]):
    """실패 결과 (진단용 오류 목록 포함)"""
    error: str
    value: T = None
    errors: List[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.errors:
            self.errors = [self.error]

    def is_success(self) -> bool:
        return False

    def is_failure(self) -> bool:
        return True

    def get_value(self) -> T:
        return self.value

    def get_error(self) -> str:
        return self.error

    def map(self, fn: Callable[[T], Any]) -> 'Result[Any]':
        return self


Result = Union[Success[T], Failure[T]]


def from_sync_result(result: SyncResult) -> 'Result[SyncResult]':
    """SyncResult 를 Result 로 변환"""
    if result.success:
        return Success(result)
    return Failure(result.message, result, list(result.errors))
