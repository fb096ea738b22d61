from __future__ import annotations

from datetime import datetime
from typing import Callable, Protocol, TypeVar

from ..models.credit import CreditBucket, CreditTransaction


T = TypeVar("T")


class CreditUnitOfWork(Protocol):
    """유저 단위 잠금이 걸린 하나의 트랜잭션 안에서만 유효한 작업 핸들.

    run_locked 콜백이 정상 반환하면 모든 쓰기가 한 번에 커밋되고,
    예외가 발생하면 어떤 쓰기도 반영되지 않는다.
    """

    user_id: str

    def list_active(
        self, now: datetime
    ) -> list[CreditBucket]:  # pragma: no cover - Protocol
        ...

    def set_credits(
        self, bucket_id: str, credits: int, now: datetime
    ) -> None:  # pragma: no cover - Protocol
        ...

    def insert_bucket(
        self, bucket: CreditBucket
    ) -> CreditBucket:  # pragma: no cover - Protocol
        ...

    def record_transaction(
        self, tx: CreditTransaction
    ) -> CreditTransaction:  # pragma: no cover - Protocol
        ...


class CreditBucketRepositoryInterface(Protocol):
    """CreditBucketRepository가 따라야 할 최소한의 계약.

    - 조회(list_active, sum_active_bulk)는 잠금 없이 최신 커밋 상태를 읽는다.
    - 모든 변경은 run_locked 를 통해서만 수행한다.
    """

    def list_active(
        self, user_id: str, now: datetime
    ) -> list[CreditBucket]:  # pragma: no cover - Protocol
        ...

    def sum_active_bulk(
        self, user_ids: list[str], now: datetime
    ) -> dict[str, int]:  # pragma: no cover - Protocol
        ...

    def run_locked(
        self, user_id: str, work: Callable[[CreditUnitOfWork], T]
    ) -> T:  # pragma: no cover - Protocol
        """user_id 잠금을 잡은 트랜잭션 안에서 work 를 실행하고 커밋한다."""
        ...


class CreditTransactionRepositoryInterface(Protocol):
    def list_by_user(
        self, user_id: str, page: int, page_size: int
    ) -> tuple[list[CreditTransaction], int]:  # pragma: no cover - Protocol
        ...
