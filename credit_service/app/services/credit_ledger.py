"""크레딧 원장 서비스.

잔액 조회, 버킷 지급, 우선순위 차감(전부 아니면 전무), 환불, 이력 조회를 처리한다.
모든 변경은 레포지토리의 유저 단위 잠금 트랜잭션 안에서 감사 로그와 함께 커밋된다.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from fastapi import Depends
from pymongo.database import Database

from common.mongo.client import get_database
from common.types.datetime import utcnow

from ..config import LedgerConfig, load_config
from ..exceptions import InsufficientBalanceError, InvalidInputError, PersistenceError
from ..models.credit import (
    ConsumedBucket,
    CreditBucket,
    CreditSummary,
    CreditTransaction,
    CreditType,
    DeductResult,
    TransactionType,
)
from ..repositories.credit_repository import (
    CreditBucketRepository,
    CreditTransactionRepository,
)
from ..repositories.interfaces import (
    CreditBucketRepositoryInterface,
    CreditTransactionRepositoryInterface,
    CreditUnitOfWork,
)
from .credit_costs import required_credits_for
from .deduction_policy import order_for_deduction, plan_deduction


logger = logging.getLogger(__name__)

INSUFFICIENT_BALANCE = "insufficient_balance"
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def normalize_paging(page: int, page_size: int) -> tuple[int, int]:
    """page <= 0 이면 1, page_size 가 1..MAX_PAGE_SIZE 밖이면 기본값으로 맞춘다."""
    if page <= 0:
        page = 1
    if page_size <= 0 or page_size > MAX_PAGE_SIZE:
        page_size = DEFAULT_PAGE_SIZE
    return page, page_size


class CreditLedger:
    """크레딧 버킷 원장 비즈니스 로직.

    - Repository 인터페이스에만 의존하고, Mongo 세부 구현은 알지 않는다.
    - 잔액은 캐시하지 않고 매번 저장소의 최신 커밋 상태에서 계산한다.
    """

    def __init__(
        self,
        bucket_repo: CreditBucketRepositoryInterface,
        transaction_repo: CreditTransactionRepositoryInterface,
        *,
        config: LedgerConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._bucket_repo = bucket_repo
        self._transaction_repo = transaction_repo
        self._config = config or LedgerConfig()
        self._clock = clock

    # 조회 -----------------------------------------------------------------
    def get_balance(self, user_id: str) -> int:
        """활성 버킷 잔량 합계. 버킷이 없으면 0."""
        buckets = self._bucket_repo.list_active(user_id, self._clock())
        return sum(bucket.credits for bucket in buckets)

    def has_sufficient_balance(self, user_id: str, amount: int) -> bool:
        """get_balance(user_id) >= amount.

        이후의 deduct 와 원자적이지 않다. 원자성이 필요하면 deduct 결과를 사용한다.
        """
        return self.get_balance(user_id) >= amount

    def get_summary(self, user_id: str) -> CreditSummary:
        """잔액과 활성 버킷 목록(차감 순서)을 함께 조회."""
        now = self._clock()
        buckets = order_for_deduction(self._bucket_repo.list_active(user_id, now))
        return CreditSummary(
            user_id=user_id,
            balance=sum(bucket.credits for bucket in buckets),
            buckets=buckets,
        )

    def get_balance_bulk(self, user_ids: list[str]) -> dict[str, int]:
        return self._bucket_repo.sum_active_bulk(user_ids, self._clock())

    def get_history(
        self, user_id: str, page: int = 1, page_size: int = 20
    ) -> tuple[list[CreditTransaction], int]:
        page, page_size = normalize_paging(page, page_size)
        return self._transaction_repo.list_by_user(user_id, page, page_size)

    # 지급 -----------------------------------------------------------------
    def grant(
        self,
        user_id: str,
        amount: int,
        credit_type: CreditType | str,
        expires_in_days: int | None = None,
        source_transaction_id: str | None = None,
        reason: str = "grant",
    ) -> str | None:
        """새 버킷을 하나 만들고 그 ID 를 반환한다. amount <= 0 이면 아무것도 하지 않고 None."""
        return self._grant(
            user_id,
            amount,
            credit_type,
            expires_in_days=expires_in_days,
            source_transaction_id=source_transaction_id,
            reason=reason,
            tx_type=TransactionType.GRANT,
        )

    def refund(
        self,
        user_id: str,
        amount: int,
        reason: str = "refund",
        source_transaction_id: str | None = None,
    ) -> str | None:
        """실패한 작업에 대한 보상 지급. 만료 없는 purchased 버킷으로 돌려준다."""
        return self._grant(
            user_id,
            amount,
            CreditType.PURCHASED,
            expires_in_days=None,
            source_transaction_id=source_transaction_id,
            reason=reason,
            tx_type=TransactionType.REFUND,
        )

    def _grant(
        self,
        user_id: str,
        amount: int,
        credit_type: CreditType | str,
        *,
        expires_in_days: int | None,
        source_transaction_id: str | None,
        reason: str,
        tx_type: TransactionType,
    ) -> str | None:
        if amount <= 0:
            logger.debug("ignoring non-positive grant user_id=%s amount=%d", user_id, amount)
            return None
        if expires_in_days is not None and expires_in_days <= 0:
            raise InvalidInputError(
                f"expires_in_days must be positive, got {expires_in_days}"
            )
        try:
            bucket_type = CreditType(credit_type)
        except ValueError as exc:
            raise InvalidInputError(f"unknown credit type: {credit_type!r}") from exc

        def _apply(uow: CreditUnitOfWork) -> CreditBucket:
            now = self._clock()
            expires_at = (
                now + timedelta(days=expires_in_days)
                if expires_in_days is not None
                else None
            )
            bucket = uow.insert_bucket(
                CreditBucket(
                    user_id=user_id,
                    credits=amount,
                    original_credits=amount,
                    type=bucket_type,
                    expires_at=expires_at,
                    source_transaction_id=source_transaction_id,
                    created_at=now,
                    updated_at=now,
                )
            )
            uow.record_transaction(
                CreditTransaction(
                    user_id=user_id,
                    type=tx_type,
                    amount=amount,
                    credit_type=bucket_type,
                    bucket_ids=[bucket.id] if bucket.id else [],
                    reason=reason,
                    source_transaction_id=source_transaction_id,
                    created_at=now,
                    updated_at=now,
                )
            )
            return bucket

        bucket = self._bucket_repo.run_locked(user_id, _apply)
        logger.info(
            "granted credits user_id=%s amount=%d type=%s bucket_id=%s expires_at=%s",
            user_id,
            amount,
            bucket_type,
            bucket.id,
            bucket.expires_at.isoformat() if bucket.expires_at else None,
        )
        return bucket.id

    # 차감 -----------------------------------------------------------------
    def deduct(self, user_id: str, amount: int, reason: str = "deduct") -> DeductResult:
        """amount 전체를 차감하거나, 아무것도 차감하지 않는다."""
        if amount <= 0:
            raise InvalidInputError(f"deduct amount must be positive, got {amount}")

        def _apply(uow: CreditUnitOfWork) -> DeductResult:
            now = self._clock()
            buckets = uow.list_active(now)
            plan = plan_deduction(buckets, amount)
            if plan is None:
                # 예외로 트랜잭션을 중단시켜 어떤 쓰기도 남기지 않는다.
                raise InsufficientBalanceError(
                    user_id, amount, sum(b.credits for b in buckets)
                )

            consumed: list[ConsumedBucket] = []
            for bucket, take in plan:
                if bucket.id is None:
                    raise PersistenceError(f"active bucket without id for user {user_id}")
                uow.set_credits(bucket.id, bucket.credits - take, now)
                consumed.append(ConsumedBucket(bucket_id=bucket.id, credits=take))

            uow.record_transaction(
                CreditTransaction(
                    user_id=user_id,
                    type=TransactionType.DEDUCT,
                    amount=amount,
                    bucket_ids=[item.bucket_id for item in consumed],
                    reason=reason,
                    created_at=now,
                    updated_at=now,
                )
            )
            remaining = sum(b.credits for b in buckets) - amount
            return DeductResult(
                success=True, amount=amount, remaining=remaining, consumed=consumed
            )

        try:
            result = self._bucket_repo.run_locked(user_id, _apply)
        except InsufficientBalanceError as exc:
            logger.info(
                "insufficient credits user_id=%s requested=%d available=%d",
                user_id,
                exc.requested,
                exc.available,
            )
            return DeductResult(
                success=False,
                amount=amount,
                remaining=exc.available,
                reason=INSUFFICIENT_BALANCE,
            )

        logger.info(
            "deducted credits user_id=%s amount=%d remaining=%d buckets=%s",
            user_id,
            amount,
            result.remaining,
            result.consumed_bucket_ids,
        )
        return result

    def charge_for_action(
        self, user_id: str, action_type: str, reason: str | None = None
    ) -> DeductResult:
        """미디어 생성 액션 비용만큼 차감한다 (Job Dispatch 용)."""
        cost = required_credits_for(action_type, self._config.action_costs)
        return self.deduct(user_id, cost, reason=reason or f"gen-{action_type}")


def get_credit_ledger(db: Database = Depends(get_database)) -> CreditLedger:
    """FastAPI DI용 CreditLedger 팩토리."""
    config = load_config()
    return CreditLedger(
        bucket_repo=CreditBucketRepository(
            db, lock_timeout_seconds=config.lock_timeout_seconds
        ),
        transaction_repo=CreditTransactionRepository(db),
        config=config,
    )
