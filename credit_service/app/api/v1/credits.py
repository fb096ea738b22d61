"""크레딧 원장 내부 API 라우터.

Job Dispatch, Billing/Admin, Read API 가 호출하는 내부 API.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import asdict
from typing import Annotated, Iterator

from fastapi import APIRouter, Depends, HTTPException, status

from common.eventbus.config import is_events_enabled
from common.eventbus.helpers import new_json_event
from common.eventbus.kafka import get_kafka_event_bus
from common.eventbus.topics import TOPIC_CREDIT
from common.events.credit import (
    CreditDeductedEvent,
    CreditEventType,
    CreditGrantedEvent,
)
from common.schemas.pagination import PaginatedResponse
from common.types.datetime import utcnow

from ...exceptions import InvalidInputError, PersistenceError
from ...models.credit import DeductResult
from ...services.credit_ledger import CreditLedger, get_credit_ledger, normalize_paging
from ..schemas.credits import (
    BalanceResponse,
    BucketResponse,
    BulkBalanceRequest,
    ChargeRequest,
    ConsumedBucketResponse,
    CreditSummaryResponse,
    CreditTransactionResponse,
    DeductRequest,
    DeductResponse,
    GrantRequest,
    GrantResponse,
    RefundRequest,
    SufficientBalanceResponse,
)


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credits", tags=["credits"])

EVENT_SOURCE = "credit-ledger"

LedgerDep = Annotated[CreditLedger, Depends(get_credit_ledger)]


# -------- Endpoints --------


@router.post("/balances")
def get_balances(req: BulkBalanceRequest, ledger: LedgerDep) -> dict[str, int]:
    """여러 유저의 잔액 일괄 조회 (관리자 목록 화면용)."""
    with _translate_errors():
        return ledger.get_balance_bulk(req.user_ids)


@router.get("/{user_id}")
def get_credits(user_id: str, ledger: LedgerDep) -> CreditSummaryResponse:
    """유저의 잔액과 활성 버킷 조회."""
    with _translate_errors():
        summary = ledger.get_summary(user_id)
    return CreditSummaryResponse(
        user_id=summary.user_id,
        balance=summary.balance,
        buckets=[BucketResponse.from_domain(b) for b in summary.buckets],
    )


@router.get("/{user_id}/balance")
def get_balance(user_id: str, ledger: LedgerDep) -> BalanceResponse:
    with _translate_errors():
        balance = ledger.get_balance(user_id)
    return BalanceResponse(user_id=user_id, balance=balance)


@router.get("/{user_id}/sufficient")
def has_sufficient_balance(
    user_id: str, amount: int, ledger: LedgerDep
) -> SufficientBalanceResponse:
    """잔액 확인만 한다. 이후 차감과 원자적이지 않다."""
    with _translate_errors():
        sufficient = ledger.has_sufficient_balance(user_id, amount)
    return SufficientBalanceResponse(user_id=user_id, amount=amount, sufficient=sufficient)


@router.post("/{user_id}/grant")
def grant_credits(user_id: str, req: GrantRequest, ledger: LedgerDep) -> GrantResponse:
    """구매 승인, 구독 갱신, 프로모션 지급."""
    with _translate_errors():
        bucket_id = ledger.grant(
            user_id,
            req.amount,
            req.type,
            expires_in_days=req.expires_in_days,
            source_transaction_id=req.source_transaction_id,
            reason=req.reason,
        )
        balance = ledger.get_balance(user_id)

    if bucket_id is not None:
        _publish_credit_granted_event(
            user_id=user_id,
            bucket_id=bucket_id,
            credit_type=req.type.value,
            amount=req.amount,
            balance=balance,
            expires_in_days=req.expires_in_days,
            source_transaction_id=req.source_transaction_id,
            reason=req.reason,
            event_type=CreditEventType.CREDIT_GRANTED,
        )
    return GrantResponse(bucket_id=bucket_id, balance=balance)


@router.post("/{user_id}/refund")
def refund_credits(user_id: str, req: RefundRequest, ledger: LedgerDep) -> GrantResponse:
    """실패한 작업에 대한 보상 지급."""
    with _translate_errors():
        bucket_id = ledger.refund(
            user_id,
            req.amount,
            reason=req.reason,
            source_transaction_id=req.source_transaction_id,
        )
        balance = ledger.get_balance(user_id)

    if bucket_id is not None:
        _publish_credit_granted_event(
            user_id=user_id,
            bucket_id=bucket_id,
            credit_type="purchased",
            amount=req.amount,
            balance=balance,
            expires_in_days=None,
            source_transaction_id=req.source_transaction_id,
            reason=req.reason,
            event_type=CreditEventType.CREDIT_REFUNDED,
        )
    return GrantResponse(bucket_id=bucket_id, balance=balance)


@router.post("/{user_id}/deduct")
def deduct_credits(user_id: str, req: DeductRequest, ledger: LedgerDep) -> DeductResponse:
    """크레딧 차감 및 credit.deducted 이벤트 발행. 잔액 부족 시 402."""
    with _translate_errors():
        result = ledger.deduct(user_id, req.amount, reason=req.reason)
    return _deduct_response(user_id, result, req.reason)


@router.post("/{user_id}/charge")
def charge_credits(user_id: str, req: ChargeRequest, ledger: LedgerDep) -> DeductResponse:
    """미디어 생성 액션 비용 차감. 잔액 부족 시 402."""
    with _translate_errors():
        result = ledger.charge_for_action(user_id, req.action_type, reason=req.reason)
    return _deduct_response(user_id, result, req.reason or f"gen-{req.action_type}")


@router.get("/{user_id}/history")
def get_credit_history(
    user_id: str,
    ledger: LedgerDep,
    page: int = 1,
    page_size: int = 20,
) -> PaginatedResponse[CreditTransactionResponse]:
    """크레딧 변경 이력 조회."""
    page, page_size = normalize_paging(page, page_size)
    with _translate_errors():
        items, total = ledger.get_history(user_id, page, page_size)
    return PaginatedResponse(
        items=[
            CreditTransactionResponse(
                id=tx.id,
                type=tx.type.value,
                amount=tx.amount,
                credit_type=tx.credit_type.value if tx.credit_type else None,
                bucket_ids=tx.bucket_ids,
                reason=tx.reason,
                source_transaction_id=tx.source_transaction_id,
                created_at=tx.created_at,
            )
            for tx in items
        ],
        total=total,
        page=page,
        page_size=page_size,
    )


# -------- Helpers --------


@contextmanager
def _translate_errors() -> Iterator[None]:
    """원장 예외를 HTTP 에러로 변환한다."""
    try:
        yield
    except InvalidInputError as exc:
        raise HTTPException(
            status_code=422,
            detail={"code": "invalid_input", "message": str(exc)},
        ) from exc
    except PersistenceError as exc:
        logger.error("credit ledger unavailable: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "ledger_unavailable", "message": "please retry"},
        ) from exc


def _deduct_response(user_id: str, result: DeductResult, reason: str) -> DeductResponse:
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"code": "insufficient_credits", "message": "크레딧이 부족합니다."},
        )

    consume_id = str(uuid.uuid4())
    _publish_credit_deducted_event(
        user_id=user_id,
        consume_id=consume_id,
        result=result,
        reason=reason,
    )
    return DeductResponse(
        consume_id=consume_id,
        amount=result.amount,
        remaining=result.remaining,
        consumed=[
            ConsumedBucketResponse(bucket_id=item.bucket_id, credits=item.credits)
            for item in result.consumed
        ],
    )


def _publish_credit_granted_event(
    *,
    user_id: str,
    bucket_id: str,
    credit_type: str,
    amount: int,
    balance: int,
    expires_in_days: int | None,
    source_transaction_id: str | None,
    reason: str,
    event_type: str,
) -> None:
    """credit.granted / credit.refunded 이벤트 발행."""
    event_id = str(uuid.uuid4())
    event = CreditGrantedEvent(
        id=event_id,
        type=event_type,
        timestamp=utcnow().isoformat(),
        source=EVENT_SOURCE,
        version="1.0",
        user_id=user_id,
        bucket_id=bucket_id,
        credit_type=credit_type,
        amount=amount,
        balance=balance,
        expires_in_days=expires_in_days,
        source_transaction_id=source_transaction_id,
        reason=reason,
    )
    _publish(event_id, asdict(event))


def _publish_credit_deducted_event(
    *,
    user_id: str,
    consume_id: str,
    result: DeductResult,
    reason: str,
) -> None:
    """credit.deducted 이벤트 발행."""
    event = CreditDeductedEvent(
        id=consume_id,
        type=CreditEventType.CREDIT_DEDUCTED,
        timestamp=utcnow().isoformat(),
        source=EVENT_SOURCE,
        version="1.0",
        user_id=user_id,
        amount=result.amount,
        remaining=result.remaining,
        reason=reason,
        bucket_ids=result.consumed_bucket_ids,
    )
    _publish(consume_id, asdict(event))


def _publish(event_id: str, payload: dict) -> None:
    if not is_events_enabled():
        logger.debug("event publishing disabled, skipping event %s", event_id)
        return
    wrapped = new_json_event(payload=payload, event_id=event_id)
    bus = get_kafka_event_bus()
    bus.publish(TOPIC_CREDIT.base, wrapped)
