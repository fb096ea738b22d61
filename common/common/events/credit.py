"""크레딧 원장 이벤트 정의."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Self


class CreditEventType:
    """크레딧 이벤트 타입 상수."""

    CREDIT_GRANTED = "credit.granted"
    CREDIT_DEDUCTED = "credit.deducted"
    CREDIT_REFUNDED = "credit.refunded"


@dataclass(slots=True)
class CreditGrantedEvent:
    """크레딧 지급 이벤트.

    구매 승인, 구독 갱신, 프로모션, 환불로 버킷이 생성되면 발행된다.
    """

    id: str
    type: str
    timestamp: str
    source: str
    version: str
    user_id: str
    bucket_id: str
    credit_type: str
    amount: int
    balance: int
    expires_in_days: int | None
    source_transaction_id: str | None
    reason: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        return cls(
            id=str(data["id"]),
            type=str(data["type"]),
            timestamp=str(data["timestamp"]),
            source=str(data["source"]),
            version=str(data.get("version", "1.0")),
            user_id=str(data["user_id"]),
            bucket_id=str(data["bucket_id"]),
            credit_type=str(data["credit_type"]),
            amount=int(data["amount"]),
            balance=int(data["balance"]),
            expires_in_days=(
                int(data["expires_in_days"])
                if data.get("expires_in_days") is not None
                else None
            ),
            source_transaction_id=data.get("source_transaction_id"),
            reason=str(data["reason"]),
        )


@dataclass(slots=True)
class CreditDeductedEvent:
    """크레딧 차감 이벤트.

    유료 작업 접수 전에 차감이 커밋되면 발행된다.
    """

    id: str
    type: str
    timestamp: str
    source: str
    version: str
    user_id: str
    amount: int
    remaining: int
    reason: str
    bucket_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        return cls(
            id=str(data["id"]),
            type=str(data["type"]),
            timestamp=str(data["timestamp"]),
            source=str(data["source"]),
            version=str(data.get("version", "1.0")),
            user_id=str(data["user_id"]),
            amount=int(data["amount"]),
            remaining=int(data["remaining"]),
            reason=str(data["reason"]),
            bucket_ids=[str(item) for item in data.get("bucket_ids", [])],
        )
