"""크레딧 버킷 도메인 모델.

유저당 여러 버킷(지급 단위)을 가지며, 각 버킷은 독립적인 잔량과 만료시간을 가진다.
잔액은 저장하지 않고 항상 활성 버킷의 합으로 계산한다.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from common.mongo.types import MongoDateTime, OptionalMongoDateTime


class CreditType(StrEnum):
    """버킷 지급 유형."""

    PURCHASED = "purchased"
    PROMOTIONAL = "promotional"
    SUBSCRIPTION = "subscription"


class BucketState(StrEnum):
    """버킷의 논리 상태. 저장되지 않고 현재 시각 기준으로 계산된다."""

    ACTIVE = "active"
    EXHAUSTED = "exhausted"
    EXPIRED = "expired"


class TransactionType(StrEnum):
    GRANT = "grant"
    DEDUCT = "deduct"
    REFUND = "refund"


class CreditBucket(BaseModel):
    """개별 크레딧 버킷 도메인 모델."""

    id: str | None = None
    user_id: str
    credits: int = Field(ge=0)  # 현재 남은 수량
    original_credits: int = Field(ge=0)  # 최초 지급량
    type: CreditType
    expires_at: OptionalMongoDateTime = None  # None 이면 만료되지 않음
    source_transaction_id: str | None = None
    created_at: MongoDateTime
    updated_at: MongoDateTime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def is_active(self, now: datetime) -> bool:
        return self.credits > 0 and not self.is_expired(now)

    def state(self, now: datetime) -> BucketState:
        if self.is_expired(now):
            return BucketState.EXPIRED
        if self.credits == 0:
            return BucketState.EXHAUSTED
        return BucketState.ACTIVE


class CreditSummary(BaseModel):
    """유저 크레딧 집계 결과."""

    user_id: str
    balance: int  # 활성 버킷 합계
    buckets: list[CreditBucket]  # 차감 순서로 정렬된 활성 버킷


class ConsumedBucket(BaseModel):
    bucket_id: str
    credits: int


class DeductResult(BaseModel):
    """차감 결과. 실패는 예외가 아니라 reason 으로 표현한다."""

    success: bool
    amount: int
    remaining: int
    reason: str | None = None  # "insufficient_balance"
    consumed: list[ConsumedBucket] = Field(default_factory=list)

    @property
    def consumed_bucket_ids(self) -> list[str]:
        return [item.bucket_id for item in self.consumed]


class CreditTransaction(BaseModel):
    """크레딧 변경 감사 로그 도메인 모델."""

    id: str | None = None
    user_id: str
    type: TransactionType
    amount: int
    credit_type: CreditType | None = None
    bucket_ids: list[str] = Field(default_factory=list)
    reason: str
    source_transaction_id: str | None = None
    created_at: MongoDateTime
    updated_at: MongoDateTime
