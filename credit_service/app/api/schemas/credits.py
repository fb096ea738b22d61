from __future__ import annotations

from pydantic import BaseModel, Field

from common.types.datetime import UtcDateTime

from ...models.credit import CreditBucket, CreditType


class BucketResponse(BaseModel):
    """개별 버킷 정보."""

    id: str | None
    credits: int
    original_credits: int
    type: CreditType
    expires_at: UtcDateTime | None
    source_transaction_id: str | None
    created_at: UtcDateTime

    @classmethod
    def from_domain(cls, bucket: CreditBucket) -> "BucketResponse":
        return cls(
            id=bucket.id,
            credits=bucket.credits,
            original_credits=bucket.original_credits,
            type=bucket.type,
            expires_at=bucket.expires_at,
            source_transaction_id=bucket.source_transaction_id,
            created_at=bucket.created_at,
        )


class CreditSummaryResponse(BaseModel):
    """유저 크레딧 집계 결과 (계정 요약 화면용)."""

    user_id: str
    balance: int
    buckets: list[BucketResponse]


class BalanceResponse(BaseModel):
    user_id: str
    balance: int


class SufficientBalanceResponse(BaseModel):
    user_id: str
    amount: int
    sufficient: bool


class GrantRequest(BaseModel):
    """구매 승인/구독 갱신/프로모션 지급 요청."""

    amount: int
    type: CreditType = CreditType.PROMOTIONAL
    expires_in_days: int | None = None
    source_transaction_id: str | None = None
    reason: str = "grant"


class GrantResponse(BaseModel):
    """지급 결과. amount <= 0 이면 bucket_id 는 None."""

    bucket_id: str | None
    balance: int


class DeductRequest(BaseModel):
    amount: int
    reason: str = "deduct"


class ChargeRequest(BaseModel):
    """미디어 생성 액션 비용 차감 요청."""

    action_type: str
    reason: str | None = None


class ConsumedBucketResponse(BaseModel):
    bucket_id: str
    credits: int


class DeductResponse(BaseModel):
    """차감 결과."""

    consume_id: str  # 이벤트 추적용 ID
    amount: int
    remaining: int
    consumed: list[ConsumedBucketResponse]


class RefundRequest(BaseModel):
    amount: int
    reason: str = "refund"
    source_transaction_id: str | None = None


class BulkBalanceRequest(BaseModel):
    user_ids: list[str] = Field(default_factory=list, max_length=500)


class CreditTransactionResponse(BaseModel):
    """크레딧 트랜잭션(감사 로그) 응답."""

    id: str | None
    type: str
    amount: int
    credit_type: str | None
    bucket_ids: list[str]
    reason: str
    source_transaction_id: str | None
    created_at: UtcDateTime
