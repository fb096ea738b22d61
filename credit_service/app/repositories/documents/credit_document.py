"""크레딧 MongoDB 도큐먼트.

버킷은 만료 후에도 감사 목적으로 보관하므로 TTL 인덱스를 두지 않는다.
"""

from __future__ import annotations

from common.mongo.types import (
    BaseDocument,
    OptionalMongoDateTime,
    from_object_id,
)

from ...models.credit import (
    CreditBucket,
    CreditTransaction,
    CreditType,
    TransactionType,
)


class CreditBucketDocument(BaseDocument):
    """MongoDB credit_buckets 컬렉션 도큐먼트 모델."""

    user_id: str
    credits: int
    original_credits: int
    type: str
    expires_at: OptionalMongoDateTime = None
    source_transaction_id: str | None = None

    @classmethod
    def from_domain(cls, bucket: CreditBucket) -> "CreditBucketDocument":
        return cls(
            _id=bucket.id,
            user_id=bucket.user_id,
            credits=bucket.credits,
            original_credits=bucket.original_credits,
            type=bucket.type.value,
            expires_at=bucket.expires_at,
            source_transaction_id=bucket.source_transaction_id,
            created_at=bucket.created_at,
            updated_at=bucket.updated_at,
        )

    def to_domain(self) -> CreditBucket:
        return CreditBucket(
            id=from_object_id(self.id),
            user_id=self.user_id,
            credits=self.credits,
            original_credits=self.original_credits,
            type=CreditType(self.type),
            expires_at=self.expires_at,
            source_transaction_id=self.source_transaction_id,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class CreditTransactionDocument(BaseDocument):
    """MongoDB credit_transactions 컬렉션 도큐먼트 모델."""

    user_id: str
    type: str
    amount: int
    credit_type: str | None = None
    bucket_ids: list[str] = []
    reason: str
    source_transaction_id: str | None = None

    @classmethod
    def from_domain(cls, tx: CreditTransaction) -> "CreditTransactionDocument":
        return cls(
            _id=tx.id,
            user_id=tx.user_id,
            type=tx.type.value,
            amount=tx.amount,
            credit_type=tx.credit_type.value if tx.credit_type else None,
            bucket_ids=list(tx.bucket_ids),
            reason=tx.reason,
            source_transaction_id=tx.source_transaction_id,
            created_at=tx.created_at,
            updated_at=tx.updated_at,
        )

    def to_domain(self) -> CreditTransaction:
        return CreditTransaction(
            id=from_object_id(self.id),
            user_id=self.user_id,
            type=TransactionType(self.type),
            amount=self.amount,
            credit_type=CreditType(self.credit_type) if self.credit_type else None,
            bucket_ids=self.bucket_ids,
            reason=self.reason,
            source_transaction_id=self.source_transaction_id,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )
