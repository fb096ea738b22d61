from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, TypeVar

import pytest

from credit_service.app.exceptions import PersistenceError
from credit_service.app.models.credit import (
    CreditBucket,
    CreditTransaction,
    CreditType,
)
from credit_service.app.services.credit_ledger import CreditLedger


T = TypeVar("T")

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class InMemoryUnitOfWork:
    """쓰기를 모아 두었다가 commit 시 한 번에 반영하는 가짜 트랜잭션."""

    def __init__(self, store: "InMemoryCreditStore", user_id: str) -> None:
        self._store = store
        self.user_id = user_id
        self._pending_credits: dict[str, int] = {}
        self._pending_buckets: list[CreditBucket] = []
        self._pending_transactions: list[CreditTransaction] = []

    def list_active(self, now: datetime) -> list[CreditBucket]:
        buckets: list[CreditBucket] = []
        for bucket in self._store.snapshot_user(self.user_id):
            if bucket.id in self._pending_credits:
                bucket = bucket.model_copy(
                    update={"credits": self._pending_credits[bucket.id]}
                )
            buckets.append(bucket)
        buckets.extend(self._pending_buckets)
        return [b for b in buckets if b.is_active(now)]

    def set_credits(self, bucket_id: str, credits: int, now: datetime) -> None:
        self._store.set_credits_calls += 1
        if self._store.fail_on_set_credits_call == self._store.set_credits_calls:
            raise PersistenceError("simulated write failure")
        current = self._pending_credits.get(
            bucket_id, self._store.buckets[bucket_id].credits
        )
        if credits < 0 or credits > current:
            raise PersistenceError(f"invalid credits update for {bucket_id}")
        self._pending_credits[bucket_id] = credits

    def insert_bucket(self, bucket: CreditBucket) -> CreditBucket:
        created = bucket.model_copy(update={"id": self._store.next_id("bucket")})
        self._pending_buckets.append(created)
        return created

    def record_transaction(self, tx: CreditTransaction) -> CreditTransaction:
        created = tx.model_copy(update={"id": self._store.next_id("tx")})
        self._pending_transactions.append(created)
        return created

    def commit(self) -> None:
        with self._store.guard:
            for bucket_id, credits in self._pending_credits.items():
                self._store.buckets[bucket_id] = self._store.buckets[
                    bucket_id
                ].model_copy(update={"credits": credits})
            for bucket in self._pending_buckets:
                assert bucket.id is not None
                self._store.buckets[bucket.id] = bucket
            self._store.transactions.extend(self._pending_transactions)


class InMemoryCreditStore:
    """유저별 threading.Lock 으로 직렬화되는 인메모리 버킷 저장소."""

    def __init__(self) -> None:
        self.buckets: dict[str, CreditBucket] = {}
        self.transactions: list[CreditTransaction] = []
        self.guard = threading.Lock()
        self._user_locks: dict[str, threading.Lock] = {}
        self._ids = itertools.count(1)
        self.fail_on_set_credits_call: int | None = None
        self.set_credits_calls = 0
        self.run_locked_calls: list[str] = []

    def next_id(self, prefix: str) -> str:
        with self.guard:
            return f"{prefix}-{next(self._ids):04d}"

    def add(
        self,
        *,
        user_id: str = "user-1",
        credits: int,
        credit_type: CreditType = CreditType.PURCHASED,
        expires_at: datetime | None = None,
        created_at: datetime | None = None,
    ) -> CreditBucket:
        """테스트 데이터 시딩용. 원장 API 를 거치지 않고 버킷을 직접 넣는다."""
        created = created_at or NOW - timedelta(days=10)
        bucket = CreditBucket(
            id=self.next_id("bucket"),
            user_id=user_id,
            credits=credits,
            original_credits=credits,
            type=credit_type,
            expires_at=expires_at,
            created_at=created,
            updated_at=created,
        )
        with self.guard:
            self.buckets[bucket.id] = bucket  # type: ignore[index]
        return bucket

    def snapshot_user(self, user_id: str) -> list[CreditBucket]:
        with self.guard:
            return [b for b in self.buckets.values() if b.user_id == user_id]

    def credits_of(self, bucket_id: str) -> int:
        return self.buckets[bucket_id].credits

    def list_active(self, user_id: str, now: datetime) -> list[CreditBucket]:
        return [b for b in self.snapshot_user(user_id) if b.is_active(now)]

    def sum_active_bulk(self, user_ids: list[str], now: datetime) -> dict[str, int]:
        return {
            user_id: sum(b.credits for b in self.list_active(user_id, now))
            for user_id in user_ids
        }

    def run_locked(
        self, user_id: str, work: Callable[[InMemoryUnitOfWork], T]
    ) -> T:
        with self.guard:
            lock = self._user_locks.setdefault(user_id, threading.Lock())
        with lock:
            self.run_locked_calls.append(user_id)
            uow = InMemoryUnitOfWork(self, user_id)
            result = work(uow)
            uow.commit()
            return result

    def list_by_user(
        self, user_id: str, page: int, page_size: int
    ) -> tuple[list[CreditTransaction], int]:
        items = [tx for tx in self.transactions if tx.user_id == user_id]
        items.sort(key=lambda tx: (tx.created_at, tx.id or ""), reverse=True)
        start = (page - 1) * page_size
        return items[start : start + page_size], len(items)


@dataclass
class LedgerFixture:
    ledger: CreditLedger
    store: InMemoryCreditStore


@pytest.fixture
def store() -> InMemoryCreditStore:
    return InMemoryCreditStore()


@pytest.fixture
def ledger_fixture(store: InMemoryCreditStore) -> LedgerFixture:
    ledger = CreditLedger(
        bucket_repo=store,
        transaction_repo=store,
        clock=lambda: NOW,
    )
    return LedgerFixture(ledger=ledger, store=store)
