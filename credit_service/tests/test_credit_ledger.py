from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import pytest

from credit_service.app.config import LedgerConfig
from credit_service.app.exceptions import InvalidInputError, PersistenceError
from credit_service.app.models.credit import (
    BucketState,
    CreditBucket,
    CreditTransaction,
    CreditType,
    TransactionType,
)
from credit_service.app.services.credit_ledger import CreditLedger, normalize_paging

from conftest import NOW, InMemoryCreditStore, LedgerFixture


def test_balance_is_zero_for_unknown_user(ledger_fixture: LedgerFixture) -> None:
    assert ledger_fixture.ledger.get_balance("nobody") == 0
    assert ledger_fixture.ledger.has_sufficient_balance("nobody", 0) is True
    assert ledger_fixture.ledger.has_sufficient_balance("nobody", 1) is False


def test_balance_sums_only_active_buckets(ledger_fixture: LedgerFixture) -> None:
    store = ledger_fixture.store
    store.add(credits=5, expires_at=NOW + timedelta(days=1))
    store.add(credits=7)
    store.add(credits=100, expires_at=NOW - timedelta(seconds=1))
    store.add(credits=0)
    # 만료 시각이 정확히 지금이면 이미 만료된 것으로 본다
    store.add(credits=9, expires_at=NOW)

    assert ledger_fixture.ledger.get_balance("user-1") == 12


def test_grant_creates_independent_bucket(ledger_fixture: LedgerFixture) -> None:
    ledger = ledger_fixture.ledger
    store = ledger_fixture.store
    existing = store.add(credits=3, credit_type=CreditType.PROMOTIONAL)

    bucket_id = ledger.grant(
        "user-1",
        10,
        CreditType.SUBSCRIPTION,
        expires_in_days=30,
        source_transaction_id="order-1",
    )

    assert bucket_id is not None
    assert bucket_id != existing.id
    assert store.credits_of(existing.id) == 3  # type: ignore[arg-type]
    created = store.buckets[bucket_id]
    assert created.credits == 10
    assert created.original_credits == 10
    assert created.type == CreditType.SUBSCRIPTION
    assert created.expires_at == NOW + timedelta(days=30)
    assert created.source_transaction_id == "order-1"
    assert ledger.get_balance("user-1") == 13

    assert len(store.transactions) == 1
    tx = store.transactions[0]
    assert tx.type == TransactionType.GRANT
    assert tx.amount == 10
    assert tx.bucket_ids == [bucket_id]


def test_grant_without_expiry_never_expires(ledger_fixture: LedgerFixture) -> None:
    bucket_id = ledger_fixture.ledger.grant("user-1", 4, "purchased")

    assert bucket_id is not None
    assert ledger_fixture.store.buckets[bucket_id].expires_at is None


@pytest.mark.parametrize("amount", [0, -5])
def test_grant_non_positive_amount_is_noop(
    ledger_fixture: LedgerFixture, amount: int
) -> None:
    result = ledger_fixture.ledger.grant("user-1", amount, CreditType.PROMOTIONAL)

    assert result is None
    assert ledger_fixture.store.buckets == {}
    assert ledger_fixture.store.transactions == []
    assert ledger_fixture.store.run_locked_calls == []


def test_grant_rejects_invalid_input(ledger_fixture: LedgerFixture) -> None:
    with pytest.raises(InvalidInputError):
        ledger_fixture.ledger.grant("user-1", 5, "gift")
    with pytest.raises(InvalidInputError):
        ledger_fixture.ledger.grant("user-1", 5, CreditType.PROMOTIONAL, expires_in_days=0)

    assert ledger_fixture.store.buckets == {}


def test_deduct_exact_amount_from_single_bucket(ledger_fixture: LedgerFixture) -> None:
    bucket = ledger_fixture.store.add(credits=10)

    result = ledger_fixture.ledger.deduct("user-1", 4, reason="gen-image")

    assert result.success is True
    assert result.amount == 4
    assert result.remaining == 6
    assert result.consumed_bucket_ids == [bucket.id]
    assert ledger_fixture.store.credits_of(bucket.id) == 6  # type: ignore[arg-type]

    tx = ledger_fixture.store.transactions[-1]
    assert tx.type == TransactionType.DEDUCT
    assert tx.amount == 4
    assert tx.reason == "gen-image"


def test_deduct_prefers_expiring_bucket(ledger_fixture: LedgerFixture) -> None:
    store = ledger_fixture.store
    expiring = store.add(
        credits=5,
        credit_type=CreditType.PROMOTIONAL,
        expires_at=NOW + timedelta(days=1),
    )
    permanent = store.add(credits=10)

    result = ledger_fixture.ledger.deduct("user-1", 3)

    assert result.success is True
    assert store.credits_of(expiring.id) == 2  # type: ignore[arg-type]
    assert store.credits_of(permanent.id) == 10  # type: ignore[arg-type]


def test_deduct_spills_over_in_priority_order(ledger_fixture: LedgerFixture) -> None:
    store = ledger_fixture.store
    promo = store.add(
        credits=5,
        credit_type=CreditType.PROMOTIONAL,
        expires_at=NOW + timedelta(days=2),
    )
    purchased = store.add(credits=20)

    result = ledger_fixture.ledger.deduct("user-1", 8)

    assert result.success is True
    assert result.remaining == 17
    assert [(c.bucket_id, c.credits) for c in result.consumed] == [
        (promo.id, 5),
        (purchased.id, 3),
    ]
    assert store.credits_of(promo.id) == 0  # type: ignore[arg-type]
    assert store.credits_of(purchased.id) == 17  # type: ignore[arg-type]
    assert ledger_fixture.ledger.get_balance("user-1") == 17
    assert ledger_fixture.ledger.get_summary("user-1").buckets == [
        store.buckets[purchased.id]  # type: ignore[index]
    ]


def test_deduct_same_expiry_uses_promotional_before_purchased(
    ledger_fixture: LedgerFixture,
) -> None:
    store = ledger_fixture.store
    expires_at = NOW + timedelta(days=3)
    purchased = store.add(credits=5, expires_at=expires_at)
    subscription = store.add(
        credits=5, credit_type=CreditType.SUBSCRIPTION, expires_at=expires_at
    )
    promo = store.add(
        credits=5, credit_type=CreditType.PROMOTIONAL, expires_at=expires_at
    )

    result = ledger_fixture.ledger.deduct("user-1", 7)

    assert result.consumed_bucket_ids == [promo.id, subscription.id]
    assert store.credits_of(purchased.id) == 5  # type: ignore[arg-type]


def test_deduct_insufficient_balance_changes_nothing(
    ledger_fixture: LedgerFixture,
) -> None:
    store = ledger_fixture.store
    first = store.add(credits=3, expires_at=NOW + timedelta(days=1))
    second = store.add(credits=4)
    # 만료된 버킷은 잔액으로 치지 않는다
    store.add(credits=50, expires_at=NOW - timedelta(days=1))

    result = ledger_fixture.ledger.deduct("user-1", 8)

    assert result.success is False
    assert result.reason == "insufficient_balance"
    assert result.remaining == 7
    assert result.consumed == []
    assert store.credits_of(first.id) == 3  # type: ignore[arg-type]
    assert store.credits_of(second.id) == 4  # type: ignore[arg-type]
    assert store.transactions == []


def test_deduct_ignores_expired_bucket_even_if_first(
    ledger_fixture: LedgerFixture,
) -> None:
    store = ledger_fixture.store
    expired = store.add(credits=10, expires_at=NOW - timedelta(hours=1))
    active = store.add(credits=10, expires_at=NOW + timedelta(days=5))

    result = ledger_fixture.ledger.deduct("user-1", 2)

    assert result.consumed_bucket_ids == [active.id]
    assert store.credits_of(expired.id) == 10  # type: ignore[arg-type]


@pytest.mark.parametrize("amount", [0, -1])
def test_deduct_rejects_non_positive_amount(
    ledger_fixture: LedgerFixture, amount: int
) -> None:
    ledger_fixture.store.add(credits=10)

    with pytest.raises(InvalidInputError):
        ledger_fixture.ledger.deduct("user-1", amount)

    assert ledger_fixture.ledger.get_balance("user-1") == 10


def test_deduct_rolls_back_when_store_fails_mid_way(
    ledger_fixture: LedgerFixture,
) -> None:
    store = ledger_fixture.store
    first = store.add(credits=2, expires_at=NOW + timedelta(days=1))
    second = store.add(credits=10)
    store.fail_on_set_credits_call = 2

    with pytest.raises(PersistenceError):
        ledger_fixture.ledger.deduct("user-1", 5)

    assert store.credits_of(first.id) == 2  # type: ignore[arg-type]
    assert store.credits_of(second.id) == 10  # type: ignore[arg-type]
    assert store.transactions == []


def test_concurrent_deducts_never_overdraw() -> None:
    store = InMemoryCreditStore()
    ledger = CreditLedger(bucket_repo=store, transaction_repo=store, clock=lambda: NOW)
    store.add(credits=10)
    workers = 16
    barrier = threading.Barrier(workers)

    def _deduct_all() -> bool:
        barrier.wait()
        return ledger.deduct("user-1", 10).success

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(lambda _: _deduct_all(), range(workers)))

    assert results.count(True) == 1
    assert ledger.get_balance("user-1") == 0
    assert all(bucket.credits >= 0 for bucket in store.buckets.values())
    assert len(store.transactions) == 1


def test_concurrent_small_deducts_sum_to_balance() -> None:
    store = InMemoryCreditStore()
    ledger = CreditLedger(bucket_repo=store, transaction_repo=store, clock=lambda: NOW)
    store.add(credits=5, credit_type=CreditType.PROMOTIONAL, expires_at=NOW + timedelta(days=1))
    store.add(credits=5)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: ledger.deduct("user-1", 1).success, range(14)))

    assert results.count(True) == 10
    assert ledger.get_balance("user-1") == 0


def test_refund_creates_purchased_bucket(ledger_fixture: LedgerFixture) -> None:
    bucket_id = ledger_fixture.ledger.refund(
        "user-1", 5, reason="video-failed", source_transaction_id="job-9"
    )

    assert bucket_id is not None
    bucket = ledger_fixture.store.buckets[bucket_id]
    assert bucket.type == CreditType.PURCHASED
    assert bucket.expires_at is None
    tx = ledger_fixture.store.transactions[-1]
    assert tx.type == TransactionType.REFUND
    assert tx.reason == "video-failed"
    assert tx.source_transaction_id == "job-9"


def test_charge_for_action_uses_configured_cost(ledger_fixture: LedgerFixture) -> None:
    ledger_fixture.store.add(credits=10)

    result = ledger_fixture.ledger.charge_for_action("user-1", "video")

    assert result.success is True
    assert result.amount == 5
    assert ledger_fixture.store.transactions[-1].reason == "gen-video"


def test_charge_for_action_unknown_action_costs_one() -> None:
    store = InMemoryCreditStore()
    ledger = CreditLedger(
        bucket_repo=store,
        transaction_repo=store,
        config=LedgerConfig(action_costs={"video": 2}),
        clock=lambda: NOW,
    )
    store.add(credits=3)

    assert ledger.charge_for_action("user-1", "video").remaining == 1
    assert ledger.charge_for_action("user-1", "upscale", reason="custom").remaining == 0
    assert store.transactions[-1].reason == "custom"


def test_charge_for_action_insufficient_balance(ledger_fixture: LedgerFixture) -> None:
    ledger_fixture.store.add(credits=2)

    result = ledger_fixture.ledger.charge_for_action("user-1", "image-to-video")

    assert result.success is False
    assert result.remaining == 2


def test_summary_lists_buckets_in_deduction_order(ledger_fixture: LedgerFixture) -> None:
    store = ledger_fixture.store
    permanent = store.add(credits=1)
    late = store.add(credits=1, expires_at=NOW + timedelta(days=9))
    soon = store.add(credits=1, expires_at=NOW + timedelta(days=1))

    summary = ledger_fixture.ledger.get_summary("user-1")

    assert summary.balance == 3
    assert [b.id for b in summary.buckets] == [soon.id, late.id, permanent.id]


def test_balance_bulk_includes_users_without_buckets(
    ledger_fixture: LedgerFixture,
) -> None:
    ledger_fixture.store.add(user_id="a", credits=3)
    ledger_fixture.store.add(user_id="b", credits=4, expires_at=NOW - timedelta(days=1))

    assert ledger_fixture.ledger.get_balance_bulk(["a", "b", "c"]) == {
        "a": 3,
        "b": 0,
        "c": 0,
    }


def test_history_returns_latest_first(ledger_fixture: LedgerFixture) -> None:
    ledger = ledger_fixture.ledger
    ledger.grant("user-1", 10, CreditType.PURCHASED)
    ledger.deduct("user-1", 2)
    ledger.grant("user-2", 1, CreditType.PROMOTIONAL)

    items, total = ledger.get_history("user-1", page=1, page_size=10)

    assert total == 2
    assert [tx.type for tx in items] == [TransactionType.DEDUCT, TransactionType.GRANT]


def test_same_type_grants_stay_separate_buckets(ledger_fixture: LedgerFixture) -> None:
    ledger = ledger_fixture.ledger

    first = ledger.grant("u", 5, CreditType.PURCHASED)
    second = ledger.grant("u", 5, CreditType.PURCHASED)

    assert first is not None and second is not None
    assert first != second
    assert len(ledger_fixture.store.snapshot_user("u")) == 2
    assert ledger.get_balance("u") == 10


def test_bucket_state_follows_deduct_and_expiry(ledger_fixture: LedgerFixture) -> None:
    store = ledger_fixture.store
    bucket_id = ledger_fixture.ledger.grant(
        "user-1", 4, CreditType.PROMOTIONAL, expires_in_days=2
    )
    assert bucket_id is not None
    assert store.buckets[bucket_id].state(NOW) == BucketState.ACTIVE

    ledger_fixture.ledger.deduct("user-1", 4)

    exhausted = store.buckets[bucket_id]
    assert exhausted.state(NOW) == BucketState.EXHAUSTED
    # 만료 시각이 지나면 잔량과 무관하게 expired
    assert exhausted.state(NOW + timedelta(days=2)) == BucketState.EXPIRED

    unused = store.add(credits=3, expires_at=NOW + timedelta(days=1))
    assert unused.state(NOW + timedelta(days=1)) == BucketState.EXPIRED


def test_history_normalizes_out_of_range_paging(store: InMemoryCreditStore) -> None:
    calls: list[tuple[int, int]] = []

    def _list_by_user(
        user_id: str, page: int, page_size: int
    ) -> tuple[list[CreditTransaction], int]:
        calls.append((page, page_size))
        return [], 0

    store.list_by_user = _list_by_user  # type: ignore[method-assign]
    ledger = CreditLedger(bucket_repo=store, transaction_repo=store, clock=lambda: NOW)

    ledger.get_history("user-1", page=0, page_size=500)
    ledger.get_history("user-1", page=3, page_size=100)

    assert calls == [(1, 20), (3, 100)]
    assert normalize_paging(-1, 0) == (1, 20)


class _BucketWithoutIdUnitOfWork:
    user_id = "user-1"

    def list_active(self, now: datetime) -> list[CreditBucket]:
        return [
            CreditBucket(
                user_id="user-1",
                credits=5,
                original_credits=5,
                type=CreditType.PURCHASED,
                created_at=NOW,
                updated_at=NOW,
            )
        ]

    def set_credits(self, bucket_id: str, credits: int, now: datetime) -> None:
        raise AssertionError("must not write for a bucket without id")


class _BucketWithoutIdRepository(InMemoryCreditStore):
    def run_locked(self, user_id, work):  # type: ignore[no-untyped-def, override]
        return work(_BucketWithoutIdUnitOfWork())


def test_deduct_fails_loudly_for_bucket_without_id() -> None:
    repo = _BucketWithoutIdRepository()
    ledger = CreditLedger(bucket_repo=repo, transaction_repo=repo, clock=lambda: NOW)

    with pytest.raises(PersistenceError):
        ledger.deduct("user-1", 2)
