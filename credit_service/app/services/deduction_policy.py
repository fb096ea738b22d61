"""버킷 차감 순서 정책.

저장소와 무관하게 검증할 수 있도록 정렬 기준과 차감 계획을 순수 함수로 둔다.

1. 만료 임박 순 (expires_at 오름차순, 만료 없음은 맨 뒤)
2. 같은 만료 시각이면 promotional → subscription → purchased
   (현금으로 산 크레딧을 가장 늦게 쓴다)
3. 그래도 같으면 먼저 생성된 버킷부터 (결정성 보장용)
"""

from __future__ import annotations

from datetime import datetime, timezone
from functools import cmp_to_key
from typing import Iterable

from ..models.credit import CreditBucket, CreditType


TYPE_PRIORITY: dict[CreditType, int] = {
    CreditType.PROMOTIONAL: 0,
    CreditType.SUBSCRIPTION: 1,
    CreditType.PURCHASED: 2,
}

# 만료 없음 버킷의 정렬용 대체값
_NEVER = datetime.max.replace(tzinfo=timezone.utc)


def deduction_sort_key(
    bucket: CreditBucket,
) -> tuple[bool, datetime, int, datetime, str]:
    never_expires = bucket.expires_at is None
    return (
        never_expires,
        _NEVER if bucket.expires_at is None else bucket.expires_at,
        TYPE_PRIORITY[bucket.type],
        bucket.created_at,
        bucket.id or "",
    )


def compare_buckets(a: CreditBucket, b: CreditBucket) -> int:
    """a 를 b 보다 먼저 차감해야 하면 음수, 나중이면 양수, 동순위면 0."""
    key_a = deduction_sort_key(a)
    key_b = deduction_sort_key(b)
    if key_a < key_b:
        return -1
    if key_a > key_b:
        return 1
    return 0


def order_for_deduction(buckets: Iterable[CreditBucket]) -> list[CreditBucket]:
    return sorted(buckets, key=cmp_to_key(compare_buckets))


def plan_deduction(
    buckets: Iterable[CreditBucket], amount: int
) -> list[tuple[CreditBucket, int]] | None:
    """amount 를 차감할 (버킷, 차감량) 목록을 차감 순서대로 반환한다.

    활성 버킷 합계가 amount 보다 작으면 None 을 반환한다.
    """
    ordered = order_for_deduction(buckets)
    if sum(bucket.credits for bucket in ordered) < amount:
        return None

    plan: list[tuple[CreditBucket, int]] = []
    remaining = amount
    for bucket in ordered:
        if remaining <= 0:
            break
        take = min(bucket.credits, remaining)
        if take <= 0:
            continue
        plan.append((bucket, take))
        remaining -= take
    return plan
