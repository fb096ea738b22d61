"""크레딧 레포지토리 구현체 (MongoDB).

변경은 모두 유저 단위 잠금 트랜잭션(run_locked) 안에서만 수행된다.
트랜잭션의 첫 쓰기로 credit_ledger_locks 의 유저 도큐먼트를 갱신하므로,
같은 유저에 대한 동시 트랜잭션은 WriteConflict 로 충돌하고 재시도되면서 직렬화된다.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable, TypeVar

from pymongo.client_session import ClientSession
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern

from common.mongo.types import to_object_id
from common.types.datetime import utcnow

from ..config import DEFAULT_LOCK_TIMEOUT_SECONDS
from ..exceptions import LockTimeoutError, PersistenceError
from ..models.credit import CreditBucket, CreditTransaction
from .documents.credit_document import CreditBucketDocument, CreditTransactionDocument
from .interfaces import (
    CreditBucketRepositoryInterface,
    CreditTransactionRepositoryInterface,
    CreditUnitOfWork,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")

BUCKETS_COLLECTION = "credit_buckets"
TRANSACTIONS_COLLECTION = "credit_transactions"
LOCKS_COLLECTION = "credit_ledger_locks"

TRANSIENT_TRANSACTION_ERROR = "TransientTransactionError"
UNKNOWN_COMMIT_RESULT = "UnknownTransactionCommitResult"

_BACKOFF_BASE_SECONDS = 0.01
_BACKOFF_MAX_SECONDS = 0.2


def active_bucket_filter(user_id: str, now: datetime) -> dict[str, Any]:
    """잔액/차감 대상이 되는 활성 버킷 조건 (잔량 > 0, 만료 전 또는 만료 없음)."""
    return {
        "user_id": user_id,
        "credits": {"$gt": 0},
        "$or": [{"expires_at": None}, {"expires_at": {"$gt": now}}],
    }


class MongoCreditUnitOfWork(CreditUnitOfWork):
    """하나의 세션 트랜잭션에 묶인 작업 핸들."""

    def __init__(
        self,
        repo: "CreditBucketRepository",
        session: ClientSession,
        user_id: str,
    ) -> None:
        self._repo = repo
        self._session = session
        self.user_id = user_id

    def list_active(self, now: datetime) -> list[CreditBucket]:
        cursor = self._repo.buckets.find(
            active_bucket_filter(self.user_id, now), session=self._session
        )
        return [CreditBucketDocument.model_validate(doc).to_domain() for doc in cursor]

    def set_credits(self, bucket_id: str, credits: int, now: datetime) -> None:
        if credits < 0:
            raise PersistenceError(f"refusing to store negative credits for {bucket_id}")
        # 잔량은 증가하지 않는다: 현재 값이 credits 이상인 경우에만 갱신
        result = self._repo.buckets.update_one(
            {
                "_id": to_object_id(bucket_id),
                "user_id": self.user_id,
                "credits": {"$gte": credits},
            },
            {"$set": {"credits": credits, "updated_at": now}},
            session=self._session,
        )
        if result.matched_count != 1:
            raise PersistenceError(
                f"bucket {bucket_id} changed or vanished during deduction"
            )

    def insert_bucket(self, bucket: CreditBucket) -> CreditBucket:
        payload = CreditBucketDocument.from_domain(bucket).to_mongo_record()
        result = self._repo.buckets.insert_one(payload, session=self._session)
        return bucket.model_copy(update={"id": str(result.inserted_id)})

    def record_transaction(self, tx: CreditTransaction) -> CreditTransaction:
        payload = CreditTransactionDocument.from_domain(tx).to_mongo_record()
        result = self._repo.transactions.insert_one(payload, session=self._session)
        return tx.model_copy(update={"id": str(result.inserted_id)})


class CreditBucketRepository(CreditBucketRepositoryInterface):
    """credit_buckets 컬렉션에 대한 MongoDB 접근 레이어."""

    def __init__(
        self,
        database: Database,
        *,
        lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._db = database
        self._client = database.client
        self.buckets = database[BUCKETS_COLLECTION]
        self.transactions = database[TRANSACTIONS_COLLECTION]
        self._locks = database[LOCKS_COLLECTION]
        self._lock_timeout_seconds = lock_timeout_seconds
        self._monotonic = monotonic
        self._sleep = sleep

    # 조회 -----------------------------------------------------------------
    def list_active(self, user_id: str, now: datetime) -> list[CreditBucket]:
        try:
            cursor = self.buckets.find(active_bucket_filter(user_id, now))
            return [
                CreditBucketDocument.model_validate(doc).to_domain() for doc in cursor
            ]
        except PyMongoError as exc:
            raise PersistenceError(f"failed to load buckets for {user_id}") from exc

    def sum_active_bulk(self, user_ids: list[str], now: datetime) -> dict[str, int]:
        """여러 유저의 잔액을 한 번에 조회 (N+1 방지)."""
        if not user_ids:
            return {}

        pipeline = [
            {
                "$match": {
                    "user_id": {"$in": user_ids},
                    "credits": {"$gt": 0},
                    "$or": [{"expires_at": None}, {"expires_at": {"$gt": now}}],
                }
            },
            {"$group": {"_id": "$user_id", "total": {"$sum": "$credits"}}},
        ]

        try:
            result = {doc["_id"]: doc["total"] for doc in self.buckets.aggregate(pipeline)}
        except PyMongoError as exc:
            raise PersistenceError("failed to aggregate balances") from exc

        for user_id in user_ids:
            result.setdefault(user_id, 0)
        return result

    # 변경 -----------------------------------------------------------------
    def run_locked(self, user_id: str, work: Callable[[CreditUnitOfWork], T]) -> T:
        deadline = self._monotonic() + self._lock_timeout_seconds
        self._ensure_lock_document(user_id)

        try:
            session = self._client.start_session()
        except PyMongoError as exc:
            raise PersistenceError("failed to start MongoDB session") from exc

        with session:
            attempt = 0
            while True:
                attempt += 1
                session.start_transaction(
                    read_concern=ReadConcern("snapshot"),
                    write_concern=WriteConcern("majority"),
                    max_commit_time_ms=self._remaining_ms(deadline),
                )
                try:
                    self._acquire_lock(session, user_id)
                    result = work(MongoCreditUnitOfWork(self, session, user_id))
                except PyMongoError as exc:
                    self._abort(session, user_id)
                    if self._can_retry(exc, TRANSIENT_TRANSACTION_ERROR, deadline):
                        logger.debug(
                            "retrying credit transaction user_id=%s attempt=%d: %s",
                            user_id,
                            attempt,
                            exc,
                        )
                        self._backoff(attempt, deadline)
                        continue
                    raise self._translate(exc, user_id) from exc
                except BaseException:
                    self._abort(session, user_id)
                    raise

                if self._commit(session, user_id, deadline):
                    return result
                self._backoff(attempt, deadline)

    # 내부 util -------------------------------------------------------------
    def _ensure_lock_document(self, user_id: str) -> None:
        """트랜잭션 밖에서 잠금 도큐먼트를 만들어 둔다 (idempotent)."""
        now = utcnow()
        try:
            self._locks.update_one(
                {"_id": user_id},
                {"$setOnInsert": {"version": 0, "created_at": now}},
                upsert=True,
            )
        except DuplicateKeyError:
            # 동시 upsert 경쟁: 다른 요청이 먼저 만들었다.
            pass
        except PyMongoError as exc:
            raise PersistenceError(f"failed to prepare ledger lock for {user_id}") from exc

    def _acquire_lock(self, session: ClientSession, user_id: str) -> None:
        self._locks.update_one(
            {"_id": user_id},
            {
                "$inc": {"version": 1},
                "$set": {"locked_at": utcnow()},
            },
            session=session,
        )

    def _commit(self, session: ClientSession, user_id: str, deadline: float) -> bool:
        """커밋 성공 시 True, 트랜잭션 전체를 다시 시도해야 하면 False."""
        while True:
            try:
                session.commit_transaction()
                return True
            except PyMongoError as exc:
                if self._can_retry(exc, UNKNOWN_COMMIT_RESULT, deadline):
                    logger.debug("retrying commit for user_id=%s: %s", user_id, exc)
                    continue
                if self._can_retry(exc, TRANSIENT_TRANSACTION_ERROR, deadline):
                    return False
                raise self._translate(exc, user_id) from exc

    def _abort(self, session: ClientSession, user_id: str) -> None:
        if not session.in_transaction:
            return
        try:
            session.abort_transaction()
        except PyMongoError as exc:
            # 서버가 미커밋 트랜잭션을 결국 폐기하므로 원래 예외를 우선한다.
            logger.warning("failed to abort credit transaction user_id=%s: %s", user_id, exc)

    def _can_retry(self, exc: PyMongoError, label: str, deadline: float) -> bool:
        return exc.has_error_label(label) and self._monotonic() < deadline

    def _translate(self, exc: PyMongoError, user_id: str) -> PersistenceError:
        if exc.has_error_label(TRANSIENT_TRANSACTION_ERROR) or exc.has_error_label(
            UNKNOWN_COMMIT_RESULT
        ):
            logger.error("credit ledger lock timed out for user_id=%s: %s", user_id, exc)
            return LockTimeoutError(
                f"could not lock credit ledger of {user_id} within "
                f"{self._lock_timeout_seconds}s"
            )
        logger.error("credit ledger transaction failed for user_id=%s: %s", user_id, exc)
        return PersistenceError(f"credit ledger transaction failed for {user_id}: {exc}")

    def _backoff(self, attempt: int, deadline: float) -> None:
        delay = min(_BACKOFF_BASE_SECONDS * (2 ** (attempt - 1)), _BACKOFF_MAX_SECONDS)
        delay = min(delay, max(deadline - self._monotonic(), 0.0))
        if delay > 0:
            self._sleep(delay)

    def _remaining_ms(self, deadline: float) -> int:
        return max(int((deadline - self._monotonic()) * 1000), 1)


class CreditTransactionRepository(CreditTransactionRepositoryInterface):
    """credit_transactions 컬렉션에 대한 MongoDB 접근 레이어 (감사 로그 조회)."""

    def __init__(self, database: Database) -> None:
        self._db = database
        self._col = database[TRANSACTIONS_COLLECTION]

    def list_by_user(
        self, user_id: str, page: int, page_size: int
    ) -> tuple[list[CreditTransaction], int]:
        """사용자의 크레딧 트랜잭션 이력 조회 (최신순)."""
        if page <= 0:
            page = 1
        if page_size <= 0 or page_size > 100:
            page_size = 20

        skip = (page - 1) * page_size

        try:
            total = self._col.count_documents({"user_id": user_id})
            cursor = self._col.find(
                {"user_id": user_id},
                sort=[("created_at", -1), ("_id", -1)],
                skip=skip,
                limit=page_size,
            )
            items = [
                CreditTransactionDocument.model_validate(raw).to_domain()
                for raw in cursor
            ]
        except PyMongoError as exc:
            raise PersistenceError(f"failed to load history for {user_id}") from exc

        return items, total
