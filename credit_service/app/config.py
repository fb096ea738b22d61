from __future__ import annotations

import os
from dataclasses import dataclass, field


CREDIT_LEDGER_LOCK_TIMEOUT_SECONDS = "CREDIT_LEDGER_LOCK_TIMEOUT_SECONDS"
CREDIT_COST_ENV_PREFIX = "CREDIT_COST_"

DEFAULT_LOCK_TIMEOUT_SECONDS = 5.0

# 미디어 생성 액션별 기본 소모 크레딧
DEFAULT_ACTION_COSTS: dict[str, int] = {
    "image": 1,
    "video": 5,
    "tts": 1,
    "image-to-video": 3,
}


@dataclass(slots=True)
class LedgerConfig:
    """credit-ledger 전체 설정 루트."""

    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS
    action_costs: dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_ACTION_COSTS)
    )


def _read_positive_float(name: str, default: float) -> float:
    raw_value = os.getenv(name, "").strip()
    if not raw_value:
        return default
    try:
        value = float(raw_value)
    except ValueError as exc:  # noqa: TRY003
        raise RuntimeError(f"{name} must be a number, got: {raw_value!r}") from exc
    if value <= 0:
        raise RuntimeError(f"{name} must be positive, got: {raw_value!r}")
    return value


def _read_positive_int(name: str, default: int) -> int:
    raw_value = os.getenv(name, "").strip()
    if not raw_value:
        return default
    try:
        value = int(raw_value)
    except ValueError as exc:  # noqa: TRY003
        raise RuntimeError(f"{name} must be an integer, got: {raw_value!r}") from exc
    if value <= 0:
        raise RuntimeError(f"{name} must be positive, got: {raw_value!r}")
    return value


def load_action_costs() -> dict[str, int]:
    """액션별 소모 크레딧을 로드한다.

    CREDIT_COST_IMAGE_TO_VIDEO=4 처럼 환경 변수로 기본값을 덮어쓸 수 있다.
    (액션 이름의 '-' 는 환경 변수 이름에서 '_' 로 바뀐다.)
    """

    costs = dict(DEFAULT_ACTION_COSTS)
    for action in DEFAULT_ACTION_COSTS:
        env_name = CREDIT_COST_ENV_PREFIX + action.upper().replace("-", "_")
        costs[action] = _read_positive_int(env_name, costs[action])
    return costs


def load_config() -> LedgerConfig:
    """credit-ledger 설정을 환경 변수에서 로드하여 LedgerConfig 로 반환한다."""

    return LedgerConfig(
        lock_timeout_seconds=_read_positive_float(
            CREDIT_LEDGER_LOCK_TIMEOUT_SECONDS, DEFAULT_LOCK_TIMEOUT_SECONDS
        ),
        action_costs=load_action_costs(),
    )
