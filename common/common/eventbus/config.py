from __future__ import annotations

import os


KAFKA_BOOTSTRAP_SERVERS_ENV = "KAFKA_BOOTSTRAP_SERVERS"
KAFKA_MESSAGE_MAX_BYTES_ENV = "KAFKA_MESSAGE_MAX_BYTES"
KAFKA_EVENTS_ENABLED_ENV = "KAFKA_EVENTS_ENABLED"


def get_brokers() -> str:
    value = os.getenv(KAFKA_BOOTSTRAP_SERVERS_ENV)
    if not value:
        raise RuntimeError(
            f"{KAFKA_BOOTSTRAP_SERVERS_ENV} environment variable is required"
        )
    return value


def is_events_enabled() -> bool:
    """이벤트 발행 여부. KAFKA_EVENTS_ENABLED=false 면 발행을 건너뛴다 (기본 true)."""

    raw_value = os.getenv(KAFKA_EVENTS_ENABLED_ENV, "true").strip().lower()
    return raw_value not in {"0", "false", "no", "off"}


def get_message_max_bytes() -> int | None:
    """Kafka producer에서 사용할 최대 메시지 크기(message.max.bytes)를 반환한다.

    - 환경 변수가 비어있거나 0 이하이면 None (라이브러리 기본값 사용)
    - 정수가 아닌 값이 들어오면 조기에 설정 문제를 드러내도록 RuntimeError
    """

    raw_value = os.getenv(KAFKA_MESSAGE_MAX_BYTES_ENV, "").strip()
    if not raw_value:
        return None

    try:
        value = int(raw_value)
    except ValueError as exc:  # noqa: TRY003
        raise RuntimeError(
            f"{KAFKA_MESSAGE_MAX_BYTES_ENV} must be an integer value, got: "
            f"{raw_value!r}"
        ) from exc

    if value <= 0:
        return None

    return value
