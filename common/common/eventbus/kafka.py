from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict
from typing import Optional

from confluent_kafka import Producer

from .config import get_brokers, get_message_max_bytes
from .core import Event

logger = logging.getLogger(__name__)


class KafkaEventBus:
    """Kafka 기반 EventBus 구현 (발행 전용).

    원장은 커밋이 끝난 변경만 이벤트로 알린다. 구독/재시도는 소비 서비스의 몫이다.
    """

    def __init__(self, brokers: str, message_max_bytes: int | None = None) -> None:
        conf: dict[str, object] = {"bootstrap.servers": brokers}
        if message_max_bytes is not None:
            conf["message.max.bytes"] = message_max_bytes
        self._producer = Producer(conf)
        self._brokers = brokers

    def close(self) -> None:
        self._producer.flush()

    def publish(self, topic: str, event: Event) -> None:
        payload = json.dumps(asdict(event), ensure_ascii=False).encode("utf-8")

        def _delivery_callback(err, msg) -> None:  # type: ignore[no-untyped-def]
            if err is not None:
                logger.error("failed to deliver message to %s: %s", msg.topic(), err)

        self._producer.produce(
            topic=topic,
            value=payload,
            key=event.id.encode("utf-8"),
            callback=_delivery_callback,
        )
        self._producer.poll(0)


_bus: Optional[KafkaEventBus] = None
_lock = threading.Lock()


def get_kafka_event_bus() -> KafkaEventBus:
    """환경 변수 설정으로 만든 전역 KafkaEventBus 싱글톤을 반환한다."""

    global _bus

    if _bus is not None:
        return _bus

    with _lock:
        if _bus is None:
            _bus = KafkaEventBus(get_brokers(), get_message_max_bytes())
        return _bus


def close_kafka_event_bus() -> None:
    """전역 EventBus 가 만들어져 있으면 대기 중인 메시지를 flush 한다."""

    global _bus

    with _lock:
        if _bus is not None:
            _bus.close()
            _bus = None
