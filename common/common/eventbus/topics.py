from __future__ import annotations

from .core import Topic


TOPIC_CREDIT = Topic("credit-ledger.credit")
