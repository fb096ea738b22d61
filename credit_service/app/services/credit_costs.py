from __future__ import annotations

from collections.abc import Mapping

from ..config import DEFAULT_ACTION_COSTS


# 정의되지 않은 액션의 기본 소모 크레딧
FALLBACK_ACTION_COST = 1


def required_credits_for(
    action_type: str, costs: Mapping[str, int] | None = None
) -> int:
    """미디어 생성 액션(image, video, tts, image-to-video)에 필요한 크레딧 수."""
    table = DEFAULT_ACTION_COSTS if costs is None else costs
    return table.get(action_type, FALLBACK_ACTION_COST)
