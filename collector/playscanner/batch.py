"""会場ごとの取得をバッチ単位で並行実行するモジュール.

同時に張る接続数を batch_size までに抑え、バッチ間に短い待機を入れる。
1 会場の失敗は空リストとして扱い、同じバッチの他の会場には影響させない。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Sequence

from playscanner.models import Slot, Venue

logger = logging.getLogger(__name__)

FetchFunc = Callable[[Venue], Awaitable[list[Slot]]]


async def fetch_in_batches(
    venues: Sequence[Venue],
    fetch: FetchFunc,
    *,
    batch_size: int = 5,
    batch_delay: float = 0.5,
) -> list[Slot]:
    """venues を batch_size 件ずつ並行取得し、会場順に連結して返す.

    Args:
        venues: 取得対象の会場
        fetch: 1 会場分の空き枠を返すコルーチン関数
        batch_size: 1 バッチの同時実行数
        batch_delay: 次のバッチが残っている場合の待機秒数
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    all_slots: list[Slot] = []
    for start in range(0, len(venues), batch_size):
        batch = venues[start:start + batch_size]
        results = await asyncio.gather(*(_fetch_isolated(fetch, v) for v in batch))
        for slots in results:
            all_slots.extend(slots)

        if start + batch_size < len(venues):
            await asyncio.sleep(batch_delay)

    return all_slots


async def _fetch_isolated(fetch: FetchFunc, venue: Venue) -> list[Slot]:
    # CancelledError は Exception ではないので、ここでは握りつぶさない
    try:
        return await fetch(venue)
    except Exception as e:
        logger.warning("会場の空き枠取得失敗: venue=%s, error=%s", venue.id, e)
        return []
