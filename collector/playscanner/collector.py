"""地域×日付の空き枠収集オーケストレーター.

処理フロー:
  1. 設定された地域 × 今日から N 日分の作業リストを作る（地域優先、日付順）
  2. 各項目を順番に処理する（項目同士は並行させない）
     a. Provider の取得を項目タイムアウトと競わせる
     b. 成功: キャッシュ保存 → success ログ → 次の項目まで 1〜2 秒ランダム待機
     c. 失敗: error ログ → 次の項目まで 2 秒待機
  3. 全項目の結果からサマリを作る
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from datetime import date as date_type
from datetime import datetime, timedelta, timezone
from typing import Protocol

from playscanner.config import Settings
from playscanner.db import CacheStore
from playscanner.errors import ItemTimeout, error_kind
from playscanner.models import (
    CollectionLogEntry,
    CollectionReport,
    ItemResult,
    Slot,
    unique_venue_ids,
)

logger = logging.getLogger(__name__)


class AvailabilityProvider(Protocol):
    async def fetch_availability(self, region: str, date: str) -> list[Slot]: ...


def build_work_items(
    regions: tuple[str, ...] | list[str], days_ahead: int, today: date_type
) -> list[tuple[str, str]]:
    """(地域, YYYY-MM-DD) の作業リスト. 地域ごとに今日から days_ahead 日分."""
    return [
        (region, (today + timedelta(days=offset)).isoformat())
        for region in regions
        for offset in range(days_ahead)
    ]


def price_range(slots: list[Slot]) -> dict[str, int] | None:
    if not slots:
        return None
    prices = [s.price for s in slots]
    return {"min": min(prices), "max": max(prices)}


async def wait_interval(minimum: float, maximum: float) -> None:
    """minimum〜maximum 秒のランダムな間隔で待機する."""
    await asyncio.sleep(random.uniform(minimum, maximum))


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class BackgroundCollector:
    """1 回の収集（collection run）を実行する."""

    def __init__(
        self,
        settings: Settings,
        store: CacheStore,
        provider: AvailabilityProvider,
        *,
        today: date_type | None = None,
    ):
        self._settings = settings
        self._store = store
        self._provider = provider
        self._today = today

    async def collect_all(self) -> CollectionReport:
        """全地域×全日付を順番に収集する."""
        started = time.monotonic()
        collection_id = f"lambda_{int(time.time() * 1000)}"
        today = self._today or datetime.now(timezone.utc).date()
        items = build_work_items(self._settings.regions, self._settings.days_ahead, today)

        logger.info(
            "収集開始 %s: 地域 %d 件, %d 日分",
            collection_id, len(self._settings.regions), self._settings.days_ahead,
        )

        results: list[ItemResult] = []
        for index, (region, date) in enumerate(items):
            result = await self.collect_item(collection_id, region, date)
            results.append(result)

            if index == len(items) - 1:
                break
            if result.ok:
                await wait_interval(
                    self._settings.success_delay_min, self._settings.success_delay_max
                )
            else:
                await wait_interval(self._settings.failure_delay, self._settings.failure_delay)

        report = CollectionReport(
            collection_id=collection_id,
            results=results,
            collection_time_ms=_elapsed_ms(started),
            finished_at=datetime.now(timezone.utc),
        )
        logger.info(
            "収集完了: 成功 %d/%d, 空き枠 %d 件, %d ms",
            report.successful, len(results), report.total_slots, report.collection_time_ms,
        )
        return report

    async def collect_item(self, collection_id: str, region: str, date: str) -> ItemResult:
        """1 項目を取得・保存・記録する. 失敗は ItemResult として返す."""
        started = time.monotonic()
        try:
            slots = await self._fetch_with_timeout(region, date)
            venue_ids = unique_venue_ids(slots)
            await self._store.set_cached_data(region, date, slots)
            if self._settings.store_venues:
                await self._store_venues(slots, region)
        except Exception as e:
            elapsed = _elapsed_ms(started)
            kind = error_kind(e).value
            await self._store.log_collection(CollectionLogEntry(
                collection_id=collection_id,
                region=region,
                date=date,
                status="error",
                slots_collected=0,
                venues_processed=0,
                execution_time_ms=elapsed,
                provider=self._settings.provider,
                error_message=str(e),
            ))
            logger.error("%s %s: %s (%d ms)", region, date, e, elapsed)
            return ItemResult(
                region=region,
                date=date,
                status="error",
                execution_time_ms=elapsed,
                error=str(e),
                error_kind=kind,
            )

        elapsed = _elapsed_ms(started)
        await self._store.log_collection(CollectionLogEntry(
            collection_id=collection_id,
            region=region,
            date=date,
            status="success",
            slots_collected=len(slots),
            venues_processed=len(venue_ids),
            execution_time_ms=elapsed,
            provider=self._settings.provider,
        ))
        logger.info(
            "%s %s: 空き枠 %d 件 / %d 会場 (%d ms)",
            region, date, len(slots), len(venue_ids), elapsed,
        )
        return ItemResult(
            region=region,
            date=date,
            status="success",
            execution_time_ms=elapsed,
            slots_count=len(slots),
            venues_count=len(venue_ids),
            price_range=price_range(slots),
            venue_ids=venue_ids,
        )

    async def _fetch_with_timeout(self, region: str, date: str) -> list[Slot]:
        # タイムアウト時は wait_for が取得タスクをキャンセルし、通信中のリクエストも閉じる
        try:
            return await asyncio.wait_for(
                self._provider.fetch_availability(region, date),
                timeout=self._settings.item_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ItemTimeout(f"Timeout for {region} {date}") from e

    async def _store_venues(self, slots: list[Slot], region: str) -> None:
        venues = {s.venue.id: s.venue for s in slots}
        for venue in venues.values():
            await self._store.store_venue(venue, region)
