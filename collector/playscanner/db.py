"""Supabase データベース操作モジュール.

キャッシュ（地域×日付の TTL 付きエントリ）と収集ログを扱う。
Supabase の async client は 1 回の呼び出し（イベントループ）ごとに作り、
終了時に閉じる。期限切れでタスクがキャンセルされると通信中のリクエストも止まる。
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from postgrest.exceptions import APIError
from supabase import AsyncClient, acreate_client
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_incrementing

from playscanner.config import Settings
from playscanner.errors import CacheWriteFailed
from playscanner.models import (
    CacheEntry,
    CacheStats,
    CollectionLogEntry,
    Slot,
    Venue,
    make_cache_key,
)

logger = logging.getLogger(__name__)

_DUPLICATE_KEY = "23505"
_UPSERT_ATTEMPTS = 3


async def create_supabase_client(settings: Settings) -> AsyncClient:
    """設定から Supabase の async client を作る. 実行中のイベントループに紐づく."""
    return await acreate_client(settings.supabase_url, settings.supabase_key)


async def open_store(settings: Settings) -> CacheStore:
    """この呼び出し用の CacheStore を作る. 使い終わったら aclose() する."""
    return CacheStore(await create_supabase_client(settings), settings)


def _is_duplicate_key(exc: BaseException) -> bool:
    return isinstance(exc, APIError) and exc.code == _DUPLICATE_KEY


def _parse_ts(value: str) -> datetime:
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class CacheStore:
    """キャッシュテーブルと収集ログテーブルへのアクセス."""

    def __init__(self, client: AsyncClient, settings: Settings):
        self._client = client
        self._settings = settings

    def _table(self, name: str):
        """設定されたスキーマのテーブルを参照する."""
        return self._client.schema(self._settings.supabase_schema).table(name)

    async def aclose(self) -> None:
        """PostgREST の HTTP セッションを閉じる."""
        try:
            await self._client.postgrest.aclose()
        except Exception as e:
            logger.warning("Supabase client のクローズ失敗: %s", e)

    async def set_cached_data(
        self,
        region: str,
        date: str,
        slots: list[Slot],
        *,
        now: datetime | None = None,
    ) -> CacheEntry:
        """地域×日付のエントリを upsert する. 既存行は丸ごと置き換わる.

        Raises:
            CacheWriteFailed: upsert に失敗した場合
        """
        entry = CacheEntry.build(
            region,
            date,
            slots,
            collected_at=now or datetime.now(timezone.utc),
            ttl=timedelta(minutes=self._settings.cache_ttl_minutes),
            provider=self._settings.provider,
        )

        try:
            await self._upsert_cache_row(entry.to_row())
        except Exception as e:
            raise CacheWriteFailed(f"Failed to cache data: {e}") from e

        logger.info(
            "キャッシュ保存: %s (%d 件, TTL %d 分)",
            entry.cache_key, len(slots), self._settings.cache_ttl_minutes,
        )
        return entry

    async def _upsert_cache_row(self, row: dict) -> None:
        # 同時書き込みによる重複キー衝突のみ再試行する
        wait = self._settings.cache_write_retry_wait
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_duplicate_key),
            stop=stop_after_attempt(_UPSERT_ATTEMPTS),
            wait=wait_incrementing(start=wait, increment=wait),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "重複キー衝突のため再試行: %s (%d/%d)",
                        row["cache_key"], attempt.retry_state.attempt_number, _UPSERT_ATTEMPTS,
                    )
                await self._table(self._settings.cache_table).upsert(
                    row, on_conflict="cache_key"
                ).execute()

    async def log_collection(self, entry: CollectionLogEntry) -> None:
        """収集ログを 1 行追加する. 失敗しても例外は投げない."""
        try:
            await self._table(self._settings.log_table).insert(entry.to_row()).execute()
        except Exception as e:
            logger.warning(
                "収集ログの書き込み失敗: region=%s, date=%s, error=%s",
                entry.region, entry.date, e,
            )

    async def store_venue(self, venue: Venue, region: str) -> None:
        """会場メタデータを upsert する. 失敗しても例外は投げない."""
        row = {
            "venue_id": venue.id,
            "provider": self._settings.provider,
            "region": region.lower(),
            "venue_data": venue.to_dict(),
            "is_active": True,
            "last_seen": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await self._table(self._settings.venues_table).upsert(
                row, on_conflict="venue_id"
            ).execute()
        except Exception as e:
            logger.warning("会場の保存失敗: venue=%s, error=%s", venue.id, e)

    async def get_cached_data(
        self, region: str, date: str, *, now: datetime | None = None
    ) -> list[dict] | None:
        """有効期限内のキャッシュがあれば slots を返す. 無ければ None."""
        now = now or datetime.now(timezone.utc)
        cache_key = make_cache_key(region, date)
        try:
            resp = await (
                self._table(self._settings.cache_table)
                .select("slots, expires_at")
                .eq("cache_key", cache_key)
                .gt("expires_at", now.isoformat())
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.error("キャッシュ取得失敗: %s, error=%s", cache_key, e)
            return None

        if not resp.data:
            return None
        return resp.data[0].get("slots") or []

    async def cleanup_expired(self, *, now: datetime | None = None) -> int:
        """期限切れのキャッシュ行を削除し、削除件数を返す."""
        now = now or datetime.now(timezone.utc)
        try:
            resp = await (
                self._table(self._settings.cache_table)
                .delete()
                .lt("expires_at", now.isoformat())
                .execute()
            )
        except Exception as e:
            logger.error("期限切れキャッシュの削除失敗: %s", e)
            return 0

        removed = len(resp.data or [])
        logger.info("期限切れキャッシュを %d 件削除", removed)
        return removed

    async def get_cache_stats(self, *, now: datetime | None = None) -> CacheStats:
        """キャッシュの統計を返す. 読み取りに失敗した場合はゼロ値."""
        now = now or datetime.now(timezone.utc)
        try:
            return await self._read_cache_stats(now)
        except Exception as e:
            logger.error("キャッシュ統計の取得失敗: %s", e)
            return CacheStats.empty()

    async def _read_cache_stats(self, now: datetime) -> CacheStats:
        rows = (
            await self._table(self._settings.cache_table)
            .select("cache_key, expires_at, region, date")
            .execute()
        ).data or []

        active = sum(1 for r in rows if _parse_ts(r["expires_at"]) > now)
        dates = sorted(r["date"] for r in rows if r.get("date"))

        last_log = (
            await self._table(self._settings.log_table)
            .select("created_at")
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        ).data or []

        return CacheStats(
            total_entries=len(rows),
            active_entries=active,
            expired_entries=len(rows) - active,
            regions_covered=len({r.get("region") for r in rows}),
            oldest_date=dates[0] if dates else None,
            newest_date=dates[-1] if dates else None,
            last_collection=last_log[0].get("created_at") if last_log else None,
        )
