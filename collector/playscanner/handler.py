"""AWS Lambda エントリーポイント — 定期収集とヘルスチェック.

スケジューラから呼ばれ、残り実行時間から安全マージンを引いた期限内で
収集を実行し、{"statusCode", "body"} 形式のレスポンスを返す。
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from playscanner.collector import BackgroundCollector
from playscanner.config import Settings, load_settings
from playscanner.db import CacheStore, open_store
from playscanner.errors import CollectionTimeout, CollectorError, error_kind
from playscanner.scraper import PlaytomicClient

logger = logging.getLogger(__name__)

DEFAULT_REMAINING_MS = 300000  # context が無い場合（ローカル実行）の持ち時間

ProviderFactory = Callable[[Settings], Any]


def setup_logging(log_dir: Path | None = None) -> None:
    """ロギングの初期設定. log_dir があれば日付ごとのファイルにも出力する."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"collector_{datetime.now().strftime('%Y%m%d')}.log"
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
    # Lambda ランタイムは root に先にハンドラを付けるため、basicConfig が効かない場合がある
    logging.getLogger().setLevel(logging.INFO)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def compute_deadline_ms(
    remaining_ms: int, safety_buffer_ms: int = 30000, ceiling_ms: int = 270000
) -> int:
    """収集に使える時間（ミリ秒）. 残り時間 − 安全マージン、上限 ceiling_ms."""
    return max(0, min(remaining_ms - safety_buffer_ms, ceiling_ms))


def remaining_time_ms(context: Any) -> int:
    if context is None or not hasattr(context, "get_remaining_time_in_millis"):
        return DEFAULT_REMAINING_MS
    return int(context.get_remaining_time_in_millis())


def _response(status_code: int, body: dict[str, Any]) -> dict[str, Any]:
    body["timestamp"] = datetime.now(timezone.utc).isoformat()
    return {"statusCode": status_code, "body": json.dumps(body, ensure_ascii=False)}


def _error_response(exc: BaseException, started: float) -> dict[str, Any]:
    return _response(500, {
        "status": "error",
        "message": "Background collection failed",
        "error": str(exc),
        "errorKind": error_kind(exc).value,
        "executionTime": int((time.monotonic() - started) * 1000),
    })


async def run_collection(
    settings: Settings,
    store: CacheStore,
    remaining_ms: int,
    *,
    provider_factory: ProviderFactory | None = None,
    started: float | None = None,
) -> dict[str, Any]:
    """収集を期限と競わせて実行し、レスポンスを組み立てる.

    期限切れの場合、処理中の項目は破棄される（完了済み項目の書き込みは残る）。
    """
    started = time.monotonic() if started is None else started
    deadline_ms = compute_deadline_ms(
        remaining_ms, settings.safety_buffer_ms, settings.max_collection_ms
    )
    logger.info("残り時間: %d ms, 収集期限: %d ms", remaining_ms, deadline_ms)

    try:
        async with (provider_factory or PlaytomicClient)(settings) as provider:
            collector = BackgroundCollector(settings, store, provider)
            try:
                report = await asyncio.wait_for(
                    collector.collect_all(), timeout=deadline_ms / 1000
                )
            except asyncio.TimeoutError as e:
                raise CollectionTimeout("Collection timeout") from e
    except Exception as e:
        logger.exception("収集失敗: %s", e)
        return _error_response(e, started)

    total_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        "収集成功: %d/%d 件, 空き枠 %d 件 / %d 会場 (%d ms)",
        report.successful, len(report.results), report.total_slots,
        report.total_venues, total_ms,
    )
    return _response(200, {
        "status": "success",
        "message": "Background collection completed",
        "collection": report.to_dict(),
        "executionTime": total_ms,
    })


async def _invoke(settings: Settings, remaining_ms: int, started: float) -> dict[str, Any]:
    try:
        store = await open_store(settings)
    except Exception as e:
        logger.exception("初期化失敗: %s", e)
        return _error_response(e, started)

    try:
        return await run_collection(settings, store, remaining_ms, started=started)
    finally:
        await store.aclose()


def handler(event: Any, context: Any) -> dict[str, Any]:
    """定期トリガーで呼ばれるメインハンドラ."""
    started = time.monotonic()

    try:
        settings = load_settings()
    except CollectorError as e:
        setup_logging()
        logger.error("設定エラー: %s", e)
        return _error_response(e, started)

    setup_logging(settings.log_dir)
    logger.info("収集開始 event=%s", json.dumps(event, default=str, ensure_ascii=False))

    return asyncio.run(_invoke(settings, remaining_time_ms(context), started))


async def check_health(settings: Settings) -> dict[str, Any]:
    try:
        store = await open_store(settings)
    except Exception as e:
        logger.error("ヘルスチェック失敗: %s", e)
        return _response(500, {
            "status": "unhealthy",
            "error": str(e),
        })

    try:
        stats = await store.get_cache_stats()
    finally:
        await store.aclose()
    return _response(200, {
        "status": "healthy",
        "cacheStats": stats.to_dict(),
    })


def health_check(event: Any, context: Any = None) -> dict[str, Any]:
    """キャッシュ統計を返すヘルスチェック. 収集処理とは独立."""
    try:
        settings = load_settings()
    except CollectorError as e:
        setup_logging()
        logger.error("ヘルスチェック失敗: %s", e)
        return _response(500, {
            "status": "unhealthy",
            "error": str(e),
        })

    setup_logging(settings.log_dir)
    return asyncio.run(check_health(settings))
