"""空き枠収集 — ローカル実行用エントリーポイント.

Lambda と同じ handler を、擬似 context（持ち時間 5 分）で呼び出す。

処理フロー:
  1. ロギング設定（collector/logs にも出力）
  2. handler を実行
  3. サマリと失敗項目をログに出し、失敗時は終了コード 1
"""

from __future__ import annotations

import json
import logging
import sys
import time
from dataclasses import dataclass

from playscanner.config import LOG_DIR
from playscanner.handler import DEFAULT_REMAINING_MS, handler, setup_logging


@dataclass
class LocalContext:
    """Lambda context の代わり. 残り時間は実時間で減っていく."""

    budget_ms: int = DEFAULT_REMAINING_MS
    function_name: str = "playscanner-collector-local"

    def __post_init__(self) -> None:
        self._started = time.monotonic()

    def get_remaining_time_in_millis(self) -> int:
        elapsed = int((time.monotonic() - self._started) * 1000)
        return max(0, self.budget_ms - elapsed)


def run() -> int:
    """メイン処理."""
    setup_logging(LOG_DIR)
    logger = logging.getLogger(__name__)
    logger.info("=== 空き枠収集 開始 ===")

    event = {"source": "local", "detail": {}}
    result = handler(event, LocalContext())
    body = json.loads(result["body"])

    if result["statusCode"] != 200:
        logger.error("収集失敗: %s (%s)", body.get("error"), body.get("errorKind"))
        return 1

    summary = body["collection"]["summary"]
    logger.info("=== 空き枠収集 完了 ===")
    logger.info(
        "成功: %d/%d 件, 空き枠: %d 件, 会場: %d, 所要時間: %.1f 秒",
        summary["successfulCollections"], summary["totalCollections"],
        summary["totalSlots"], summary["totalVenues"], body["executionTime"] / 1000,
    )
    for item in body["collection"]["results"]:
        if item["status"] == "error":
            logger.warning("  失敗: %s %s → %s", item["region"], item["date"], item["error"])
    return 0


if __name__ == "__main__":
    sys.exit(run())
