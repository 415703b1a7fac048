"""設定モジュール — 環境変数・定数定義."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from dotenv import load_dotenv

from playscanner.errors import ConfigInvalid, ConfigMissing

# .env はプロジェクトルートに配置
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# --- Playtomic ---
PLAYTOMIC_API_URL = "https://api.playtomic.io"
PLAYTOMIC_WEB_URL = "https://playtomic.com"
PROVIDER_NAME = "playtomic"
SPORT_ID = "PADEL"
SEARCH_RADIUS_M = 25000

# --- User-Agent ---
USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/131.0.0.0 Safari/537.36"
)

AVAILABILITY_HEADERS = {
    "Accept": "application/json, text/plain, */*",
    "Content-Type": "application/json",
    "X-Requested-With": "XMLHttpRequest",
    "Referer": "https://playtomic.com/venues/london",
    "Origin": "https://playtomic.com",
    "Sec-Fetch-Site": "same-origin",
    "Sec-Fetch-Mode": "cors",
    "Sec-Fetch-Dest": "empty",
    "Accept-Language": "en-GB,en-US;q=0.9,en;q=0.8",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}

# --- 地域 ---
# Playtomic の address.city は利用者の言語で返るため、表記ゆれを許可リストで吸収する
REGION_LOCALITIES: dict[str, tuple[str, ...]] = {
    "london": ("London", "Лондон", "Londra", "Londres"),
    "manchester": ("Manchester", "Mánchester"),
    "birmingham": ("Birmingham",),
    "edinburgh": ("Edinburgh", "Edimburgo", "Édimbourg"),
}

REGION_COORDINATES: dict[str, tuple[float, float]] = {
    "london": (51.5074, -0.1278),
    "manchester": (53.4808, -2.2426),
    "birmingham": (52.4862, -1.8904),
    "edinburgh": (55.9533, -3.1883),
}

# --- Supabase テーブル ---
CACHE_TABLE = "playscanner_cache"
COLLECTION_LOG_TABLE = "playscanner_collection_log"
VENUES_TABLE = "playscanner_venues"

# --- ログ ---
LOG_DIR = Path(__file__).resolve().parent.parent / "logs"

REQUIRED_ENV_VARS = ("SUPABASE_URL", "SUPABASE_SERVICE_KEY")


@dataclass(frozen=True)
class Settings:
    """収集ジョブの実行時設定."""

    supabase_url: str
    supabase_key: str
    supabase_schema: str = "public"
    regions: tuple[str, ...] = ("London",)
    days_ahead: int = 7
    item_timeout: float = 35.0  # 秒
    batch_size: int = 5
    batch_delay: float = 0.5  # 秒
    success_delay_min: float = 1.0
    success_delay_max: float = 2.0
    failure_delay: float = 2.0
    cache_ttl_minutes: int = 30
    cache_write_retry_wait: float = 1.0  # 重複キー衝突時の待機（試行ごとに加算）
    safety_buffer_ms: int = 30000
    max_collection_ms: int = 270000
    request_timeout: float = 10.0
    store_venues: bool = False
    log_dir: Path | None = None
    api_base_url: str = PLAYTOMIC_API_URL
    web_base_url: str = PLAYTOMIC_WEB_URL
    provider: str = PROVIDER_NAME
    default_currency: str = "GBP"
    cache_table: str = CACHE_TABLE
    log_table: str = COLLECTION_LOG_TABLE
    venues_table: str = VENUES_TABLE


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """環境変数から Settings を構築する.

    Raises:
        ConfigMissing: 必須の環境変数が無い場合
        ConfigInvalid: 数値・真偽値として解釈できない値がある場合
    """
    env = os.environ if environ is None else environ

    missing = [name for name in REQUIRED_ENV_VARS if not env.get(name)]
    if missing:
        raise ConfigMissing(
            f"Missing required environment variable: {', '.join(missing)}"
        )

    regions = tuple(
        r.strip() for r in env.get("PLAYSCANNER_REGIONS", "London").split(",") if r.strip()
    )
    if not regions:
        raise ConfigInvalid("PLAYSCANNER_REGIONS must name at least one region")

    log_dir = env.get("PLAYSCANNER_LOG_DIR")

    settings = Settings(
        supabase_url=env["SUPABASE_URL"],
        supabase_key=env["SUPABASE_SERVICE_KEY"],
        supabase_schema=env.get("SUPABASE_SCHEMA", "public"),
        regions=regions,
        days_ahead=_int(env, "PLAYSCANNER_DAYS_AHEAD", 7),
        item_timeout=_float(env, "PLAYSCANNER_ITEM_TIMEOUT", 35.0),
        batch_size=_int(env, "PLAYSCANNER_BATCH_SIZE", 5),
        batch_delay=_float(env, "PLAYSCANNER_BATCH_DELAY", 0.5),
        success_delay_min=_float(env, "PLAYSCANNER_SUCCESS_DELAY_MIN", 1.0),
        success_delay_max=_float(env, "PLAYSCANNER_SUCCESS_DELAY_MAX", 2.0),
        failure_delay=_float(env, "PLAYSCANNER_FAILURE_DELAY", 2.0),
        cache_ttl_minutes=_int(env, "PLAYSCANNER_CACHE_TTL_MINUTES", 30),
        safety_buffer_ms=_int(env, "PLAYSCANNER_SAFETY_BUFFER_MS", 30000),
        max_collection_ms=_int(env, "PLAYSCANNER_MAX_COLLECTION_MS", 270000),
        request_timeout=_float(env, "PLAYSCANNER_REQUEST_TIMEOUT", 10.0),
        store_venues=_bool(env, "PLAYSCANNER_STORE_VENUES", False),
        log_dir=Path(log_dir) if log_dir else None,
    )

    if settings.batch_size < 1:
        raise ConfigInvalid("PLAYSCANNER_BATCH_SIZE must be at least 1")
    if settings.success_delay_min > settings.success_delay_max:
        raise ConfigInvalid(
            "PLAYSCANNER_SUCCESS_DELAY_MIN must not exceed PLAYSCANNER_SUCCESS_DELAY_MAX"
        )
    return settings


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigInvalid(f"{name} must be an integer, got {raw!r}") from e


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigInvalid(f"{name} must be a number, got {raw!r}") from e


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ConfigInvalid(f"{name} must be a boolean, got {raw!r}")
