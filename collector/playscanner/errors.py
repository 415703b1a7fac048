"""エラー種別の定義.

呼び出し側はメッセージ文字列ではなく kind で分岐する。
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """失敗の種類."""

    CONFIG_MISSING = "config_missing"
    CONFIG_INVALID = "config_invalid"
    DISCOVERY_FAILED = "discovery_failed"
    VENUE_FETCH_FAILED = "venue_fetch_failed"
    TIMEOUT = "timeout"
    CACHE_WRITE_FAILED = "cache_write_failed"
    UNEXPECTED = "unexpected"


class CollectorError(Exception):
    """収集処理で発生するエラーの基底クラス."""

    kind: ErrorKind = ErrorKind.UNEXPECTED


class ConfigMissing(CollectorError):
    kind = ErrorKind.CONFIG_MISSING


class ConfigInvalid(CollectorError):
    kind = ErrorKind.CONFIG_INVALID


class DiscoveryFailed(CollectorError):
    """会場検索の 1 戦略が失敗した."""

    kind = ErrorKind.DISCOVERY_FAILED


class VenueFetchFailed(CollectorError):
    """1 会場の空き枠取得が失敗した."""

    kind = ErrorKind.VENUE_FETCH_FAILED


class ItemTimeout(CollectorError):
    """1 項目（地域×日付）の取得がタイムアウトした."""

    kind = ErrorKind.TIMEOUT


class CollectionTimeout(CollectorError):
    """呼び出し全体の制限時間を超えた."""

    kind = ErrorKind.TIMEOUT


class CacheWriteFailed(CollectorError):
    kind = ErrorKind.CACHE_WRITE_FAILED


def error_kind(exc: BaseException) -> ErrorKind:
    """例外から ErrorKind を得る. 想定外の例外は UNEXPECTED."""
    if isinstance(exc, CollectorError):
        return exc.kind
    return ErrorKind.UNEXPECTED
