"""データモデル定義."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any


def isoformat_z(dt: datetime) -> str:
    """UTC datetime を "2025-03-10T09:00:00.000Z" 形式にする."""
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


@dataclass(frozen=True)
class Venue:
    """施設（会場）の識別子と静的メタデータ."""

    id: str  # Playtomic の tenant_id
    name: str
    slug: str
    address: str = ""
    postcode: str = ""
    latitude: float = 0.0
    longitude: float = 0.0
    indoor: bool = False
    surface: str = "unknown"
    amenities: tuple[str, ...] = ()
    locality: str = ""  # Playtomic 側の address.city（地域フィルタ用）

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "address": self.address,
            "postcode": self.postcode,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "indoor": self.indoor,
            "surface": self.surface,
            "amenities": list(self.amenities),
            "city": self.locality,
        }


@dataclass(frozen=True)
class Court:
    """会場内のコート."""

    id: str
    name: str
    surface: str


@dataclass(frozen=True)
class Slot:
    """1 会場・1 コートの予約可能な時間枠."""

    venue: Venue
    court: Court
    start_time: datetime  # UTC
    end_time: datetime  # UTC
    duration: int  # 分
    price: int  # 最小通貨単位（ペンス）
    currency: str  # ISO 4217
    link: str
    available: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "venue": self.venue.to_dict(),
            "court": {
                "id": self.court.id,
                "name": self.court.name,
                "surface": self.court.surface,
            },
            "startTime": isoformat_z(self.start_time),
            "endTime": isoformat_z(self.end_time),
            "duration": self.duration,
            "price": self.price,
            "currency": self.currency,
            "available": self.available,
            "link": self.link,
        }


def unique_venue_ids(slots: list[Slot]) -> list[str]:
    """出現順を保った venue.id の重複なしリスト."""
    return list(dict.fromkeys(s.venue.id for s in slots))


def make_cache_key(region: str, date: str) -> str:
    return f"{region.lower()}:{date}"


@dataclass
class CacheEntry:
    """TTL 付きキャッシュの 1 行（地域×日付）."""

    cache_key: str
    region: str
    date: str  # YYYY-MM-DD
    slots: list[Slot]
    collected_at: datetime
    expires_at: datetime
    provider: str
    unique_venues: int

    @classmethod
    def build(
        cls,
        region: str,
        date: str,
        slots: list[Slot],
        *,
        collected_at: datetime,
        ttl: timedelta,
        provider: str,
    ) -> CacheEntry:
        """collected_at を基準に expires_at を決めてエントリを作る."""
        return cls(
            cache_key=make_cache_key(region, date),
            region=region.lower(),
            date=date,
            slots=list(slots),
            collected_at=collected_at,
            expires_at=collected_at + ttl,
            provider=provider,
            unique_venues=len(unique_venue_ids(slots)),
        )

    @property
    def metadata(self) -> dict[str, Any]:
        return {
            "totalSlots": len(self.slots),
            "uniqueVenues": self.unique_venues,
            "collectedAt": self.collected_at.isoformat(),
            "provider": self.provider,
        }

    def to_row(self) -> dict[str, Any]:
        """playscanner_cache テーブルに upsert する行."""
        return {
            "cache_key": self.cache_key,
            "region": self.region,
            "date": self.date,
            "slots": [s.to_dict() for s in self.slots],
            "metadata": self.metadata,
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass
class CollectionLogEntry:
    """収集ログの 1 行（追記のみ）."""

    collection_id: str
    region: str
    date: str
    status: str  # "success" or "error"
    slots_collected: int
    venues_processed: int
    execution_time_ms: int
    provider: str
    error_message: str | None = None

    def to_row(self) -> dict[str, Any]:
        row = {
            "collection_id": self.collection_id,
            "region": self.region.lower(),
            "date": self.date,
            "status": self.status,
            "slots_collected": self.slots_collected,
            "venues_processed": self.venues_processed,
            "execution_time_ms": self.execution_time_ms,
            "provider": self.provider,
        }
        if self.status == "error":
            row["error_message"] = self.error_message or ""
        return row


@dataclass
class ItemResult:
    """1 項目（地域×日付）の収集結果."""

    region: str
    date: str
    status: str
    execution_time_ms: int
    slots_count: int = 0
    venues_count: int = 0
    price_range: dict[str, int] | None = None  # 最小通貨単位
    error: str | None = None
    error_kind: str | None = None
    venue_ids: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> dict[str, Any]:
        if not self.ok:
            return {
                "region": self.region,
                "date": self.date,
                "status": self.status,
                "error": self.error,
                "errorKind": self.error_kind,
                "executionTime": self.execution_time_ms,
            }
        return {
            "region": self.region,
            "date": self.date,
            "status": self.status,
            "slotsCount": self.slots_count,
            "venuesCount": self.venues_count,
            "priceRange": self.price_range,
            "executionTime": self.execution_time_ms,
        }


@dataclass
class CollectionReport:
    """1 回の収集（collection run）全体の結果."""

    collection_id: str
    results: list[ItemResult]
    collection_time_ms: int
    finished_at: datetime

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def total_slots(self) -> int:
        return sum(r.slots_count for r in self.results)

    @property
    def total_venues(self) -> int:
        """全項目を通した venue.id の和集合の件数."""
        seen: set[str] = set()
        for r in self.results:
            seen.update(r.venue_ids)
        return len(seen)

    def summary(self) -> dict[str, Any]:
        return {
            "collectionId": self.collection_id,
            "totalCollections": len(self.results),
            "successfulCollections": self.successful,
            "failedCollections": len(self.results) - self.successful,
            "totalSlots": self.total_slots,
            "totalVenues": self.total_venues,
            "collectionTime": self.collection_time_ms,
            "timestamp": self.finished_at.isoformat(),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "summary": self.summary(),
        }


@dataclass
class CacheStats:
    """ヘルスチェック用のキャッシュ統計."""

    total_entries: int = 0
    active_entries: int = 0
    expired_entries: int = 0
    regions_covered: int = 0
    oldest_date: str | None = None
    newest_date: str | None = None
    last_collection: str | None = None

    @classmethod
    def empty(cls) -> CacheStats:
        return cls()

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalEntries": self.total_entries,
            "activeEntries": self.active_entries,
            "expiredEntries": self.expired_entries,
            "regionsCovered": self.regions_covered,
            "dateRange": {
                "oldest": self.oldest_date,
                "newest": self.newest_date,
            },
            "lastCollection": self.last_collection,
        }
