"""Playtomic の会場検索・空き枠取得モジュール.

会場検索の戦略:
  1. tenants API（座標 + 半径検索、主戦略）
  2. 検索ページの JSON-LD (schema.org/SportsClub) パース（フォールバック）

半径検索は地域外の会場も返すため、Playtomic 側の address.city で絞り込む。
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Awaitable, Callable

import httpx
from bs4 import BeautifulSoup

from playscanner.batch import fetch_in_batches
from playscanner.config import (
    AVAILABILITY_HEADERS,
    REGION_COORDINATES,
    REGION_LOCALITIES,
    SEARCH_RADIUS_M,
    SPORT_ID,
    USER_AGENT,
    Settings,
)
from playscanner.errors import DiscoveryFailed, VenueFetchFailed
from playscanner.models import Court, Slot, Venue

logger = logging.getLogger(__name__)

DEFAULT_DURATION = 90  # 分

_PRICE_PATTERN = re.compile(r"(\d+(?:\.\d+)?)")
_CURRENCY_PATTERN = re.compile(r"\b([A-Z]{3})\b")
_CLUB_URL_PATTERN = re.compile(r"/(?:clubs|venue|tenant)/([^/?#]+)")


class PlaytomicClient:
    """Playtomic から地域×日付の空き枠を取得するクライアント.

    async with で使い、1 回の収集で 1 つの httpx.AsyncClient を共有する。
    """

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None):
        self._settings = settings
        self._http = http
        self._owns_http = http is None

    async def __aenter__(self) -> PlaytomicClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=self._settings.request_timeout,
                headers={
                    "User-Agent": USER_AGENT,
                    "Accept": "application/json",
                    "Accept-Language": "en-GB,en;q=0.9",
                },
                follow_redirects=True,
            )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            raise RuntimeError("PlaytomicClient must be used as an async context manager")
        return self._http

    async def fetch_availability(self, region: str, date: str) -> list[Slot]:
        """地域×日付の全会場の空き枠を返す.

        会場が見つからない場合は空リスト。1 会場の失敗は他の会場に影響しない。
        """
        logger.info("空き枠取得開始: region=%s, date=%s", region, date)

        venues = await self.discover_venues(region)
        if not venues:
            logger.info("会場が見つかりません: region=%s", region)
            return []

        logger.info("会場 %d 件: region=%s", len(venues), region)

        slots = await fetch_in_batches(
            venues,
            lambda v: self.fetch_venue_availability(v, date),
            batch_size=self._settings.batch_size,
            batch_delay=self._settings.batch_delay,
        )
        logger.info("空き枠 %d 件を %d 会場から取得", len(slots), len(venues))
        return slots

    async def discover_venues(self, region: str) -> list[Venue]:
        """戦略を順に試し、最初に会場を返した戦略の結果を使う."""
        strategies: list[tuple[str, Callable[[str], Awaitable[list[Venue]]]]] = [
            ("tenants_api", self.search_venues_api),
            ("web_search", self.search_venues_web),
        ]

        for name, strategy in strategies:
            try:
                venues = await strategy(region)
            except DiscoveryFailed as e:
                logger.warning("会場検索の戦略 %s が失敗: %s", name, e)
                continue

            venues = filter_region(venues, region)
            if venues:
                logger.info("戦略 %s で %d 会場を取得", name, len(venues))
                return venues
            logger.info("戦略 %s の結果は 0 件", name)

        return []

    async def search_venues_api(self, region: str) -> list[Venue]:
        """tenants API で座標周辺の会場を検索する."""
        coords = REGION_COORDINATES.get(region.lower())
        if coords is None:
            raise DiscoveryFailed(f"No coordinates configured for region {region!r}")

        params = {
            "coordinate": f"{coords[0]},{coords[1]}",
            "sport_id": SPORT_ID,
            "radius": str(SEARCH_RADIUS_M),
        }
        url = f"{self._settings.api_base_url}/v1/tenants"

        try:
            resp = await self.http.get(url, params=params)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DiscoveryFailed(f"Tenants API failed: {e}") from e

        if not isinstance(data, list):
            logger.warning("tenants API のレスポンスが配列ではありません")
            return []

        try:
            return parse_tenants(data)
        except Exception as e:
            raise DiscoveryFailed(f"Tenants payload could not be parsed: {e}") from e

    async def search_venues_web(self, region: str) -> list[Venue]:
        """検索ページの HTML から会場を抽出する."""
        url = f"{self._settings.web_base_url}/search"
        headers = {"Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"}

        try:
            resp = await self.http.get(
                url, params={"q": region, "sport": "padel"}, headers=headers
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise DiscoveryFailed(f"Web search failed: {e}") from e

        try:
            return parse_venues_from_html(resp.text)
        except Exception as e:
            raise DiscoveryFailed(f"Search page could not be parsed: {e}") from e

    async def fetch_venue_availability(self, venue: Venue, date: str) -> list[Slot]:
        """1 会場の指定日の空き枠を取得する.

        Raises:
            VenueFetchFailed: 通信エラー、2xx 以外、JSON 不正
        """
        params = {
            "sport_id": SPORT_ID,
            "tenant_id": venue.id,
            "start_min": f"{date}T00:00:00",
            "start_max": f"{date}T23:59:59",
        }
        url = f"{self._settings.api_base_url}/v1/availability"

        try:
            resp = await self.http.get(
                url, params=params, headers={**AVAILABILITY_HEADERS, "User-Agent": USER_AGENT}
            )
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise VenueFetchFailed(f"Venue {venue.id}: {e}") from e

        if not isinstance(data, list):
            return []

        return normalize_slots(
            venue,
            date,
            data,
            web_base_url=self._settings.web_base_url,
            default_currency=self._settings.default_currency,
        )


def parse_price(text: str | None) -> int:
    """価格文字列（例: "48.5 GBP"）を最小通貨単位の整数にする.

    先頭の数値トークンだけを使う。数値が無ければ 0。
    """
    if not text:
        return 0
    m = _PRICE_PATTERN.search(str(text))
    if not m:
        return 0
    try:
        amount = Decimal(m.group(1))
    except InvalidOperation:
        return 0
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_currency(text: str | None, default: str = "GBP") -> str:
    """価格文字列から ISO 4217 の通貨コードを取り出す."""
    if not text:
        return default
    m = _CURRENCY_PATTERN.search(str(text))
    return m.group(1) if m else default


def filter_region(venues: list[Venue], region: str) -> list[Venue]:
    """Playtomic 側の都市名が地域の許可リストと完全一致する会場だけ残す."""
    allowed = REGION_LOCALITIES.get(region.lower(), (region,))
    kept = [v for v in venues if v.locality in allowed]
    if len(kept) != len(venues):
        logger.info("地域フィルタ: %d 件 → %d 件 (region=%s)", len(venues), len(kept), region)
    return kept


def parse_tenants(data: list[dict]) -> list[Venue]:
    """tenants API のレコードを Venue に変換する.

    形の崩れたフィールドは既定値に置き換え、ID の無いレコードは読み飛ばす。
    """
    venues: list[Venue] = []
    for item in data:
        if not isinstance(item, dict):
            continue
        venue_id = item.get("tenant_id") or item.get("id")
        if not venue_id:
            continue

        address = item.get("address") or {}
        if not isinstance(address, dict):
            address = {"street": str(address)}
        coordinate = _dict(item.get("coordinates")) or _dict(address.get("coordinate"))
        amenities = item.get("amenities")

        venues.append(Venue(
            id=str(venue_id),
            name=_str(item.get("tenant_name") or item.get("name")),
            slug=_str(item.get("tenant_slug") or item.get("slug")) or str(venue_id),
            address=_str(address.get("street")),
            postcode=_str(address.get("postal_code") or item.get("postal_code")),
            latitude=_float(coordinate.get("lat", item.get("lat"))),
            longitude=_float(coordinate.get("lng", coordinate.get("lon", item.get("lng")))),
            indoor=bool(item.get("indoor", False)),
            surface=_str(item.get("surface_type")) or "unknown",
            amenities=tuple(str(a) for a in amenities) if isinstance(amenities, list) else (),
            locality=_str(address.get("city")),
        ))
    return venues


def parse_venues_from_html(html: str) -> list[Venue]:
    """検索ページの JSON-LD (SportsClub) から会場を抽出する."""
    soup = BeautifulSoup(html, "html.parser")
    venues: list[Venue] = []

    for script in soup.find_all("script", type="application/ld+json"):
        try:
            data = json.loads(script.string)
        except (json.JSONDecodeError, TypeError):
            continue

        for node in _iter_json_ld_nodes(data):
            venue = _venue_from_json_ld(node)
            if venue is not None:
                venues.append(venue)

    return venues


def _iter_json_ld_nodes(data: Any):
    """JSON-LD の単体・配列・@graph・ItemList を平らにたどる."""
    if isinstance(data, list):
        for item in data:
            yield from _iter_json_ld_nodes(item)
        return
    if not isinstance(data, dict):
        return

    if "@graph" in data:
        yield from _iter_json_ld_nodes(data["@graph"])
    elif data.get("@type") == "ItemList":
        for entry in data.get("itemListElement", []):
            yield from _iter_json_ld_nodes(entry.get("item", entry) if isinstance(entry, dict) else entry)
    else:
        yield data


def _venue_from_json_ld(node: dict) -> Venue | None:
    if node.get("@type") != "SportsClub":
        return None

    url = _str(node.get("url"))
    venue_id = node.get("identifier") or _extract_from_url(url)
    if not venue_id or not node.get("name"):
        return None

    # schema.org では address を文字列で書くこともできる
    address = node.get("address") or {}
    if not isinstance(address, dict):
        address = {"streetAddress": str(address)}
    geo = _dict(node.get("geo"))
    slug = _extract_from_url(url) or str(venue_id)
    return Venue(
        id=str(venue_id),
        name=" ".join(str(node["name"]).split()),
        slug=slug,
        address=_str(address.get("streetAddress")),
        postcode=_str(address.get("postalCode")),
        latitude=_float(geo.get("latitude")),
        longitude=_float(geo.get("longitude")),
        locality=_str(address.get("addressLocality")),
    )


def _extract_from_url(url: str) -> str:
    """playtomic.com/clubs/{slug} 形式の URL から slug を抽出する. 失敗時は ""."""
    m = _CLUB_URL_PATTERN.search(url)
    return m.group(1) if m else ""


def normalize_slots(
    venue: Venue,
    date: str,
    data: list[dict],
    *,
    web_base_url: str,
    default_currency: str = "GBP",
) -> list[Slot]:
    """availability API のコート別レコードを Slot に変換する.

    コート内の枠の並びはレスポンス順のまま保つ。
    """
    slots: list[Slot] = []
    for court_data in data:
        if not isinstance(court_data, dict):
            continue
        resource_id = str(court_data.get("resource_id") or "")
        start_date = court_data.get("start_date") or date
        court = Court(
            id=resource_id,
            name=f"Court {resource_id[-4:].upper()}",
            surface=venue.surface if venue.surface != "unknown" else "turf",
        )

        for time_slot in court_data.get("slots") or []:
            start_time = time_slot.get("start_time")
            if not start_time:
                continue
            try:
                start = datetime.fromisoformat(f"{start_date}T{start_time}").replace(
                    tzinfo=timezone.utc
                )
            except ValueError:
                logger.debug("開始時刻を解釈できません: %s %s", start_date, start_time)
                continue

            duration = _int(time_slot.get("duration")) or DEFAULT_DURATION
            price_text = time_slot.get("price")
            slots.append(Slot(
                venue=venue,
                court=court,
                start_time=start,
                end_time=start + timedelta(minutes=duration),
                duration=duration,
                price=parse_price(price_text),
                currency=parse_currency(price_text, default_currency),
                link=f"{web_base_url}/venue/{venue.id}?date={date}&time={start_time}",
            ))

    return slots


def _float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}
