"""scraper モジュールのユニットテスト."""

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest

from factories import make_venue
from playscanner.errors import VenueFetchFailed
from playscanner.scraper import (
    PlaytomicClient,
    _extract_from_url,
    filter_region,
    normalize_slots,
    parse_currency,
    parse_price,
    parse_tenants,
    parse_venues_from_html,
)

FIXTURES_DIR = Path(__file__).parent / "fixtures"


def _load_fixture(name: str) -> str:
    return (FIXTURES_DIR / name).read_text(encoding="utf-8")


def _availability_for(slot_count: int) -> list[dict]:
    return [{
        "resource_id": "res-9999-zzzz",
        "start_date": "2025-03-10",
        "slots": [
            {"start_time": f"{9 + i:02d}:00:00", "duration": 60, "price": "40 GBP"}
            for i in range(slot_count)
        ],
    }]


def _run_with_routes(settings, routes, action):
    """httpx.MockTransport でルーティングした PlaytomicClient で action を実行する."""
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        key = (request.url.host, request.url.path)
        route = routes.get(key)
        if route is None:
            return httpx.Response(404)
        return route(request)

    async def _main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            async with PlaytomicClient(settings, http=http) as client:
                return await action(client)

    return asyncio.run(_main()), requests


def _json(payload, status=200):
    return lambda request: httpx.Response(status, json=payload)


def _availability_by_tenant(mapping):
    def route(request: httpx.Request) -> httpx.Response:
        value = mapping[request.url.params["tenant_id"]]
        if isinstance(value, httpx.Response):
            return value
        return httpx.Response(200, json=value)
    return route


def _club_html(**fields) -> str:
    club = {
        "@type": "SportsClub",
        "name": "High St Padel",
        "url": "https://playtomic.com/clubs/high-st-padel",
        **fields,
    }
    return f'<script type="application/ld+json">{json.dumps(club)}</script>'


TENANTS = ("api.playtomic.io", "/v1/tenants")
AVAILABILITY = ("api.playtomic.io", "/v1/availability")
WEB_SEARCH = ("playtomic.com", "/search")


class TestParsePrice:
    """parse_price のテスト."""

    def test_whole_amount(self):
        assert parse_price("48 GBP") == 4800

    def test_decimal_amount(self):
        assert parse_price("48.5 GBP") == 4850

    def test_currency_first(self):
        assert parse_price("GBP 0") == 0

    def test_rounding_without_float_error(self):
        assert parse_price("19.99 EUR") == 1999

    def test_unparseable(self):
        assert parse_price("free") == 0
        assert parse_price("") == 0
        assert parse_price(None) == 0

    def test_result_is_int(self):
        assert isinstance(parse_price("48.5 GBP"), int)


class TestParseCurrency:
    """parse_currency のテスト."""

    def test_code_after_amount(self):
        assert parse_currency("48 EUR") == "EUR"

    def test_code_before_amount(self):
        assert parse_currency("GBP 0") == "GBP"

    def test_default(self):
        assert parse_currency("48") == "GBP"
        assert parse_currency(None, "EUR") == "EUR"


class TestFilterRegion:
    """filter_region のテスト."""

    def test_localized_spellings_kept(self):
        venues = [
            make_venue("a", "London"),
            make_venue("b", "Londra"),
            make_venue("c", "Purley"),
        ]
        kept = filter_region(venues, "London")
        assert [v.id for v in kept] == ["a", "b"]

    def test_region_name_case_insensitive_lookup(self):
        venues = [make_venue("a", "Лондон"), make_venue("b", "Londres")]
        assert len(filter_region(venues, "london")) == 2

    def test_unknown_region_matches_own_name(self):
        venues = [make_venue("a", "Bristol"), make_venue("b", "Bath")]
        assert [v.id for v in filter_region(venues, "Bristol")] == ["a"]

    def test_exact_match_only(self):
        venues = [make_venue("a", "London "), make_venue("b", "Greater London")]
        assert filter_region(venues, "London") == []


class TestParseTenants:
    """parse_tenants のテスト."""

    def test_fields(self):
        venues = parse_tenants(json.loads(_load_fixture("tenants.json")))

        assert [v.id for v in venues] == ["t-1", "t-2", "t-3"]
        first = venues[0]
        assert first.name == "Canary Padel"
        assert first.slug == "canary-padel"
        assert first.address == "1 Canada Square"
        assert first.postcode == "E14 5AB"
        assert first.latitude == pytest.approx(51.5054)
        assert first.longitude == pytest.approx(-0.0235)
        assert first.indoor is True
        assert first.surface == "artificial_grass"
        assert first.amenities == ("parking", "showers")
        assert first.locality == "London"

    def test_defaults(self):
        second = parse_tenants(json.loads(_load_fixture("tenants.json")))[1]
        assert second.slug == "t-2"
        assert second.latitude == pytest.approx(51.5430)
        assert second.indoor is False
        assert second.surface == "unknown"
        assert second.amenities == ()

    def test_skips_records_without_id(self):
        assert parse_tenants([{"tenant_name": "No id"}, "garbage"]) == []

    def test_malformed_fields_fall_back_to_defaults(self):
        venues = parse_tenants([{
            "tenant_id": "t-9",
            "tenant_name": ["not", "a", "name"],
            "coordinates": [51.5, -0.1],
            "amenities": "parking",
            "address": {"city": "London", "coordinate": "51.5,-0.1"},
        }])

        assert len(venues) == 1
        venue = venues[0]
        assert venue.name == ""
        assert venue.latitude == 0.0
        assert venue.longitude == 0.0
        assert venue.amenities == ()
        assert venue.locality == "London"


class TestParseVenuesFromHtml:
    """parse_venues_from_html のテスト."""

    def test_json_ld_sports_clubs(self):
        venues = parse_venues_from_html(_load_fixture("venue_search.html"))

        assert [v.id for v in venues] == ["web-001", "surrey-padel"]
        assert venues[0].name == "Padel Social Club"
        assert venues[0].slug == "padel-social-club"
        assert venues[0].postcode == "E1 1AA"
        assert venues[0].locality == "London"
        assert venues[1].locality == "Purley"

    def test_empty_html(self):
        assert parse_venues_from_html("<html><body></body></html>") == []

    def test_text_address_and_geo(self):
        """address・geo が文字列でも例外にならないこと."""
        venues = parse_venues_from_html(_club_html(address="1 High St, London", geo="51.5,-0.1"))

        assert len(venues) == 1
        assert venues[0].id == "high-st-padel"
        assert venues[0].address == "1 High St, London"
        assert venues[0].locality == ""
        assert venues[0].latitude == 0.0


class TestExtractFromUrl:
    """_extract_from_url のテスト."""

    def test_club_url(self):
        assert _extract_from_url("https://playtomic.com/clubs/padel-social-club") == "padel-social-club"

    def test_url_with_query(self):
        assert _extract_from_url("https://playtomic.com/venue/abc123?date=2025-03-10") == "abc123"

    def test_invalid_url(self):
        assert _extract_from_url("https://playtomic.com/") == ""


class TestNormalizeSlots:
    """normalize_slots のテスト."""

    def _slots(self):
        venue = make_venue("t-1", surface="artificial_grass")
        data = json.loads(_load_fixture("availability.json"))
        return normalize_slots(venue, "2025-03-10", data, web_base_url="https://playtomic.com")

    def test_slot_count_and_order(self):
        slots = self._slots()
        assert len(slots) == 3
        assert [s.court.id for s in slots] == ["res-0001-abcd", "res-0001-abcd", "res-0002-efgh"]
        assert [s.start_time.hour for s in slots] == [9, 10, 18]

    def test_times_are_utc_and_end_adds_duration(self):
        first, second, _ = self._slots()
        assert first.start_time == datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)
        assert first.end_time == datetime(2025, 3, 10, 10, 30, tzinfo=timezone.utc)
        assert second.end_time == datetime(2025, 3, 10, 11, 30, tzinfo=timezone.utc)

    def test_missing_duration_defaults_to_90(self):
        third = self._slots()[2]
        assert third.duration == 90
        assert third.end_time == datetime(2025, 3, 10, 19, 30, tzinfo=timezone.utc)

    def test_price_and_currency(self):
        slots = self._slots()
        assert [s.price for s in slots] == [4800, 3250, 0]
        assert all(s.currency == "GBP" for s in slots)

    def test_court_and_link(self):
        first = self._slots()[0]
        assert first.court.name == "Court ABCD"
        assert first.court.surface == "artificial_grass"
        assert first.available is True
        assert first.link == "https://playtomic.com/venue/t-1?date=2025-03-10&time=09:00:00"

    def test_serialized_times(self):
        data = self._slots()[0].to_dict()
        assert data["startTime"] == "2025-03-10T09:00:00.000Z"
        assert data["endTime"] == "2025-03-10T10:30:00.000Z"
        assert data["venue"]["id"] == "t-1"


class TestDiscoverVenues:
    """discover_venues のテスト."""

    def test_api_strategy_with_region_filter(self, settings):
        routes = {
            TENANTS: _json(json.loads(_load_fixture("tenants.json"))),
            WEB_SEARCH: lambda r: pytest.fail("web search should not be called"),
        }
        venues, requests = _run_with_routes(
            settings, routes, lambda c: c.discover_venues("London")
        )

        assert [v.id for v in venues] == ["t-1", "t-2"]
        params = requests[0].url.params
        assert params["coordinate"] == "51.5074,-0.1278"
        assert params["sport_id"] == "PADEL"
        assert params["radius"] == "25000"

    def test_falls_back_to_web_on_api_error(self, settings):
        routes = {
            TENANTS: _json({"error": "boom"}, status=500),
            WEB_SEARCH: lambda r: httpx.Response(200, text=_load_fixture("venue_search.html")),
        }
        venues, requests = _run_with_routes(
            settings, routes, lambda c: c.discover_venues("London")
        )

        assert [v.id for v in venues] == ["web-001"]
        assert requests[-1].url.params["q"] == "London"

    def test_falls_back_when_api_has_no_regional_venues(self, settings):
        routes = {
            TENANTS: _json([{"tenant_id": "x", "address": {"city": "Purley"}}]),
            WEB_SEARCH: lambda r: httpx.Response(200, text=_load_fixture("venue_search.html")),
        }
        venues, _ = _run_with_routes(settings, routes, lambda c: c.discover_venues("London"))
        assert [v.id for v in venues] == ["web-001"]

    def test_malformed_api_payload_falls_back(self, settings):
        routes = {
            TENANTS: lambda r: httpx.Response(200, text="<html>not json</html>"),
            WEB_SEARCH: lambda r: httpx.Response(200, text=_load_fixture("venue_search.html")),
        }
        venues, _ = _run_with_routes(settings, routes, lambda c: c.discover_venues("London"))
        assert [v.id for v in venues] == ["web-001"]

    def test_list_coordinates_do_not_break_api_strategy(self, settings):
        routes = {
            TENANTS: _json([{
                "tenant_id": "t-1",
                "tenant_name": "Canary Padel",
                "coordinates": [51.5, -0.1],
                "address": {"city": "London"},
            }]),
            WEB_SEARCH: lambda r: pytest.fail("web search should not be called"),
        }
        venues, _ = _run_with_routes(settings, routes, lambda c: c.discover_venues("London"))
        assert [v.id for v in venues] == ["t-1"]

    def test_text_address_on_web_fallback(self, settings):
        routes = {
            TENANTS: _json({"error": "boom"}, status=500),
            WEB_SEARCH: lambda r: httpx.Response(200, text=_club_html(address="1 High St, London")),
        }
        venues, _ = _run_with_routes(settings, routes, lambda c: c.discover_venues("London"))
        assert venues == []

    @patch("playscanner.scraper.parse_tenants", side_effect=KeyError("tenant_id"))
    def test_parse_error_moves_to_next_strategy(self, mock_parse, settings):
        routes = {
            TENANTS: _json([{"tenant_id": "t-1"}]),
            WEB_SEARCH: lambda r: httpx.Response(200, text=_load_fixture("venue_search.html")),
        }
        venues, _ = _run_with_routes(settings, routes, lambda c: c.discover_venues("London"))

        assert [v.id for v in venues] == ["web-001"]
        mock_parse.assert_called_once()

    @patch("playscanner.scraper.parse_venues_from_html", side_effect=TypeError("bad node"))
    def test_parse_error_on_last_strategy_yields_empty(self, mock_parse, settings):
        routes = {
            TENANTS: _json([]),
            WEB_SEARCH: lambda r: httpx.Response(200, text="<html></html>"),
        }
        venues, _ = _run_with_routes(settings, routes, lambda c: c.discover_venues("London"))
        assert venues == []

    def test_all_strategies_fail_yields_empty(self, settings):
        routes = {
            TENANTS: _json({}, status=503),
            WEB_SEARCH: lambda r: httpx.Response(502),
        }
        venues, _ = _run_with_routes(settings, routes, lambda c: c.discover_venues("London"))
        assert venues == []

    def test_region_without_coordinates_uses_web(self, settings):
        routes = {
            TENANTS: lambda r: pytest.fail("tenants API needs coordinates"),
            WEB_SEARCH: lambda r: httpx.Response(200, text="<html></html>"),
        }
        venues, requests = _run_with_routes(settings, routes, lambda c: c.discover_venues("Atlantis"))
        assert venues == []
        assert [r.url.path for r in requests] == ["/search"]


class TestFetchAvailability:
    """fetch_availability / fetch_venue_availability のテスト."""

    def test_two_venues(self, settings):
        routes = {
            TENANTS: _json(json.loads(_load_fixture("tenants.json"))),
            AVAILABILITY: _availability_by_tenant({
                "t-1": _availability_for(1),
                "t-2": _availability_for(2),
            }),
        }
        slots, requests = _run_with_routes(
            settings, routes, lambda c: c.fetch_availability("London", "2025-03-10")
        )

        assert len(slots) == 3
        assert [s.venue.id for s in slots] == ["t-1", "t-2", "t-2"]
        availability = [r for r in requests if r.url.path == "/v1/availability"]
        assert availability[0].url.params["start_min"] == "2025-03-10T00:00:00"
        assert availability[0].url.params["start_max"] == "2025-03-10T23:59:59"
        assert availability[0].url.params["sport_id"] == "PADEL"

    def test_failed_venue_is_isolated(self, settings):
        routes = {
            TENANTS: _json(json.loads(_load_fixture("tenants.json"))),
            AVAILABILITY: _availability_by_tenant({
                "t-1": httpx.Response(500, text="upstream error"),
                "t-2": _availability_for(2),
            }),
        }
        slots, _ = _run_with_routes(
            settings, routes, lambda c: c.fetch_availability("London", "2025-03-10")
        )
        assert [s.venue.id for s in slots] == ["t-2", "t-2"]

    def test_malformed_json_is_isolated(self, settings):
        routes = {
            TENANTS: _json(json.loads(_load_fixture("tenants.json"))),
            AVAILABILITY: _availability_by_tenant({
                "t-1": _availability_for(1),
                "t-2": httpx.Response(200, text="{oops"),
            }),
        }
        slots, _ = _run_with_routes(
            settings, routes, lambda c: c.fetch_availability("London", "2025-03-10")
        )
        assert [s.venue.id for s in slots] == ["t-1"]

    def test_no_venues(self, settings):
        routes = {
            TENANTS: _json([]),
            WEB_SEARCH: lambda r: httpx.Response(200, text="<html></html>"),
        }
        slots, requests = _run_with_routes(
            settings, routes, lambda c: c.fetch_availability("London", "2025-03-10")
        )
        assert slots == []
        assert not any(r.url.path == "/v1/availability" for r in requests)

    def test_venue_fetch_raises_typed_error(self, settings):
        routes = {AVAILABILITY: lambda r: httpx.Response(404)}

        with pytest.raises(VenueFetchFailed):
            _run_with_routes(
                settings, routes,
                lambda c: c.fetch_venue_availability(make_venue("t-9"), "2025-03-10"),
            )

    def test_non_list_payload_is_empty(self, settings):
        routes = {AVAILABILITY: _json({"message": "no slots"})}
        slots, _ = _run_with_routes(
            settings, routes,
            lambda c: c.fetch_venue_availability(make_venue("t-9"), "2025-03-10"),
        )
        assert slots == []


class TestClientLifecycle:
    """PlaytomicClient の async with のテスト."""

    def test_requires_context_manager(self, settings):
        with pytest.raises(RuntimeError):
            PlaytomicClient(settings).http

    def test_owned_client_is_closed(self, settings):
        async def _main():
            client = PlaytomicClient(settings)
            async with client:
                http = client.http
            return http

        http = asyncio.run(_main())
        assert http.is_closed
