"""Tests for listing extraction and catalog fetching."""

from __future__ import annotations

import httpx
import pytest
from fastapi import HTTPException

from cinerelay.models import CatalogEntry
from cinerelay.scraper import (
    build_listing_path,
    canonical_title,
    create_slug,
    detect_language,
    extract,
    is_valid_title,
    scrape_catalog,
    sort_by_year,
)
from cinerelay.upstream import UpstreamResolver

ORIGIN = "https://catalog.test"


def listing(*items: str, footer: str = "") -> str:
    return "<html><body><main>" + "".join(items) + "</main>" + footer + "</body></html>"


def item(title: str, href: str, image: str | None = None) -> str:
    img = f'<img src="{image}">' if image else ""
    return f'<article class="movie-item"><a href="{href}">{img}</a><h2>{title}</h2></article>'


def test_language_releases_merge_into_one_entry() -> None:
    html = listing(
        item("Troll 2 (2025) Hindi", "https://catalog.test/movie/troll-2-2025-hindi/", "/img/troll.jpg"),
        item("Troll 2 (2025) English", "https://catalog.test/movie/troll-2-2025/", "/img/troll-en.jpg"),
    )

    entries, max_page = extract(html, ORIGIN)

    assert max_page == 1
    assert len(entries) == 1
    entry = entries[0]
    assert entry.id == "troll-2-2025"
    assert entry.title == "Troll 2"
    assert entry.year == "2025"
    assert entry.slug == "troll-2"
    assert entry.clean_slug == "Troll-2"
    assert entry.image_url == "https://catalog.test/img/troll.jpg"
    assert [track.language for track in entry.audio_tracks] == ["Hindi", "English"]
    assert entry.audio_tracks[1].source_url == "https://catalog.test/movie/troll-2-2025/"


def test_repeated_language_is_not_duplicated() -> None:
    html = listing(
        item("Troll 2 (2025) Hindi", "https://catalog.test/movie/troll-2-2025-hindi/"),
        item("Troll 2 (2025) Hindi", "https://catalog.test/movie/troll-2-2025-hindi-hd/"),
        item("Troll 2 (2025)", "https://catalog.test/movie/troll-2-2025-x/"),
    )

    entries, _ = extract(html, ORIGIN)

    assert len(entries) == 1
    assert [track.language for track in entries[0].audio_tracks] == ["Hindi"]


def test_merge_adopts_image_when_first_item_has_none() -> None:
    html = listing(
        item("Dune (2021) English", "https://catalog.test/movie/dune-2021/"),
        item("Dune (2021) Hindi", "https://catalog.test/movie/dune-2021-hindi/", "//cdn.test/dune.jpg"),
    )

    entries, _ = extract(html, ORIGIN)

    assert entries[0].image_url == "https://cdn.test/dune.jpg"


def test_same_title_different_year_stays_separate() -> None:
    html = listing(
        item("Dune (2021)", "https://catalog.test/movie/dune-2021/"),
        item("Dune (1984)", "https://catalog.test/movie/dune-1984/"),
    )

    entries, _ = extract(html, ORIGIN)

    assert [entry.id for entry in entries] == ["dune-2021", "dune-1984"]


def test_invalid_titles_and_links_are_dropped() -> None:
    html = listing(
        item("Drama", "https://catalog.test/genre/drama/"),
        item("2024", "https://catalog.test/release/2024/"),
        item("Movie", "https://catalog.test/movie/"),
        item("Up", "https://catalog.test/movie/up/"),
        item("Placeholder Link Film", "#"),
        item("Real Film (2020)", "/movie/real-film-2020/"),
    )

    entries, _ = extract(html, ORIGIN)

    assert [entry.title for entry in entries] == ["Real Film"]
    assert entries[0].detail_url == "https://catalog.test/movie/real-film-2020/"
    assert all(len(entry.title) > 2 for entry in entries)


def test_undetected_language_defaults_to_english() -> None:
    entries, _ = extract(listing(item("Arrival (2016)", "https://catalog.test/movie/arrival/")), ORIGIN)

    assert [track.language for track in entries[0].audio_tracks] == ["English"]


def test_max_page_comes_from_largest_page_link() -> None:
    footer = (
        '<div class="pagination">'
        '<a href="https://catalog.test/page/2/">2</a>'
        '<a href="https://catalog.test/page/3/">3</a>'
        '<a href="https://catalog.test/page/7/">Last</a>'
        "</div>"
    )
    html = listing(item("Arrival (2016)", "https://catalog.test/movie/arrival/"), footer=footer)

    _, max_page = extract(html, ORIGIN)

    assert max_page == 7


def test_full_page_without_links_is_estimated() -> None:
    items = [item(f"Feature Number {n} (2020)", f"https://catalog.test/movie/feature-{n}/") for n in range(10)]

    entries, max_page = extract(listing(*items), ORIGIN)

    assert len(entries) == 10
    assert max_page == 50


def test_short_page_without_links_is_single_page() -> None:
    items = [item(f"Feature Number {n} (2020)", f"https://catalog.test/movie/feature-{n}/") for n in range(9)]

    _, max_page = extract(listing(*items), ORIGIN, full_page_size=10, estimated_pages=50)

    assert max_page == 1


def test_empty_page_has_no_entries() -> None:
    entries, max_page = extract("<html><body><p>Nothing here</p></body></html>", ORIGIN)

    assert entries == []
    assert max_page == 1


def test_title_helpers() -> None:
    assert canonical_title("Troll 2 (2025) Hindi") == "Troll 2"
    assert create_slug("Mission: Impossible") == "mission-impossible"
    assert detect_language("Troll 2 (2025)", "https://catalog.test/movie/troll-2-hindi/") == ("Hindi", True)
    assert detect_language("Troll 2 (2025)", "https://catalog.test/movie/troll-2/") == ("English", False)
    assert not is_valid_title("Action & Adventure")
    assert is_valid_title("Alien")


def test_sort_by_year_puts_newest_first_and_unknown_last() -> None:
    def entry(title: str, year: str | None) -> CatalogEntry:
        return CatalogEntry(id=title, title=title, year=year, detail_url=f"https://catalog.test/{title}/")

    ordered = sort_by_year([entry("a", "2019"), entry("b", None), entry("c", "2024"), entry("d", "2019")])

    assert [e.title for e in ordered] == ["c", "a", "d", "b"]


def test_build_listing_path() -> None:
    assert build_listing_path() == "/"
    assert build_listing_path("all", 3) == "/page/3/"
    assert build_listing_path("Drama", 2) == "/drama/page/2/"
    assert build_listing_path("tv-show", 1) == "/tv-show/"
    assert build_listing_path("drama", 4, query="troll 2") == "/?s=troll%202"


@pytest.mark.anyio("asyncio")
async def test_scrape_catalog_fetches_category_page(settings) -> None:
    requests: list[httpx.Request] = []
    footer = '<div class="pagination"><a href="/drama/page/3/">3</a></div>'

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, text=listing(item("Arrival (2016)", "/movie/arrival/"), footer=footer))

    resolver = UpstreamResolver(ORIGIN, settings, transport=httpx.MockTransport(handler))
    page = await scrape_catalog(resolver, settings, category="drama", page=2)

    assert str(requests[0].url) == "https://catalog.test/drama/page/2/"
    assert requests[0].headers["referer"] == ORIGIN
    assert page.category == "drama"
    assert page.page == 2
    assert page.max_page == 3
    assert page.has_more is True
    assert page.entries[0].title == "Arrival"


@pytest.mark.anyio("asyncio")
async def test_search_is_a_single_page(settings) -> None:
    requests: list[httpx.Request] = []
    footer = '<div class="pagination"><a href="/page/9/">9</a></div>'

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, text=listing(item("Troll 2 (2025)", "/movie/troll-2/"), footer=footer))

    resolver = UpstreamResolver(ORIGIN, settings, transport=httpx.MockTransport(handler))
    page = await scrape_catalog(resolver, settings, query="troll")

    assert requests[0].url.params["s"] == "troll"
    assert page.category == "search"
    assert page.query == "troll"
    assert page.max_page == 1
    assert page.has_more is False


@pytest.mark.anyio("asyncio")
async def test_upstream_failures_map_to_http_errors(settings) -> None:
    def not_found(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404)

    def broken(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    for handler, status in ((not_found, 404), (broken, 502), (unreachable, 503)):
        resolver = UpstreamResolver(ORIGIN, settings, transport=httpx.MockTransport(handler))
        with pytest.raises(HTTPException) as excinfo:
            await scrape_catalog(resolver, settings, page=2)
        assert excinfo.value.status_code == status
        assert "catalog.test" not in str(excinfo.value.detail)


def test_placeholder_item_does_not_hide_a_valid_release() -> None:
    html = listing(
        item("Troll 2 (2025) Hindi", "#"),
        item("Troll 2 (2025) English", "/movie/troll-2-english/"),
    )

    entries, _ = extract(html, ORIGIN)

    assert len(entries) == 1
    assert entries[0].id == "troll-2-2025"
    assert entries[0].detail_url == "https://catalog.test/movie/troll-2-english/"
    assert [track.language for track in entries[0].audio_tracks] == ["English"]
