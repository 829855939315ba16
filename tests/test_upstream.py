"""Tests for upstream resolver selection."""

from __future__ import annotations

import httpx
import pytest

from cinerelay.upstream import ForwardProxyResolver, UpstreamResolver, select_resolver


def test_direct_resolver_is_the_default(settings) -> None:
    resolver = select_resolver(settings, settings.media_origin)

    assert type(resolver) is UpstreamResolver
    assert resolver.resolve("movies/x.mp4") == "https://media.test/movies/x.mp4"
    assert resolver.resolve("/movies/x.mp4") == "https://media.test/movies/x.mp4"
    assert resolver.default_headers()["Referer"] == "https://media.test"
    assert resolver.client_options() == {}


def test_proxy_mode_requires_a_proxy_url(make_settings) -> None:
    with pytest.raises(ValueError):
        select_resolver(make_settings(UPSTREAM_MODE="proxy"), "https://media.test")


def test_proxy_resolver_routes_through_proxy(make_settings) -> None:
    settings = make_settings(UPSTREAM_MODE="proxy", UPSTREAM_PROXY_URL="http://proxy.test:3128")

    resolver = select_resolver(settings, settings.catalog_origin)

    assert isinstance(resolver, ForwardProxyResolver)
    assert resolver.client_options() == {"proxy": "http://proxy.test:3128"}
    assert resolver.resolve("/page/2/") == "https://catalog.test/page/2/"


@pytest.mark.anyio("asyncio")
async def test_clients_send_browser_headers(settings) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text="ok")

    resolver = UpstreamResolver(settings.catalog_origin, settings, transport=httpx.MockTransport(handler),
                                read_timeout=42.0)
    async with resolver.create_client() as client:
        await client.get(resolver.resolve("/"))
        assert client.timeout.read == 42.0

    assert seen[0].headers["user-agent"] == settings.user_agent
    assert seen[0].headers["referer"] == "https://catalog.test"
