#  app.py
import logging
import re
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Path, Query, Request
from fastapi.responses import JSONResponse, Response
from httpx import AsyncBaseTransport, RequestError
from starlette.datastructures import Headers, MutableHeaders

from .config import Settings, get_settings
from .locator import locate, make_probe
from .models import CatalogEntry, CatalogPage, ErrorResponse, MediaReference, PosterUpdate
from .posters import CatalogUpdates, PosterBackfill
from .relay import AUTH_PARAMS, RelayError, RelayRequest, cors_headers, proxied_reference, relay
from .scraper import MOVIE_CATEGORIES, fetch_page, scrape_catalog
from .upstream import UpstreamResolver, select_resolver

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

CATALOG_ERRORS = {
    400: {"model": ErrorResponse, "description": "Invalid category, page or query"},
    404: {"model": ErrorResponse, "description": "Catalog page not found"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
    502: {"model": ErrorResponse, "description": "Failed to fetch data from source"},
    503: {"model": ErrorResponse, "description": "Network error"},
}

RELAY_ERRORS = {
    400: {"model": ErrorResponse, "description": "Video path could not be determined"},
    403: {"model": ErrorResponse, "description": "Relay URL expired or badly signed"},
    500: {"model": ErrorResponse, "description": "Upstream unreachable"},
}


class CORSHeadersMiddleware:
    """Adds the CORS allow-lists to every HTTP response, preflight or not."""

    def __init__(self, app, settings: Settings):
        self.app = app
        self.settings = settings

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        extra = cors_headers(self.settings, Headers(scope=scope).get("origin"))

        async def send_with_cors(message):
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                for name, value in extra.items():
                    if name not in headers:
                        headers[name] = value
            await send(message)

        await self.app(scope, receive, send_with_cors)


# Dependencies reading the state built in create_app
def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_catalog_resolver(request: Request) -> UpstreamResolver:
    return request.app.state.catalog_resolver


def get_media_resolver(request: Request) -> UpstreamResolver:
    return request.app.state.media_resolver


def get_updates(request: Request) -> CatalogUpdates:
    return request.app.state.catalog_updates


def create_app(
    settings: Optional[Settings] = None,
    catalog_transport: Optional[AsyncBaseTransport] = None,
    media_transport: Optional[AsyncBaseTransport] = None,
    poster_transport: Optional[AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or get_settings()
    updates = CatalogUpdates()
    backfill = PosterBackfill(settings, updates, transport=poster_transport)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        try:
            yield
        finally:
            await backfill.drain()

    app = FastAPI(
        title=settings.app_name,
        description="Catalog extraction and byte-range media relay for an upstream movie site.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(CORSHeadersMiddleware, settings=settings)

    app.state.settings = settings
    app.state.catalog_resolver = select_resolver(settings, settings.catalog_origin, transport=catalog_transport)
    app.state.media_resolver = select_resolver(
        settings, settings.media_origin, transport=media_transport, read_timeout=settings.relay_read_timeout
    )
    app.state.catalog_updates = updates
    app.state.poster_backfill = backfill

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.payload(include_upstream=settings.environment == "development"),
        )

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:
    # Root endpoint
    @app.get("/", tags=["Root"])
    async def root():
        return {
            "message": "CineRelay API",
            "version": "1.0.0",
            "endpoints": {
                "catalog": {
                    "list": "/catalog",
                    "page": "/catalog/page/{page}",
                    "by_category": "/catalog/{category}/page/{page}",
                    "search": "/search?s={text}",
                    "updates": "/catalog/updates?since={version}",
                    "html": "/api/{path}",
                },
                "media": {
                    "locate": "POST /media",
                    "relay": "/video/{path}",
                    "relay_query": "/api/video-proxy?path={path}",
                },
            },
            "categories": [{"id": c["id"], "name": c["name"]} for c in MOVIE_CATEGORIES],
            "documentation": "/docs",
        }

    async def _catalog_response(request: Request, category: str, page: int, query: Optional[str] = None) -> CatalogPage:
        settings = get_app_settings(request)
        updates = get_updates(request)
        version = updates.version
        catalog = await scrape_catalog(get_catalog_resolver(request), settings, category=category, page=page, query=query)
        catalog.version = version
        request.app.state.poster_backfill.dispatch(catalog.entries)
        return catalog

    @app.get(
        "/catalog",
        response_model=CatalogPage,
        responses=CATALOG_ERRORS,
        summary="First catalog page",
        description="Fetch and extract the first page of the 'all' listing.",
    )
    async def get_catalog(request: Request):
        return await _catalog_response(request, "all", 1)

    @app.get(
        "/catalog/page/{page}",
        response_model=CatalogPage,
        responses=CATALOG_ERRORS,
        summary="Catalog page",
        description="Fetch and extract page {page} of the 'all' listing.",
    )
    async def get_catalog_page(request: Request, page: int = Path(..., ge=1, description="Page number to fetch")):
        return await _catalog_response(request, "all", page)

    @app.get(
        "/catalog/updates",
        response_model=List[PosterUpdate],
        summary="Poster updates",
        description="Posters generated after a catalog snapshot. Pass the snapshot's `version` as `since`.",
    )
    async def get_catalog_updates(
        since: int = Query(0, ge=0, description="Return updates newer than this version"),
        updates: CatalogUpdates = Depends(get_updates),
    ):
        return updates.changes_since(since)

    @app.get(
        "/catalog/{category}",
        response_model=CatalogPage,
        responses=CATALOG_ERRORS,
        summary="Category listing",
        description="Fetch and extract the first page of a category (e.g., drama, action, tv-show).",
    )
    async def get_category(request: Request, category: str = Path(..., description="Category id or slug")):
        return await _catalog_response(request, _clean_category(category), 1)

    @app.get(
        "/catalog/{category}/page/{page}",
        response_model=CatalogPage,
        responses=CATALOG_ERRORS,
        summary="Category listing page",
    )
    async def get_category_page(
        request: Request,
        category: str = Path(..., description="Category id or slug"),
        page: int = Path(..., ge=1, description="Page number to fetch"),
    ):
        return await _catalog_response(request, _clean_category(category), page)

    @app.get(
        "/search",
        response_model=CatalogPage,
        responses=CATALOG_ERRORS,
        summary="Search the catalog",
        description="Search by title. Searches are a single page. Example: `?s=Troll`",
    )
    async def search(request: Request, s: str = Query(..., description="Search text")):
        query = re.sub(r'[^\w\s-]', '', s.strip())
        if not query:
            raise HTTPException(status_code=400, detail="Search term cannot be empty or invalid")
        return await _catalog_response(request, "all", 1, query=query)

    @app.post(
        "/media",
        response_model=MediaReference,
        responses=CATALOG_ERRORS,
        summary="Locate the stream for an entry",
        description="Fetch the entry's detail page and resolve its media, subtitle and audio URLs to relay paths.",
    )
    async def locate_media(
        entry: CatalogEntry,
        settings: Settings = Depends(get_app_settings),
        catalog_resolver: UpstreamResolver = Depends(get_catalog_resolver),
        media_resolver: UpstreamResolver = Depends(get_media_resolver),
    ):
        if not entry.detail_url.startswith(catalog_resolver.origin + "/"):
            raise HTTPException(status_code=400, detail="Detail URL is not a catalog page")
        detail_path = entry.detail_url[len(catalog_resolver.origin):]
        html = await fetch_page(detail_path, catalog_resolver)
        async with media_resolver.create_client() as client:
            reference = await locate(html, entry, settings, probe=make_probe(client))
        return proxied_reference(reference, settings)

    @app.api_route(
        "/api/video-proxy",
        methods=["GET", "HEAD", "OPTIONS"],
        responses=RELAY_ERRORS,
        summary="Relay a media byte range (query form)",
        description="Relay `?path=` (or `?video=`) from the media origin, forwarding the Range header.",
    )
    async def relay_by_query(request: Request):
        return await _relay(request)

    @app.api_route(
        "/api/video/{path:path}",
        methods=["GET", "HEAD", "OPTIONS"],
        responses=RELAY_ERRORS,
        include_in_schema=False,
    )
    async def relay_api_segments(request: Request, path: str):
        return await _relay(request, path)

    @app.api_route(
        "/video/{path:path}",
        methods=["GET", "HEAD", "OPTIONS"],
        responses=RELAY_ERRORS,
        summary="Relay a media byte range",
        description="Relay /video/<path> from the media origin. Supports Range requests (206 Partial Content).",
    )
    async def relay_segments(request: Request, path: str):
        return await _relay(request, path)

    async def _relay(request: Request, path: Optional[str] = None):
        relay_request = RelayRequest.from_request(request, path)
        return await relay(relay_request, get_media_resolver(request), get_app_settings(request))

    @app.get(
        "/api/{path:path}",
        responses=CATALOG_ERRORS,
        summary="Catalog HTML pass-through",
        description="Return a catalog page's HTML unchanged, for clients that run extraction themselves.",
    )
    async def catalog_html(request: Request, path: str):
        resolver = get_catalog_resolver(request)
        params = [(key, value) for key, value in request.query_params.multi_items() if key not in AUTH_PARAMS]
        url = resolver.resolve(path)
        try:
            async with resolver.create_client() as client:
                upstream = await client.get(url, params=params, headers={"Accept": "application/json, text/html, */*"})
        except RequestError as e:
            logger.error(f"Network error while fetching {url}: {e}")
            return JSONResponse(status_code=500, content={"error": "Failed to fetch catalog page", "message": str(e)})
        return Response(
            content=upstream.content,
            status_code=upstream.status_code,
            media_type=upstream.headers.get("content-type", "text/html"),
        )


# Helper function to sanitize category path parameters
def _clean_category(category: str) -> str:
    category = re.sub(r'[^\w-]', '', category.strip().lower())
    if not category:
        raise HTTPException(status_code=400, detail="Category cannot be empty or invalid")
    return category


app = create_app()

