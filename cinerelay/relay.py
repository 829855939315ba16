# relay.py
"""
Byte-range relay to the media origin.

A relay request names a resource path (query parameter, catch-all route
segments, or embedded in the raw URL). The path is resolved against the media
origin and the request is forwarded with its Range header; status, range
headers and body come back unchanged. The client only ever sees relay paths,
never the upstream host.
"""
import hashlib
import hmac
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import unquote, urlencode, urlparse

from fastapi import Request
from fastapi.responses import Response, StreamingResponse
from httpx import RequestError

from .config import Settings
from .models import MediaReference
from .upstream import UpstreamResolver

logger = logging.getLogger(__name__)

ALLOWED_METHODS = "GET, HEAD, OPTIONS"
ALLOWED_HEADERS = "Range"
DEFAULT_CONTENT_TYPE = "video/mp4"
AUTH_PARAMS = ("token", "expires")
FORWARDED_HEADERS = ("range", "if-range")

RAW_URL_PATTERNS = [
    re.compile(r'/api/video-proxy[?&](?:path|video)=([^&]+)'),
    re.compile(r'/api/video(/[^?]+)'),
    re.compile(r'/video(/[^?]+)'),
]


class RelayError(Exception):
    """Base class for relay failures rendered as JSON `{error, ...}` bodies."""

    status_code = 500
    message = "Relay error"

    def payload(self, include_upstream: bool = False) -> Dict[str, Any]:
        return {"error": self.message}


class MalformedRequest(RelayError):
    status_code = 400
    message = "Video path required"

    def __init__(self, attempts: List[Dict[str, str]], url: str, method: str, reason: Optional[str] = None):
        super().__init__(reason or self.message)
        self.attempts = attempts
        self.url = url
        self.method = method
        self.reason = reason

    def payload(self, include_upstream: bool = False) -> Dict[str, Any]:
        return {"error": self.reason or self.message, "attempts": self.attempts, "url": self.url, "method": self.method}


class SignatureRejected(RelayError):
    status_code = 403
    message = "URL expired"

    def __init__(self, message: str = "URL expired"):
        super().__init__(message)
        self.message = message


class UpstreamUnavailable(RelayError):
    status_code = 500
    message = "Failed to proxy video"

    def __init__(self, detail: str, path: str):
        super().__init__(detail)
        self.detail = detail
        self.path = path

    def payload(self, include_upstream: bool = False) -> Dict[str, Any]:
        return {"error": self.message, "message": self.detail, "path": self.path}


class UpstreamRejected(RelayError):
    def __init__(self, status_code: int, path: str, upstream_url: str, reason: str = ""):
        super().__init__(f"Failed to fetch video: {status_code}")
        self.status_code = status_code
        self.path = path
        self.upstream_url = upstream_url
        self.reason = reason

    def payload(self, include_upstream: bool = False) -> Dict[str, Any]:
        body = {
            "error": f"Failed to fetch video: {self.status_code}",
            "path": self.path,
            "status": self.status_code,
            "statusText": self.reason,
        }
        if include_upstream:
            body["videoUrl"] = self.upstream_url
        return body


@dataclass
class RelayRequest:
    method: str
    raw_url: str
    query: List[Tuple[str, str]] = field(default_factory=list)
    segments: List[str] = field(default_factory=list)
    headers: Dict[str, str] = field(default_factory=dict)
    origin: Optional[str] = None

    @classmethod
    def from_request(cls, request: Request, route_path: Optional[str] = None) -> "RelayRequest":
        raw_url = request.url.path
        if request.url.query:
            raw_url += "?" + request.url.query
        segments = [part for part in (route_path or "").split("/") if part]
        return cls(
            method=request.method.upper(),
            raw_url=raw_url,
            query=list(request.query_params.multi_items()),
            segments=segments,
            headers={name: request.headers[name] for name in FORWARDED_HEADERS if name in request.headers},
            origin=request.headers.get("origin"),
        )

    def query_values(self, name: str) -> List[str]:
        return [value for key, value in self.query if key == name]

    def query_value(self, name: str) -> Optional[str]:
        values = self.query_values(name)
        return values[0] if values else None


# Path extraction strategies, tried in order
def path_from_parameter(req: RelayRequest) -> Optional[str]:
    paths = req.query_values("path")
    if len(paths) == 1 and paths[0]:
        return paths[0]
    return req.query_value("video") or None


def path_from_segments(req: RelayRequest) -> Optional[str]:
    segments = req.segments
    if not segments:
        paths = req.query_values("path")
        segments = [part for part in paths if part] if len(paths) > 1 else []
    return "/".join(segments) or None


def path_from_raw_url(req: RelayRequest) -> Optional[str]:
    for pattern in RAW_URL_PATTERNS:
        match = pattern.search(req.raw_url)
        if match and match.group(1):
            # The raw URL is still percent-encoded
            return unquote(match.group(1))
    return None


def path_from_first_query_value(req: RelayRequest) -> Optional[str]:
    for key, value in req.query:
        if key in AUTH_PARAMS or key == "path":
            continue
        return value or None
    return None


PATH_STRATEGIES: List[Tuple[str, Callable[[RelayRequest], Optional[str]]]] = [
    ("path-parameter", path_from_parameter),
    ("path-segments", path_from_segments),
    ("raw-url", path_from_raw_url),
    ("first-query-parameter", path_from_first_query_value),
]


def extract_resource_path(req: RelayRequest) -> str:
    """
    Return the normalised resource path ('/dir/file.mp4').

    Raises MalformedRequest listing every strategy and what it found when no
    strategy yields a path, or when the path tries to leave the origin root.
    """
    attempts = []
    for name, strategy in PATH_STRATEGIES:
        found = strategy(req)
        attempts.append({"strategy": name, "result": found if found else "not found"})
        if not found:
            continue
        path = found.split("?", 1)[0].strip()
        if not path:
            continue
        if not path.startswith("/"):
            path = "/" + path
        if ".." in path.split("/"):
            raise MalformedRequest(attempts, req.raw_url, req.method, reason="Video path must not contain '..'")
        return path
    logger.warning(f"Could not determine video path for {req.method} {req.raw_url}: {attempts}")
    raise MalformedRequest(attempts, req.raw_url, req.method)


# Helper function to sign a relay path
def sign_path(path: str, expires: int, secret: str) -> str:
    message = f"{path}:{expires}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def check_authorization(req: RelayRequest, path: str, settings: Settings, now: Optional[float] = None) -> None:
    """Reject expired or badly signed relay URLs; the auth params are never forwarded."""
    now = time.time() if now is None else now
    expires_raw = req.query_value("expires")
    expires = None
    if expires_raw:
        try:
            expires = int(expires_raw)
        except ValueError:
            expires = None
    if expires is not None and expires < int(now):
        raise SignatureRejected("URL expired")

    secret = settings.relay_signing_secret
    if not secret:
        return
    token = req.query_value("token")
    if not token or expires is None:
        raise SignatureRejected("Signed URL required")
    if not hmac.compare_digest(token, sign_path(path, expires, secret)):
        raise SignatureRejected("Invalid URL signature")


def relay_url_for(url: Optional[str], settings: Settings, now: Optional[float] = None) -> Optional[str]:
    """
    Rewrite a media-origin URL to its relay path.
    Example: https://media.host/movies/x.mp4 -> /video/movies/x.mp4
    URLs on other hosts are returned unchanged.
    """
    if not url or not url.startswith(settings.media_origin + "/"):
        return url
    path = urlparse(url).path
    relay_url = f"/video{path}"
    if settings.relay_signing_secret:
        expires = int(time.time() if now is None else now) + settings.relay_url_ttl
        token = sign_path(unquote(path), expires, settings.relay_signing_secret)
        relay_url += "?" + urlencode({"expires": expires, "token": token})
    return relay_url


def proxied_reference(reference: MediaReference, settings: Settings) -> MediaReference:
    """Copy of `reference` whose media URLs point at the relay."""
    if reference.kind != "stream":
        return reference
    proxied = reference.model_copy(deep=True)
    proxied.media_url = relay_url_for(proxied.media_url, settings)
    for subtitle in proxied.subtitles:
        subtitle.url = relay_url_for(subtitle.url, settings)
    for track in proxied.audio_tracks:
        track.media_url = relay_url_for(track.media_url, settings)
    return proxied


def cors_headers(settings: Settings, origin: Optional[str] = None) -> Dict[str, str]:
    allowed = settings.allowed_origins
    if "*" in allowed:
        allow_origin = "*"
    elif origin and origin.rstrip("/") in allowed:
        allow_origin = origin
    else:
        allow_origin = allowed[0]
    headers = {
        "Access-Control-Allow-Origin": allow_origin,
        "Access-Control-Allow-Methods": ALLOWED_METHODS,
        "Access-Control-Allow-Headers": ALLOWED_HEADERS,
    }
    if allow_origin != "*":
        headers["Vary"] = "Origin"
    return headers


def forward_headers(req: RelayRequest) -> Dict[str, str]:
    headers = {"Accept-Encoding": "identity"}
    if req.headers.get("range"):
        headers["Range"] = req.headers["range"]
    if req.headers.get("if-range"):
        headers["If-Range"] = req.headers["if-range"]
    return headers


def relay_headers(upstream_headers, settings: Settings, origin: Optional[str] = None) -> Dict[str, str]:
    headers = {
        "Content-Type": upstream_headers.get("content-type") or DEFAULT_CONTENT_TYPE,
        "Accept-Ranges": "bytes",
    }
    if upstream_headers.get("content-length"):
        headers["Content-Length"] = upstream_headers["content-length"]
    if upstream_headers.get("content-range"):
        headers["Content-Range"] = upstream_headers["content-range"]
    headers.update(cors_headers(settings, origin))
    return headers


def is_success(status_code: int) -> bool:
    # 206 Partial Content is the normal answer to a Range request
    return 200 <= status_code < 300 or status_code == 206


async def _relay_buffered(req: RelayRequest, path: str, upstream_url: str, resolver: UpstreamResolver,
                          settings: Settings) -> Response:
    async with resolver.create_client() as client:
        try:
            upstream = await client.request(req.method, upstream_url, headers=forward_headers(req))
        except RequestError as e:
            logger.error(f"Network error while relaying {upstream_url}: {e}")
            raise UpstreamUnavailable(str(e), path) from e
    if not is_success(upstream.status_code):
        logger.error(f"Upstream returned {upstream.status_code} for {upstream_url}")
        raise UpstreamRejected(upstream.status_code, path, upstream_url, upstream.reason_phrase)
    return Response(
        content=upstream.content,
        status_code=upstream.status_code,
        headers=relay_headers(upstream.headers, settings, req.origin),
    )


async def _relay_streaming(req: RelayRequest, path: str, upstream_url: str, resolver: UpstreamResolver,
                           settings: Settings) -> Response:
    client = resolver.create_client()
    upstream = None
    try:
        upstream_request = client.build_request(req.method, upstream_url, headers=forward_headers(req))
        upstream = await client.send(upstream_request, stream=True)
    except RequestError as e:
        await client.aclose()
        logger.error(f"Network error while relaying {upstream_url}: {e}")
        raise UpstreamUnavailable(str(e), path) from e
    except BaseException:
        await client.aclose()
        raise

    if not is_success(upstream.status_code):
        await upstream.aclose()
        await client.aclose()
        logger.error(f"Upstream returned {upstream.status_code} for {upstream_url}")
        raise UpstreamRejected(upstream.status_code, path, upstream_url, upstream.reason_phrase)

    async def body():
        # Runs to `finally` on completion and when the client disconnects,
        # so an abandoned range request closes its upstream connection too.
        try:
            async for chunk in upstream.aiter_raw(settings.relay_chunk_size):
                yield chunk
        finally:
            await upstream.aclose()
            await client.aclose()

    return StreamingResponse(
        body(),
        status_code=upstream.status_code,
        headers=relay_headers(upstream.headers, settings, req.origin),
    )


async def relay(req: RelayRequest, resolver: UpstreamResolver, settings: Settings) -> Response:
    if req.method == "OPTIONS":
        return Response(status_code=200, headers=cors_headers(settings, req.origin))

    path = extract_resource_path(req)
    check_authorization(req, path, settings)
    upstream_url = resolver.resolve(path)
    logger.info(f"[RELAY] {req.method} {path} range={req.headers.get('range', '-')} mode={settings.relay_mode}")

    if settings.relay_mode == "buffer":
        return await _relay_buffered(req, path, upstream_url, resolver, settings)
    return await _relay_streaming(req, path, upstream_url, resolver, settings)
