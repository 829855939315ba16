# upstream.py
"""
How the service reaches an upstream origin.

A resolver maps a resource path to an absolute upstream URL and builds the
HTTP clients used to fetch it. One implementation exists per deployment
target and the choice is made once, in `select_resolver`, at startup.
"""
import logging
from typing import Optional

from httpx import AsyncBaseTransport, AsyncClient, AsyncHTTPTransport, Timeout

from .config import Settings

logger = logging.getLogger(__name__)


class UpstreamResolver:
    """Direct connection to the upstream origin."""

    name = "direct"

    def __init__(self, origin: str, settings: Settings, transport: Optional[AsyncBaseTransport] = None,
                 read_timeout: Optional[float] = None):
        self.origin = origin.rstrip('/')
        self.settings = settings
        self._transport = transport
        self._read_timeout = read_timeout if read_timeout is not None else settings.upstream_timeout

    def resolve(self, path: str) -> str:
        if not path.startswith('/'):
            path = '/' + path
        return f"{self.origin}{path}"

    def default_headers(self) -> dict:
        return {
            "User-Agent": self.settings.user_agent,
            "Referer": self.origin,
        }

    def client_options(self) -> dict:
        return {}

    def create_client(self) -> AsyncClient:
        """A fresh client per call; callers own it and must close it."""
        transport = self._transport or AsyncHTTPTransport(retries=1, **self.client_options())
        return AsyncClient(
            transport=transport,
            headers=self.default_headers(),
            timeout=Timeout(self.settings.upstream_timeout, read=self._read_timeout),
            follow_redirects=True,
        )


class ForwardProxyResolver(UpstreamResolver):
    """Reaches the origin through an HTTP(S) forward proxy."""

    name = "proxy"

    def client_options(self) -> dict:
        return {"proxy": self.settings.upstream_proxy_url}


def select_resolver(settings: Settings, origin: str, transport: Optional[AsyncBaseTransport] = None,
                    read_timeout: Optional[float] = None) -> UpstreamResolver:
    if settings.upstream_mode == "proxy":
        if not settings.upstream_proxy_url:
            raise ValueError("UPSTREAM_PROXY_URL is required when UPSTREAM_MODE=proxy")
        resolver_class = ForwardProxyResolver
    else:
        resolver_class = UpstreamResolver
    logger.info(f"Using {resolver_class.name} upstream resolver")
    return resolver_class(origin, settings, transport=transport, read_timeout=read_timeout)
