"""Per-request cache/network policy for the edge proxy.

Requests are classified, in order, as cross-origin, API, static asset,
navigation or anything else, and each class gets its own strategy:

* cross-origin: forwarded untouched
* API: network first, a synthesized 503 JSON body when the network is down
* static asset: cache first, fetched responses are copied into the cache
* navigation: network first, then the cached page, then the app shell
* default: cache first, then network
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .cache import CacheStorage, ProxyResponse
from .errors import OfflineError
from .settings import Settings
from .store import CACHED_QUESTION_PAPERS, CACHED_SUBMISSIONS, LocalStore

logger = logging.getLogger(__name__)

OFFLINE_MESSAGE = "You are offline. Please try again when you have an internet connection."
OFFLINE_HEADER = "X-Offline-Synthesized"

STATIC_EXTENSIONS = (".js", ".css", ".png", ".jpg", ".jpeg", ".svg", ".ico", ".json", ".woff", ".woff2", ".ttf")

# headers that describe the transfer, not the resource
_HOP_BY_HOP = {
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization", "te", "trailers",
    "transfer-encoding", "upgrade", "host", "content-length", "content-encoding",
}

_DEFAULT_PORTS = {"http": 80, "https": 443}

# (path pattern, partition, response holds a list)
_SNAPSHOT_ROUTES = [
    (re.compile(r"^/api/question-papers/?$"), CACHED_QUESTION_PAPERS, True),
    (re.compile(r"^/api/question-papers/\d+/?$"), CACHED_QUESTION_PAPERS, False),
    (re.compile(r"^/api/question-papers/\d+/submissions/?$"), CACHED_SUBMISSIONS, True),
    (re.compile(r"^/api/my-submissions/?$"), CACHED_SUBMISSIONS, True),
    (re.compile(r"^/api/submissions/\d+/?$"), CACHED_SUBMISSIONS, False),
]


class RouteKind(str, Enum):
    PASSTHROUGH = "passthrough"
    API = "api"
    STATIC = "static"
    NAVIGATE = "navigate"
    DEFAULT = "default"


@dataclass(frozen=True)
class RouterConfig:
    origin: str
    upstream_url: str
    cache_name: str = "examshare-cache"
    cache_version: str = "v1"
    shell_assets: Tuple[str, ...] = ("/", "/index.html", "/manifest.json", "/auth")
    shell_fallback: str = "/index.html"
    api_prefixes: Tuple[str, ...] = ("/api/",)
    static_extensions: Tuple[str, ...] = STATIC_EXTENSIONS
    offline_message: str = OFFLINE_MESSAGE

    @property
    def current_cache(self) -> str:
        return f"{self.cache_name}-{self.cache_version}"

    def absolute(self, path: str) -> str:
        return self.origin.rstrip("/") + path

    @classmethod
    def from_settings(cls, s: Settings) -> "RouterConfig":
        return cls(
            origin=s.public_origin,
            upstream_url=s.upstream_url,
            cache_name=s.cache_name,
            cache_version=s.cache_version,
            shell_assets=tuple(s.shell_assets),
            shell_fallback=s.shell_fallback,
        )


@dataclass
class RoutedRequest:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    mode: Optional[str] = None

    def header(self, name: str) -> str:
        name = name.lower()
        for key, value in self.headers.items():
            if key.lower() == name:
                return value
        return ""

    @property
    def is_navigation(self) -> bool:
        if self.mode is not None:
            return self.mode == "navigate"
        if self.header("sec-fetch-mode"):
            return self.header("sec-fetch-mode") == "navigate"
        return self.method == "GET" and "text/html" in self.header("accept")


def _origin_of(url: httpx.URL) -> Tuple[str, str, Optional[int]]:
    return url.scheme, url.host, url.port or _DEFAULT_PORTS.get(url.scheme)


def _clean_headers(headers: Any) -> Dict[str, str]:
    return {k: v for k, v in headers.items() if k.lower() not in _HOP_BY_HOP}


class ResponseRouter:
    def __init__(
        self,
        config: RouterConfig,
        caches: CacheStorage,
        store: Optional[LocalStore] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self._caches = caches
        self._store = store
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport, follow_redirects=False)
        self._origin = _origin_of(httpx.URL(config.origin))

    async def aclose(self) -> None:
        await self._client.aclose()

    # --- lifecycle ---

    async def install(self) -> List[str]:
        """Pre-cache the app shell. All assets are fetched before any is stored."""
        fetched = []
        for path in self.config.shell_assets:
            url = self.config.absolute(path)
            response = await self._fetch(RoutedRequest("GET", url))
            if not response.ok:
                raise httpx.HTTPStatusError(
                    f"shell asset {path} returned {response.status}",
                    request=httpx.Request("GET", url),
                    response=httpx.Response(response.status),
                )
            fetched.append((url, response))
        cache = await self._caches.open(self.config.current_cache)
        for url, response in fetched:
            await cache.put(url, response)
        logger.info("Cached %d shell assets in %s", len(fetched), cache.name)
        return [url for url, _ in fetched]

    async def activate(self) -> List[str]:
        """Drop every cache that is not the current version."""
        removed = []
        for name in await self._caches.keys():
            if name != self.config.current_cache:
                await self._caches.delete(name)
                logger.info("Clearing old cache %s", name)
                removed.append(name)
        return removed

    # --- routing ---

    def classify(self, request: RoutedRequest) -> RouteKind:
        url = httpx.URL(request.url)
        if _origin_of(url) != self._origin:
            return RouteKind.PASSTHROUGH
        if any(url.path.startswith(prefix) for prefix in self.config.api_prefixes):
            return RouteKind.API
        if url.path.endswith(self.config.static_extensions):
            return RouteKind.STATIC
        if request.is_navigation:
            return RouteKind.NAVIGATE
        return RouteKind.DEFAULT

    async def handle(self, request: RoutedRequest) -> ProxyResponse:
        kind = self.classify(request)
        logger.debug("%s %s -> %s", request.method, request.url, kind.value)
        if kind is RouteKind.PASSTHROUGH:
            return await self._fetch(request)
        if kind is RouteKind.API:
            return await self._network_first_api(request)
        if kind is RouteKind.STATIC:
            return await self._cache_first(request, store_copy=True)
        if kind is RouteKind.NAVIGATE:
            return await self._network_first_page(request)
        return await self._cache_first(request, store_copy=False)

    async def _network_first_api(self, request: RoutedRequest) -> ProxyResponse:
        try:
            response = await self._fetch(request)
        except httpx.TransportError as e:
            logger.info("API fetch failed, returning offline response: %s", e)
            return self.offline_response()
        if request.method == "GET" and response.ok:
            await self._refresh_snapshots(httpx.URL(request.url).path, response)
        return response

    async def _cache_first(self, request: RoutedRequest, store_copy: bool) -> ProxyResponse:
        if request.method != "GET":
            return await self._fetch(request)
        cached = await self._caches.match(request.url)
        if cached is not None:
            return cached
        response = await self._fetch(request)
        if store_copy:
            cache = await self._caches.open(self.config.current_cache)
            await cache.put(request.url, response.copy())
        return response

    async def _network_first_page(self, request: RoutedRequest) -> ProxyResponse:
        try:
            return await self._fetch(request)
        except httpx.TransportError as e:
            logger.info("Navigation to %s failed offline: %s", request.url, e)
        cached = await self._caches.match(request.url)
        if cached is not None:
            return cached
        shell = await self._caches.match(self.config.absolute(self.config.shell_fallback))
        if shell is not None:
            return shell
        return self.offline_response()

    def offline_response(self) -> ProxyResponse:
        return ProxyResponse(
            status=503,
            headers={"Content-Type": "application/json", OFFLINE_HEADER: "1"},
            body=json.dumps({"error": self.config.offline_message}).encode("utf-8"),
        )

    async def _fetch(self, request: RoutedRequest) -> ProxyResponse:
        url = httpx.URL(request.url)
        if _origin_of(url) == self._origin:
            target = self.config.upstream_url.rstrip("/") + url.raw_path.decode("ascii")
        else:
            target = request.url
        resp = await self._client.request(
            request.method,
            target,
            headers=_clean_headers(request.headers),
            content=request.body or None,
        )
        return ProxyResponse(status=resp.status_code, headers=_clean_headers(resp.headers), body=resp.content)

    async def _refresh_snapshots(self, path: str, response: ProxyResponse) -> None:
        if self._store is None or not self._store.is_open:
            return
        for pattern, partition, many in _SNAPSHOT_ROUTES:
            if not pattern.match(path):
                continue
            try:
                data = response.json()
                items = data if many else [data]
                for item in items:
                    if isinstance(item, dict) and item.get("id") is not None:
                        await self._store.put(partition, item)
            except (ValueError, OfflineError) as e:
                logger.warning("Could not refresh %s from %s: %s", partition, path, e)
            return
