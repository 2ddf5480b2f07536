"""
Service Worker Cache Layer
Routes fetches through one of four caching strategies, keeps the bounded
caches trimmed, and answers control messages from the page.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from urllib.parse import urljoin, urlsplit

import httpx

from petsync.services.scheduling import Clock
from petsync.utils.cache_manager import Cache, CacheStorage, StoredResponse, trim_cache
from petsync.utils.error_handlers import NetworkUnavailableError

logger = logging.getLogger(__name__)

CACHE_VERSION = 'v2'
STATIC_CACHE = f'petchecky-static-{CACHE_VERSION}'
DYNAMIC_CACHE = f'petchecky-dynamic-{CACHE_VERSION}'
IMAGE_CACHE = f'petchecky-images-{CACHE_VERSION}'
API_CACHE = f'petchecky-api-{CACHE_VERSION}'
CURRENT_CACHES = (STATIC_CACHE, DYNAMIC_CACHE, IMAGE_CACHE, API_CACHE)

APP_SHELL = ('/', '/offline', '/manifest.json')
OFFLINE_PAGE = '/offline'
IMAGE_EXTENSIONS = ('.png', '.jpg', '.jpeg', '.gif', '.webp', '.svg', '.ico', '.avif')
DEFAULT_CACHEABLE_API_ROUTES = ('/api/health', '/api/hospitals', '/api/insurance', '/api/community/posts')

SYNC_TAG = 'sync-pending'

API_FETCH_TIMEOUT = 5.0  # seconds
IMAGE_CACHE_LIMIT = 100
API_CACHE_LIMIT = 30
DYNAMIC_CACHE_LIMIT = 50

MSG_SKIP_WAITING = 'SKIP_WAITING'
MSG_CACHE_URLS = 'CACHE_URLS'
MSG_CLEAR_CACHE = 'CLEAR_CACHE'
MSG_GET_CACHE_STATUS = 'GET_CACHE_STATUS'


@dataclass
class FetchRequest:
    """A request intercepted by the fetch layer."""
    url: str
    method: str = 'GET'
    mode: str = 'cors'
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None
    preload: Optional[StoredResponse] = None

    @property
    def path(self) -> str:
        return urlsplit(self.url).path or '/'

    @property
    def is_navigation(self) -> bool:
        return self.mode == 'navigate'

    @property
    def is_api(self) -> bool:
        return self.path.startswith('/api/')

    @property
    def is_image(self) -> bool:
        return self.path.lower().endswith(IMAGE_EXTENSIONS)


Fetcher = Callable[[FetchRequest], Awaitable[StoredResponse]]
SyncCallback = Callable[[], Awaitable[Any]]


def offline_envelope(message: str, clock: Optional[Clock] = None) -> Dict[str, Any]:
    return {
        'error': 'offline',
        'message': message,
        'timestamp': (clock or Clock()).now_ms()
    }


def offline_response(message: str, clock: Optional[Clock] = None) -> StoredResponse:
    """Synthesized 503 answer for API calls that reached neither network nor cache."""
    return StoredResponse(
        status=503,
        body=json.dumps(offline_envelope(message, clock)).encode('utf-8'),
        headers={'Content-Type': 'application/json'}
    )


class HttpxNetwork:
    """Network access for the fetch layer over one shared ``httpx.AsyncClient``."""

    def __init__(self, base_url: str, timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url
        self.timeout = timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), follow_redirects=True)
        return self._client

    async def __call__(self, request: FetchRequest) -> StoredResponse:
        url = urljoin(self.base_url, request.url)
        client = await self._get_client()
        try:
            response = await client.request(request.method, url, headers=request.headers, content=request.body)
        except httpx.RequestError as e:
            raise NetworkUnavailableError(f"Network error fetching {url}: {str(e)}", request.url)
        return StoredResponse(
            status=response.status_code,
            body=response.content,
            headers={'Content-Type': response.headers.get('content-type', 'application/octet-stream')},
            url=request.url
        )

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


class ServiceWorker:
    """Caching fetch layer with the app-shell lifecycle and a message channel."""

    def __init__(self, network: Fetcher, caches: Optional[CacheStorage] = None, clock: Optional[Clock] = None,
                 api_timeout: float = API_FETCH_TIMEOUT,
                 image_cache_limit: int = IMAGE_CACHE_LIMIT,
                 api_cache_limit: int = API_CACHE_LIMIT,
                 dynamic_cache_limit: int = DYNAMIC_CACHE_LIMIT,
                 cacheable_api_routes=DEFAULT_CACHEABLE_API_ROUTES):
        self.network = network
        self.caches = caches or CacheStorage()
        self.clock = clock or Clock()
        self.api_timeout = api_timeout
        self.image_cache_limit = image_cache_limit
        self.api_cache_limit = api_cache_limit
        self.dynamic_cache_limit = dynamic_cache_limit
        self.cacheable_api_routes = tuple(cacheable_api_routes)
        self.waiting = True
        self._sync_callbacks: Dict[str, SyncCallback] = {}
        self._revalidations: Set[asyncio.Future] = set()

    # Lifecycle

    async def install(self) -> int:
        """Precache the app shell. Returns the number of entries cached."""
        cache = await self.caches.open(STATIC_CACHE)
        cached = 0
        for url in APP_SHELL:
            try:
                response = await self.network(FetchRequest(url))
            except NetworkUnavailableError as e:
                logger.warning(f"Could not precache {url}: {e.message}")
                continue
            if response.ok:
                await cache.put(url, response)
                cached += 1
        logger.info(f"Installed service worker, precached {cached}/{len(APP_SHELL)} shell entries")
        return cached

    async def activate(self) -> List[str]:
        """Delete caches left behind by earlier versions. Returns their names."""
        removed = []
        for name in await self.caches.keys():
            if name not in CURRENT_CACHES:
                await self.caches.delete(name)
                removed.append(name)
        if removed:
            logger.info(f"Removed stale caches: {', '.join(removed)}")
        self.waiting = False
        return removed

    def register_sync(self, tag: str, callback: SyncCallback):
        self._sync_callbacks[tag] = callback

    async def on_sync(self, tag: str) -> bool:
        """Run the background sync callback registered for ``tag``."""
        callback = self._sync_callbacks.get(tag)
        if callback is None:
            logger.debug(f"No background sync registered for tag {tag}")
            return False
        await callback()
        return True

    # Fetch routing

    async def fetch(self, request: FetchRequest) -> StoredResponse:
        if request.is_navigation:
            return await self._handle_navigation(request)
        if request.is_api:
            return await self._handle_api(request)
        if request.method != 'GET':
            return await self.network(request)
        if request.is_image:
            return await self._handle_image(request)
        return await self._handle_static(request)

    async def _store(self, cache: Cache, url: str, response: StoredResponse, limit: int):
        await cache.put(url, response)
        await trim_cache(cache, limit)

    async def _handle_navigation(self, request: FetchRequest) -> StoredResponse:
        if request.preload is not None:
            return request.preload
        try:
            response = await self.network(request)
            if response.ok:
                await self._store(await self.caches.open(DYNAMIC_CACHE), request.url, response,
                                  self.dynamic_cache_limit)
            return response
        except NetworkUnavailableError:
            logger.debug(f"Navigation to {request.url} offline, falling back to cache")

        for url in (request.url, OFFLINE_PAGE, '/'):
            cached = await self.caches.match(url)
            if cached is not None:
                return cached
        return offline_response('The page is not available offline.', self.clock)

    def _is_cacheable_api(self, request: FetchRequest) -> bool:
        if request.method != 'GET':
            return False
        path = request.path
        return any(path == route or path.startswith(f"{route}/") for route in self.cacheable_api_routes)

    async def _handle_api(self, request: FetchRequest) -> StoredResponse:
        cacheable = self._is_cacheable_api(request)
        try:
            # wait_for cancels the in-flight request when the timeout fires
            response = await asyncio.wait_for(self.network(request), timeout=self.api_timeout)
        except (asyncio.TimeoutError, NetworkUnavailableError) as e:
            reason = 'timed out' if isinstance(e, asyncio.TimeoutError) else e.message
            logger.warning(f"API fetch {request.url} failed: {reason}")
            if cacheable:
                cached = await (await self.caches.open(API_CACHE)).match(request.url)
                if cached is not None:
                    return cached
            return offline_response('You are offline. Please check your connection.', self.clock)

        if cacheable and response.ok:
            await self._store(await self.caches.open(API_CACHE), request.url, response, self.api_cache_limit)
        return response

    async def _handle_image(self, request: FetchRequest) -> StoredResponse:
        cache = await self.caches.open(IMAGE_CACHE)
        cached = await cache.match(request.url)
        if cached is not None:
            return cached
        try:
            response = await self.network(request)
        except NetworkUnavailableError as e:
            logger.debug(f"Image {request.url} unavailable: {e.message}")
            return StoredResponse(status=503, body=b'', url=request.url)
        if response.ok:
            await self._store(cache, request.url, response, self.image_cache_limit)
        return response

    async def _handle_static(self, request: FetchRequest) -> StoredResponse:
        cached = await self.caches.match(request.url)
        if cached is not None:
            self._revalidate_in_background(request)
            return cached
        return await self._fetch_into_dynamic(request)

    async def _fetch_into_dynamic(self, request: FetchRequest) -> StoredResponse:
        response = await self.network(request)
        if response.ok:
            await self._store(await self.caches.open(DYNAMIC_CACHE), request.url, response,
                              self.dynamic_cache_limit)
        return response

    def _revalidate_in_background(self, request: FetchRequest):
        future = asyncio.ensure_future(self._revalidate(request))
        self._revalidations.add(future)
        future.add_done_callback(self._revalidations.discard)

    async def _revalidate(self, request: FetchRequest):
        try:
            await self._fetch_into_dynamic(request)
        except NetworkUnavailableError as e:
            logger.debug(f"Revalidation of {request.url} skipped: {e.message}")

    async def drain(self) -> None:
        """Wait for background revalidations started so far."""
        if self._revalidations:
            await asyncio.gather(*list(self._revalidations))

    # Message channel

    async def handle_message(self, message: Dict[str, Any]) -> Dict[str, Any]:
        message_type = message.get('type') if isinstance(message, dict) else None

        if message_type == MSG_SKIP_WAITING:
            self.waiting = False
            return {'success': True}

        if message_type == MSG_CACHE_URLS:
            payload = message['payload'] if isinstance(message.get('payload'), dict) else message
            return {'success': True, 'cached': await self.cache_urls(payload.get('urls') or [])}

        if message_type == MSG_CLEAR_CACHE:
            names = await self.caches.keys()
            for name in names:
                await self.caches.delete(name)
            logger.info(f"Cleared {len(names)} caches")
            return {'success': True, 'cleared': len(names)}

        if message_type == MSG_GET_CACHE_STATUS:
            return self.caches.get_stats()

        return {'error': 'unknown message type'}

    async def cache_urls(self, urls: List[str]) -> int:
        """Prefetch ``urls`` into the dynamic cache. Returns how many were stored."""
        cache = await self.caches.open(DYNAMIC_CACHE)
        stored = 0
        for url in urls:
            try:
                response = await self.network(FetchRequest(url))
            except NetworkUnavailableError as e:
                logger.warning(f"Prefetch of {url} failed: {e.message}")
                continue
            if response.ok:
                await cache.put(url, response)
                stored += 1
        await trim_cache(cache, self.dynamic_cache_limit)
        return stored
