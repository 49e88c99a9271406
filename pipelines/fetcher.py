"""Page fetching with a static HTTP path and a headless-browser fallback.

Static fetches go through a shared aiohttp session. Rendering uses a single
lazily launched Chromium instance; render calls are serialized so only one
page is open at a time. Call :meth:`Fetcher.close` (or use ``async with``)
to release both.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

import aiohttp
from playwright.async_api import async_playwright

from observability.metrics import pages_fetched
from services.shared.errors import FetchError
from .rate_limit import TokenBucket
from .security import validate_url, check_url_ssrf

logger = logging.getLogger(__name__)

STATIC = "static"
RENDERED = "rendered"

VIEWPORT = {"width": 1920, "height": 1080}
NAVIGATION_TIMEOUT_MS = 30000
SETTLE_DELAY_MS = 2000


@dataclass
class FetchResult:
    """Raw HTML of a page and how it was obtained."""
    url: str
    html: str
    method: str
    status_code: Optional[int] = None
    response_time: Optional[float] = None


class Fetcher:
    """Fetches raw HTML, falling back to browser rendering when needed."""

    def __init__(self,
                 timeout: float = 15.0,
                 render_timeout: float = 45.0,
                 user_agent: Optional[str] = None,
                 browser_enabled: bool = True,
                 block_private_networks: bool = False,
                 rate_limiter: Optional[TokenBucket] = None):
        """Initialize fetcher.

        Args:
            timeout: Static request timeout in seconds
            render_timeout: Upper bound for one browser render in seconds
            user_agent: User agent sent by both paths
            browser_enabled: Whether rendering is available at all
            block_private_networks: Refuse hosts on private networks
            rate_limiter: Token bucket consulted before every network call
        """
        self.timeout = timeout
        self.render_timeout = render_timeout
        self.user_agent = user_agent
        self.browser_enabled = browser_enabled
        self.block_private_networks = block_private_networks
        self.rate_limiter = rate_limiter

        self.session: Optional[aiohttp.ClientSession] = None
        self._playwright = None
        self._browser = None
        self._browser_lock = asyncio.Lock()
        self._render_lock = asyncio.Lock()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            headers = {'User-Agent': self.user_agent} if self.user_agent else None
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers=headers
            )
        return self.session

    async def _throttle(self) -> None:
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()

    async def fetch(self, url: str, use_browser: bool = False) -> FetchResult:
        """Fetch the raw HTML of ``url``.

        With ``use_browser`` the page is rendered directly; otherwise a static
        GET is tried first and rendering is the fallback.

        Raises:
            ValidationError: If the URL is malformed or blocked
            FetchError: If every available method failed
        """
        url = validate_url(url)
        if self.block_private_networks:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, check_url_ssrf, url)

        static_error = None
        if not use_browser:
            try:
                return await self._fetch_static(url)
            except FetchError as e:
                static_error = e
                logger.info(f"Static fetch failed for {url}: {e}")
                if not self.browser_enabled:
                    raise

        if not self.browser_enabled:
            raise FetchError(url, "browser rendering requested but disabled")

        try:
            return await self._fetch_rendered(url)
        except FetchError as e:
            if static_error is not None:
                raise FetchError(url, f"static: {static_error}; rendered: {e}") from e
            raise

    async def _fetch_static(self, url: str) -> FetchResult:
        await self._throttle()
        start_time = time.time()
        session = await self._get_session()

        try:
            async with session.get(url, allow_redirects=True) as response:
                content_type = response.headers.get('content-type', '')
                if response.status >= 400:
                    raise FetchError(url, f"HTTP {response.status}")
                if 'html' not in content_type.lower():
                    raise FetchError(url, f"non-HTML content type: {content_type or 'unknown'}")
                try:
                    html = await response.text()
                except UnicodeDecodeError as e:
                    charset = response.charset or "unknown charset"
                    raise FetchError(url, f"undecodable body ({charset}): {e.reason}") from e
                status = response.status
        except FetchError:
            pages_fetched.labels(method=STATIC, outcome="failure").inc()
            raise
        except asyncio.TimeoutError as e:
            pages_fetched.labels(method=STATIC, outcome="failure").inc()
            raise FetchError(url, f"timed out after {self.timeout}s") from e
        except aiohttp.ClientError as e:
            pages_fetched.labels(method=STATIC, outcome="failure").inc()
            raise FetchError(url, f"{type(e).__name__}: {e}") from e

        if not html or not html.strip():
            pages_fetched.labels(method=STATIC, outcome="failure").inc()
            raise FetchError(url, "empty response body")

        pages_fetched.labels(method=STATIC, outcome="success").inc()
        elapsed = time.time() - start_time
        logger.debug(f"Fetched {url} statically in {elapsed:.2f}s ({len(html)} bytes)")
        return FetchResult(url=url, html=html, method=STATIC, status_code=status, response_time=elapsed)

    async def _ensure_browser(self):
        async with self._browser_lock:
            if self._browser is None:
                logger.info("Launching headless browser")
                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(
                    headless=True,
                    args=['--no-sandbox', '--disable-setuid-sandbox', '--disable-dev-shm-usage']
                )
            return self._browser

    async def _render(self, url: str) -> str:
        browser = await self._ensure_browser()
        context = await browser.new_context(user_agent=self.user_agent, viewport=VIEWPORT)
        try:
            page = await context.new_page()
            await page.goto(url, wait_until="networkidle", timeout=NAVIGATION_TIMEOUT_MS)
            await page.wait_for_timeout(SETTLE_DELAY_MS)
            return await page.content()
        finally:
            await context.close()

    async def _fetch_rendered(self, url: str) -> FetchResult:
        async with self._render_lock:
            await self._throttle()
            start_time = time.time()
            try:
                html = await asyncio.wait_for(self._render(url), timeout=self.render_timeout)
            except asyncio.TimeoutError as e:
                pages_fetched.labels(method=RENDERED, outcome="failure").inc()
                raise FetchError(url, f"render timed out after {self.render_timeout}s") from e
            except Exception as e:
                pages_fetched.labels(method=RENDERED, outcome="failure").inc()
                raise FetchError(url, f"render failed: {e}") from e

        if not html or not html.strip():
            pages_fetched.labels(method=RENDERED, outcome="failure").inc()
            raise FetchError(url, "rendered page is empty")

        pages_fetched.labels(method=RENDERED, outcome="success").inc()
        elapsed = time.time() - start_time
        logger.debug(f"Rendered {url} in {elapsed:.2f}s ({len(html)} bytes)")
        return FetchResult(url=url, html=html, method=RENDERED, response_time=elapsed)

    async def close(self):
        """Close the HTTP session and the browser, if they were started."""
        if self.session is not None:
            await self.session.close()
            self.session = None

        async with self._browser_lock:
            if self._browser is not None:
                try:
                    await self._browser.close()
                finally:
                    self._browser = None
                    if self._playwright is not None:
                        await self._playwright.stop()
                        self._playwright = None
                logger.info("Headless browser closed")
