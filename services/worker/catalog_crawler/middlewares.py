"""
Downloader middlewares: user agent rotation and the heavy (rendering) engine.

Requests are fetched by Scrapy's own downloader (light engine) unless the
crawl has escalated or the request asks for rendering explicitly, in which
case PlaywrightRenderMiddleware loads the page in a headless browser and
answers the request itself.
"""
import asyncio
import logging
import random
from typing import Optional, Sequence, Tuple

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright
from scrapy import signals
from scrapy.http import HtmlResponse
from scrapy.utils.defer import deferred_from_coro

from catalog_crawler.state import ENGINE_HEAVY, ENGINE_LIGHT


logger = logging.getLogger(__name__)

# Client-side listing state the catalog keeps on window
CLIENT_STATE_SCRIPT = """
() => {
    const state = window.pageData || window.__moduleData__ || window.__INITIAL_STATE__ || null;
    try {
        return state ? JSON.parse(JSON.stringify(state)) : null;
    } catch (e) {
        return null;
    }
}
"""


class RotateUserAgentMiddleware:
    """Pick a random user agent for requests that don't set one."""

    def __init__(self, user_agents: Sequence[str]):
        self.user_agents = list(user_agents)

    @classmethod
    def from_crawler(cls, crawler):
        return cls(crawler.settings.getlist('USER_AGENT_LIST'))

    def process_request(self, request, spider):
        if self.user_agents and 'User-Agent' not in request.headers:
            request.headers['User-Agent'] = random.choice(self.user_agents)
        return None


def engine_for(request, spider) -> str:
    """Engine a request should be fetched with: explicit meta, else the crawl's active engine."""
    engine = request.meta.get('engine')
    if engine:
        return engine
    state = getattr(spider, 'state', None)
    return state.active_engine if state is not None else ENGINE_LIGHT


class PlaywrightRenderMiddleware:
    """
    Heavy engine: render pages with Playwright and return the final HTML.

    At most max_concurrency pages render at once, each after a random pause
    within jitter_range. The client-side state object (if any) is stored in
    request.meta['client_state'].
    """

    def __init__(self, max_concurrency: int = 2, jitter_range: Tuple[float, float] = (1.0, 3.0),
                 navigation_timeout_ms: int = 60000, headless: bool = True):
        self.max_concurrency = max(1, max_concurrency)
        self.jitter_range = jitter_range
        self.navigation_timeout_ms = navigation_timeout_ms
        self.headless = headless
        self._playwright = None
        self._browser = None
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._launch_lock: Optional[asyncio.Lock] = None

    @classmethod
    def from_crawler(cls, crawler):
        settings = crawler.settings
        jitter = [float(value) for value in settings.getlist('HEAVY_JITTER_RANGE')] or [1.0, 3.0]
        middleware = cls(
            max_concurrency=settings.getint('HEAVY_MAX_CONCURRENCY', 2),
            jitter_range=(jitter[0], jitter[-1]),
            navigation_timeout_ms=settings.getint('HEAVY_NAVIGATION_TIMEOUT_MS', 60000),
            headless=settings.getbool('HEAVY_HEADLESS', True),
        )
        crawler.signals.connect(middleware.spider_closed, signal=signals.spider_closed)
        return middleware

    async def process_request(self, request, spider):
        engine = engine_for(request, spider)
        request.meta['fetched_with'] = engine
        if engine != ENGINE_HEAVY:
            return None
        return await self.render(request)

    async def _get_browser(self):
        if self._launch_lock is None:
            self._launch_lock = asyncio.Lock()
        async with self._launch_lock:
            if self._browser is None:
                logger.info('Launching headless browser for rendered pages')
                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(headless=self.headless)
        return self._browser

    async def render(self, request):
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrency)

        async with self._semaphore:
            await asyncio.sleep(random.uniform(*self.jitter_range))
            browser = await self._get_browser()

            user_agent = request.headers.get('User-Agent')
            proxy = request.meta.get('proxy')
            context = await browser.new_context(
                user_agent=user_agent.decode('latin-1') if user_agent else None,
                proxy={'server': proxy} if proxy else None,
                locale='en-US',
            )
            try:
                page = await context.new_page()
                response = await page.goto(
                    request.url,
                    wait_until='domcontentloaded',
                    timeout=self.navigation_timeout_ms,
                )
                try:
                    await page.wait_for_load_state('networkidle', timeout=self.navigation_timeout_ms)
                except PlaywrightTimeoutError:
                    # Long-polling pages never go idle; use what has rendered
                    logger.debug(f'Network never went idle on {request.url}')
                try:
                    client_state = await page.evaluate(CLIENT_STATE_SCRIPT)
                except PlaywrightError as e:
                    logger.debug(f'Could not read client state on {request.url}: {e}')
                    client_state = None
                html = await page.content()
                final_url = page.url
                status = response.status if response is not None else 200
            finally:
                await context.close()

        request.meta['client_state'] = client_state
        logger.debug(f'Rendered {request.url} ({len(html)} bytes, HTTP {status})')
        return HtmlResponse(final_url, status=status, body=html, encoding='utf-8', request=request)

    async def _close(self):
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    def spider_closed(self, spider):
        """Shut the browser down when the crawl ends."""
        if self._browser is None and self._playwright is None:
            return None
        return deferred_from_coro(self._close())
