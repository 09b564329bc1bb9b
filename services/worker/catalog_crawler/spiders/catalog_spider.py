"""
Catalog listing spider.

For each listing page: fetch the page (light or heavy engine), query the
catalog API for the same page, run the extraction strategies in priority
order, normalize and admit the products, then continue to the next page.
"""
import itertools
import json
from datetime import datetime, timezone

import scrapy
from scrapy import signals
from scrapy.exceptions import DontCloseSpider
from scrapy.http import TextResponse

from catalog_crawler.config import CrawlInput
from catalog_crawler.escalation import EscalationController
from catalog_crawler.normalizer import normalize_all
from catalog_crawler.pagination import resolve_next_page
from catalog_crawler.state import (
    CrawlState, ENGINE_HEAVY, ENGINE_LIGHT, UnresolvedPage, page_key,
)
from catalog_crawler.strategies import (
    ApiResponse, ApiStrategy, PageContext, default_strategies, run_strategies,
)


class CatalogSpider(scrapy.Spider):
    """
    Config-driven catalog spider.
    Reads the crawl input (see catalog_crawler.config.CrawlInput):
    - startUrls / categoryUrl / searchQuery: where to start
    - maxProducts, maxPages: limits (0 = unbounded)
    - includeOutOfStock: keep products flagged out of stock
    - usePlaywright: render every page from the start
    """
    name = 'catalog'

    def __init__(self, crawl_input=None, *args, **kwargs):
        super(CatalogSpider, self).__init__(*args, **kwargs)
        # `scrapy crawl catalog -a crawl_input='{...}'` passes a JSON string
        if isinstance(crawl_input, str):
            crawl_input = json.loads(crawl_input)
        if isinstance(crawl_input, CrawlInput):
            self.config = crawl_input
        else:
            self.config = CrawlInput.from_dict(crawl_input)

        # Raises ConfigurationError when nothing usable was configured
        self.seed_urls = self.config.seed_urls()

        initial_engine = ENGINE_HEAVY if self.config.use_playwright else ENGINE_LIGHT
        self.state = CrawlState(self.config.max_products, active_engine=initial_engine)
        self.escalation = EscalationController(self.state)
        self.strategies = default_strategies()
        self.api_strategy = next(s for s in self.strategies if isinstance(s, ApiStrategy))
        self._proxies = itertools.cycle(self.config.proxy_urls) if self.config.proxy_urls else None

        self.logger.info(
            f'Spider initialized with {len(self.seed_urls)} start URLs, '
            f'max products: {self.config.max_products or "unbounded"}, '
            f'max pages: {self.config.max_pages or "unbounded"}, engine: {initial_engine}'
        )

    @classmethod
    def from_crawler(cls, crawler, *args, **kwargs):
        spider = super(CatalogSpider, cls).from_crawler(crawler, *args, **kwargs)
        crawler.signals.connect(spider.spider_idle, signal=signals.spider_idle)
        return spider

    def _request_meta(self, **meta):
        if self._proxies is not None:
            meta['proxy'] = next(self._proxies)
        return meta

    def page_request(self, url, page_no, branch, engine=None):
        """Request for one listing page."""
        meta = self._request_meta(page_no=page_no, branch=branch)
        if engine:
            meta['engine'] = engine
        return scrapy.Request(
            url,
            callback=self.parse,
            errback=self.page_failed,
            meta=meta,
            # Pages are deduplicated by CrawlState, which a rendered restart resets
            dont_filter=True,
        )

    async def start(self):
        for request in self.start_requests():
            yield request

    def start_requests(self):
        """Generate initial requests from the seed URLs."""
        for url in self.seed_urls:
            self.logger.info(f'Starting crawl from: {url}')
            yield self.page_request(url, page_no=1, branch=url)

    def parse(self, response):
        """Listing page fetched: claim it and query the API for the same page."""
        page_no = response.meta.get('page_no', 1)
        if self.state.quota_reached:
            self.logger.debug(f'Quota reached, ignoring page {page_no}: {response.url}')
            return

        key = page_key(response.request.url, page_no)
        if not self.state.claim_page(key):
            self.logger.debug(f'Skipping duplicate page: {key}')
            return

        engine = response.meta.get('fetched_with', ENGINE_LIGHT)
        self.logger.info(f'Processing page {page_no} ({engine}): {response.url}')

        yield scrapy.Request(
            self.api_strategy.api_url(response.url, page_no),
            headers=self.api_strategy.headers(response.url),
            callback=self.parse_api,
            errback=self.api_failed,
            cb_kwargs={'page': response},
            # API calls are plain fetches; error statuses reach the strategy
            meta=self._request_meta(engine=ENGINE_LIGHT, handle_httpstatus_all=True),
            dont_filter=True,
        )

    def parse_api(self, response, page):
        text = response.text if isinstance(response, TextResponse) else ''
        api_response = ApiResponse(
            status=response.status,
            text=text,
            content_type=response.headers.get('Content-Type', b'').decode('latin-1'),
        )
        yield from self.process_page(page, api_response)

    def api_failed(self, failure):
        """API fetch raised (network error, timeout): the other strategies still run."""
        page = failure.request.cb_kwargs['page']
        self.logger.warning(f'API fetch failed for {page.url}: {failure.value}')
        yield from self.process_page(page, None)

    def page_failed(self, failure):
        """Listing page could not be fetched even after retries."""
        request = failure.request
        page_no = request.meta.get('page_no', 1)
        self.logger.warning(f'Failed to fetch page {page_no} {request.url}: {failure.value}')
        if self.state.quota_reached:
            return
        yield from self.handle_empty_page(
            request.url,
            page_no,
            request.meta.get('branch', request.url),
            request.meta.get('fetched_with', ENGINE_LIGHT),
        )

    def process_page(self, page, api_response):
        """Run the strategy chain on a fetched page and emit what it yields."""
        if self.state.quota_reached:
            self.logger.debug(f'Quota reached, discarding results of {page.url}')
            return

        page_no = page.meta.get('page_no', 1)
        branch = page.meta.get('branch', page.url)
        engine = page.meta.get('fetched_with', ENGINE_LIGHT)
        context = PageContext(
            url=page.url,
            page_no=page_no,
            html=page.text if isinstance(page, TextResponse) else '',
            engine=engine,
            api_response=api_response,
            client_state=page.meta.get('client_state'),
        )
        outcome = run_strategies(self.strategies, context)

        if not outcome.items:
            self.logger.info(f'No products extracted from page {page_no}: {page.url}')
            yield from self.handle_empty_page(page.request.url, page_no, branch, engine)
            yield from self.next_requests(context, outcome, branch)
            return

        self.escalation.record_page(len(outcome.items))

        scraped_at = datetime.now(timezone.utc).isoformat()
        records = normalize_all(outcome.items, outcome.winner.source, base_url=page.url, scraped_at=scraped_at)
        if not self.config.include_out_of_stock:
            records = [record for record in records if record['inStock']]

        admission = self.state.admit_page(records)
        for item in admission.admitted:
            yield item

        if admission.admitted:
            self.logger.info(
                f'Saved {len(admission.admitted)} products '
                f'(Total: {self.state.saved_count}/{self.config.max_products or "unbounded"})'
            )
        if admission.duplicates:
            self.logger.info(f'Dropped {admission.duplicates} already seen products on page {page_no}')

        if admission.only_duplicates and self.state.saved_count > 0:
            # Pagination looped back onto content we already have
            self.logger.info(f'Page {page_no} had only known products, stopping branch {branch}')
            return

        yield from self.next_requests(context, outcome, branch)

    def handle_empty_page(self, url, page_no, branch, engine):
        """Count a page without products and re-run light failures once rendering is on."""
        if engine == ENGINE_HEAVY:
            self.logger.warning(f'No products on page {page_no} even with rendering, abandoning {url}')
        else:
            self.state.add_unresolved(UnresolvedPage(url, page_no, branch))

        self.escalation.record_page(0)
        if not self.escalation.escalated:
            return

        for unresolved in self.state.take_unresolved():
            self.state.release_page(page_key(unresolved.url, unresolved.page_no))
            self.logger.info(f'Re-queueing page {unresolved.page_no} for rendering: {unresolved.url}')
            yield self.page_request(
                unresolved.url,
                unresolved.page_no,
                unresolved.branch,
                engine=ENGINE_HEAVY,
            )

    def next_requests(self, context, outcome, branch):
        """Follow the listing to its next page unless a limit says stop."""
        if self.state.quota_reached:
            self.logger.info(f'Reached max products ({self.config.max_products}), not paginating further')
            return
        if self.config.max_pages and context.page_no >= self.config.max_pages:
            self.logger.info(f'Reached max pages ({self.config.max_pages}) on {branch}')
            return

        next_page = resolve_next_page(context, outcome.result_for(self.api_strategy.name))
        if next_page is None:
            self.logger.info(f'No more pages found. Finished pagination at: {context.url}')
            return
        if self.state.is_processed(page_key(next_page.url, next_page.page_no)):
            self.logger.info(f'Already visited {next_page.url}, stopping pagination')
            return

        self.logger.info(f'Enqueued {next_page.via} page {next_page.page_no}: {next_page.url}')
        yield self.page_request(next_page.url, next_page.page_no, branch)

    def spider_idle(self, spider):
        """Frontier exhausted: re-run the seeds rendered if the light crawl saved nothing."""
        if spider is not self or not self.escalation.should_restart():
            return
        self.escalation.restart()
        for url in self.seed_urls:
            self.crawler.engine.crawl(self.page_request(url, 1, url, engine=ENGINE_HEAVY))
        raise DontCloseSpider

    def closed(self, reason):
        """Called when spider closes."""
        self.logger.info(
            f'Scraping completed ({reason}). Total products saved: {self.state.saved_count}'
        )
