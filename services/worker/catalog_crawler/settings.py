"""
Scrapy settings for catalog_crawler project.
"""
BOT_NAME = 'catalog_crawler'

SPIDER_MODULES = ['catalog_crawler.spiders']
NEWSPIDER_MODULE = 'catalog_crawler.spiders'

# The catalog blocks most automation via robots.txt; rate limits below keep us polite
ROBOTSTXT_OBEY = False

# Playwright's async API needs the asyncio reactor
TWISTED_REACTOR = 'twisted.internet.asyncioreactor.AsyncioSelectorReactor'

# Realistic desktop user agents, rotated per request
USER_AGENT_LIST = [
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:133.0) Gecko/20100101 Firefox/133.0',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/18.1 Safari/605.1.15',
    'Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36',
]

# Downloader middlewares
# Order matters: user agent is set before the heavy engine decides whether to render
DOWNLOADER_MIDDLEWARES = {
    'scrapy.downloadermiddlewares.useragent.UserAgentMiddleware': None,
    'catalog_crawler.middlewares.RotateUserAgentMiddleware': 400,
    'catalog_crawler.middlewares.PlaywrightRenderMiddleware': 950,
}

# Sinks are configured at run time (feed export always, Postgres when DATABASE_URL is set)
ITEM_PIPELINES = {}

# Light engine: plain HTTP fetches
CONCURRENT_REQUESTS = 5
DOWNLOAD_TIMEOUT = 90
# Jitter before each fetch: 0.5 * to 1.5 * DOWNLOAD_DELAY
DOWNLOAD_DELAY = 1.5
RANDOMIZE_DOWNLOAD_DELAY = True

# Auto-throttle backs off when the catalog slows down or starts erroring
AUTOTHROTTLE_ENABLED = True
AUTOTHROTTLE_START_DELAY = 2.0
AUTOTHROTTLE_MAX_DELAY = 10.0
AUTOTHROTTLE_TARGET_CONCURRENCY = 2.0

# Heavy engine: rendered pages, far fewer at a time
HEAVY_MAX_CONCURRENCY = 2
HEAVY_JITTER_RANGE = (1.0, 3.0)  # Seconds, random pause before each render
HEAVY_NAVIGATION_TIMEOUT_MS = 60000
HEAVY_HEADLESS = True

# Retry settings for temporary errors; a request still failing after this reaches the page errback
RETRY_ENABLED = True
RETRY_TIMES = 3
RETRY_HTTP_CODES = [403, 408, 429, 500, 502, 503, 504]
RETRY_PRIORITY_ADJUST = -1

# Cookies persist per session; rotation comes from fresh proxy sessions
COOKIES_ENABLED = True

FEED_EXPORT_ENCODING = 'utf-8'

# Logging
LOG_LEVEL = 'INFO'
