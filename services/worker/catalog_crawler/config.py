"""
Crawl input (actor-style JSON) parsing.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode


logger = logging.getLogger(__name__)

CATALOG_SEARCH_URL = 'https://www.daraz.pk/catalog/'
DEFAULT_CATEGORY_URL = 'https://www.daraz.pk/womens-fashion/'

DEFAULT_MAX_PRODUCTS = 100
DEFAULT_MAX_PAGES = 50
DEFAULT_SORT = 'popularity'


class ConfigurationError(ValueError):
    """Input that cannot produce a crawl."""


def _is_http_url(value: Any) -> bool:
    return isinstance(value, str) and value.strip().lower().startswith(('http://', 'https://'))


def _split_urls(value: Any) -> List[str]:
    """Start URLs from a newline-delimited string or a list of strings/{url} objects."""
    if not value:
        return []
    if isinstance(value, str):
        candidates = value.split('\n')
    elif isinstance(value, (list, tuple)):
        candidates = [entry.get('url') if isinstance(entry, dict) else entry for entry in value]
    else:
        return []
    return [url.strip() for url in candidates if _is_http_url(url)]


def _limit(value: Any, default: int) -> int:
    """Non-negative integer limit; 0 means unbounded, invalid falls back to default."""
    if value is None or value == '' or isinstance(value, bool):
        return default
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        logger.warning(f'Invalid limit {value!r}, using {default}')
        return default
    if number < 0:
        logger.warning(f'Negative limit {value!r}, using {default}')
        return default
    return number


def _flag(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


def _price(value: Any) -> Optional[float]:
    if value is None or value == '':
        return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        logger.warning(f'Ignoring invalid price bound {value!r}')
        return None
    return int(price) if price.is_integer() else price


@dataclass
class CrawlInput:
    """Parsed crawl configuration."""
    start_urls: List[str] = field(default_factory=list)
    category_url: Optional[str] = None
    search_query: str = ''
    max_products: int = DEFAULT_MAX_PRODUCTS
    max_pages: int = DEFAULT_MAX_PAGES
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    sort_by: str = DEFAULT_SORT
    include_out_of_stock: bool = False
    proxy_urls: List[str] = field(default_factory=list)
    use_playwright: bool = False
    # URL inputs were supplied but none of them was usable
    invalid_url_input: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'CrawlInput':
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f'Crawl input must be an object, got {type(data).__name__}')

        start_urls = _split_urls(data.get('startUrls'))
        category_url = data.get('categoryUrl')
        category_url = category_url.strip() if _is_http_url(category_url) else None
        invalid_url_input = bool(
            (data.get('startUrls') and not start_urls)
            or (data.get('categoryUrl') and not category_url)
        )

        proxy_conf = data.get('proxyConfiguration') or {}
        if isinstance(proxy_conf, dict):
            proxy_urls = [url for url in proxy_conf.get('proxyUrls') or [] if _is_http_url(url)]
        else:
            proxy_urls = [proxy_conf] if _is_http_url(proxy_conf) else []

        return cls(
            start_urls=start_urls,
            category_url=category_url,
            search_query=(data.get('searchQuery') or '').strip(),
            max_products=_limit(data.get('maxProducts'), DEFAULT_MAX_PRODUCTS),
            max_pages=_limit(data.get('maxPages'), DEFAULT_MAX_PAGES),
            min_price=_price(data.get('minPrice')),
            max_price=_price(data.get('maxPrice')),
            sort_by=(data.get('sortBy') or DEFAULT_SORT),
            include_out_of_stock=_flag(data.get('includeOutOfStock')),
            proxy_urls=proxy_urls,
            use_playwright=_flag(data.get('usePlaywright')),
            invalid_url_input=invalid_url_input,
        )

    def search_url(self) -> str:
        """Catalog search URL for search_query with price range and sort."""
        params = {'q': self.search_query}
        if self.min_price is not None or self.max_price is not None:
            low = '' if self.min_price is None else self.min_price
            high = '' if self.max_price is None else self.max_price
            params['price'] = f'{low}-{high}'
        if self.sort_by:
            params['sort'] = self.sort_by
        return f'{CATALOG_SEARCH_URL}?{urlencode(params)}'

    def seed_urls(self) -> List[str]:
        """
        Initial listing URLs in priority order: start URLs, category URL,
        search query, default category.
        """
        if self.start_urls:
            return list(self.start_urls)
        if self.category_url:
            return [self.category_url]
        if self.search_query:
            return [self.search_url()]
        if self.invalid_url_input:
            raise ConfigurationError('Input contains no usable start URL')
        return [DEFAULT_CATEGORY_URL]
