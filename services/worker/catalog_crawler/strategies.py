"""
Extraction strategies for catalog listing pages.

Each strategy turns a PageContext into a StrategyResult through attempt().
Strategies never raise on bad input: a missing, malformed or blocked shape is
reported as matched=False and the caller moves on to the next strategy.
"""
import json
import logging
import math
import random
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from catalog_crawler.items import SOURCE_API, SOURCE_EMBEDDED, SOURCE_HTML
from catalog_crawler.normalizer import PRODUCT_URL_ID_RE, parse_number
from catalog_crawler.pagination import with_query
from catalog_crawler.settings import USER_AGENT_LIST
from catalog_crawler.state import ENGINE_LIGHT


logger = logging.getLogger(__name__)

# Alternate locations of the product array, tried in order
PRODUCT_LIST_PATHS: Tuple[Tuple[str, ...], ...] = (
    ('mods', 'listItems'),
    ('data', 'mods', 'listItems'),
    ('listItems',),
    ('mods', 'itemList'),
    ('data', 'listItems'),
    ('data', 'products'),
    ('products',),
    ('items',),
)

PAGE_INFO_PATHS: Tuple[Tuple[str, ...], ...] = (
    ('mainInfo',),
    ('data', 'mainInfo'),
)


@dataclass
class ApiResponse:
    """What the fetch layer returned for the API query."""
    status: int
    text: str
    content_type: str = ''


@dataclass
class PageContext:
    """Everything the strategies may look at for one listing page."""
    url: str
    page_no: int = 1
    html: str = ''
    engine: str = ENGINE_LIGHT
    api_response: Optional[ApiResponse] = None
    client_state: Any = None


@dataclass
class StrategyResult:
    source: str
    items: List[Dict[str, Any]] = field(default_factory=list)
    total_pages: Optional[int] = None
    matched: bool = False

    @property
    def succeeded(self) -> bool:
        return self.matched and bool(self.items)


class ExtractionStrategy(Protocol):
    name: str
    source: str

    def attempt(self, context: PageContext) -> StrategyResult:
        ...


def dig(data: Any, path: Sequence[str]) -> Any:
    for key in path:
        if not isinstance(data, Mapping):
            return None
        data = data.get(key)
    return data


def find_product_list(data: Any) -> Tuple[bool, List[Dict[str, Any]]]:
    """
    Search the known key paths for the product array.

    Returns (found, items): found is True when any path holds a list, items is
    the first non-empty one.
    """
    if isinstance(data, list):
        items = [item for item in data if isinstance(item, Mapping)]
        return True, items
    found = False
    for path in PRODUCT_LIST_PATHS:
        value = dig(data, path)
        if isinstance(value, list):
            found = True
            items = [item for item in value if isinstance(item, Mapping)]
            if items:
                return True, items
    return found, []


def find_total_pages(data: Any) -> Optional[int]:
    """Total page count reported by a catalog payload, None when unknown."""
    for path in PAGE_INFO_PATHS:
        info = dig(data, path)
        if not isinstance(info, Mapping):
            continue
        total = parse_number(info.get('pageTotal'))
        if total:
            return int(total)
        results = parse_number(info.get('totalResults'))
        size = parse_number(info.get('pageSize'))
        if results and size:
            return math.ceil(results / size)
    return None


class ApiStrategy:
    """Catalog JSON endpoint (same listing URL with ajax=true)."""
    name = 'api'
    source = SOURCE_API

    def __init__(self, user_agents: Optional[Sequence[str]] = None):
        self.user_agents = list(user_agents or USER_AGENT_LIST)

    def api_url(self, page_url: str, page_no: int) -> str:
        return with_query(page_url, page=page_no, ajax='true')

    def headers(self, page_url: str) -> Dict[str, str]:
        """Header profile matching an in-page XHR from the listing."""
        parsed = urlparse(page_url)
        return {
            'Accept': 'application/json, text/plain, */*',
            'Accept-Language': 'en-US,en;q=0.9',
            'X-Requested-With': 'XMLHttpRequest',
            'User-Agent': random.choice(self.user_agents),
            'Referer': page_url,
            'Origin': f'{parsed.scheme}://{parsed.netloc}',
        }

    def attempt(self, context: PageContext) -> StrategyResult:
        response = context.api_response
        if response is None:
            return StrategyResult(self.source)
        if response.status >= 400:
            logger.info(f'API returned HTTP {response.status} for page {context.page_no}')
            return StrategyResult(self.source)
        try:
            data = json.loads(response.text)
        except ValueError:
            logger.info(
                f'API returned a non-JSON body ({response.content_type or "no content type"}) '
                f'for page {context.page_no}'
            )
            return StrategyResult(self.source)

        found, items = find_product_list(data)
        return StrategyResult(
            self.source,
            items=items,
            total_pages=find_total_pages(data),
            matched=found,
        )


# Inline assignments the catalog has used for its listing state
ASSIGNMENT_PATTERNS = (
    re.compile(r'window\.pageData\s*=\s*'),
    re.compile(r'window\.__moduleData__\s*=\s*'),
    re.compile(r'window\.__INITIAL_STATE__\s*=\s*'),
    re.compile(r'\bapp\.run\(\s*'),
)

_JSON_DECODER = json.JSONDecoder()


def _ld_nodes(data: Any):
    """Flatten JSON-LD documents (arrays and @graph containers)."""
    if isinstance(data, list):
        for entry in data:
            yield from _ld_nodes(entry)
    elif isinstance(data, Mapping):
        yield data
        if isinstance(data.get('@graph'), list):
            yield from _ld_nodes(data['@graph'])


def _is_item_list(node: Mapping) -> bool:
    node_type = node.get('@type')
    if isinstance(node_type, list):
        return 'ItemList' in node_type
    return node_type == 'ItemList'


class EmbeddedDataStrategy:
    """JSON embedded in the page: script assignments and ItemList metadata."""
    name = 'embedded'
    source = SOURCE_EMBEDDED

    def attempt(self, context: PageContext) -> StrategyResult:
        result = StrategyResult(self.source)
        soup = BeautifulSoup(context.html or '', 'html.parser')

        for script in soup.find_all('script'):
            text = script.string or script.get_text() or ''
            if not text.strip():
                continue
            if (script.get('type') or '').lower() == 'application/ld+json':
                self._scan_item_list(text, result)
            else:
                self._scan_assignments(text, result)

        if context.client_state is not None:
            self._collect(context.client_state, result)

        return result

    def _collect(self, data: Any, result: StrategyResult) -> None:
        found, items = find_product_list(data)
        if found:
            result.matched = True
            result.items.extend(items)
            if result.total_pages is None:
                result.total_pages = find_total_pages(data)

    def _scan_assignments(self, text: str, result: StrategyResult) -> None:
        for pattern in ASSIGNMENT_PATTERNS:
            for match in pattern.finditer(text):
                try:
                    data, _ = _JSON_DECODER.raw_decode(text, match.end())
                except ValueError as e:
                    logger.debug(f'Could not decode {pattern.pattern!r} payload: {e}')
                    continue
                self._collect(data, result)

    def _scan_item_list(self, text: str, result: StrategyResult) -> None:
        try:
            data = json.loads(text)
        except ValueError as e:
            logger.debug(f'Invalid JSON-LD block: {e}')
            return
        for node in _ld_nodes(data):
            if not _is_item_list(node):
                continue
            result.matched = True
            for element in node.get('itemListElement') or []:
                if not isinstance(element, Mapping):
                    continue
                entry = element.get('item', element)
                if isinstance(entry, str):
                    entry = {'url': entry, 'name': element.get('name')}
                if isinstance(entry, Mapping):
                    result.items.append(dict(entry))


CARD_SELECTORS = (
    '[data-qa-locator="product-item"]',
    '[data-tracking="product-card"]',
    'div[data-item-id]',
    '.gridItem',
    '.product-card',
)
LINK_SELECTORS = ('a[href*="/products/"]', 'a[href]')
TITLE_SELECTORS = ('[class*="title"]', '[class*="name"]')
PRICE_SELECTORS = ('[class*="currentPrice"]', '[class*="price"]')
ORIGINAL_PRICE_SELECTORS = ('[class*="origPrice"]', '[class*="original"]', 'del')
DISCOUNT_SELECTORS = ('[class*="discount"]',)
RATING_SELECTORS = ('[class*="rating"]', '[class*="stars"]')
REVIEW_SELECTORS = ('[class*="review"]',)
LOCATION_SELECTORS = ('[class*="location"]',)
OUT_OF_STOCK_SELECTORS = ('[class*="soldOut"]', '[class*="out-of-stock"]', '[class*="outOfStock"]')
ID_ATTRIBUTES = ('data-item-id', 'data-sku-simple', 'data-id')


def _select_first(node, selectors):
    for selector in selectors:
        found = node.select_one(selector)
        if found is not None:
            return found
    return None


def _text_of(node, selectors) -> Optional[str]:
    for selector in selectors:
        found = node.select_one(selector)
        if found is not None:
            text = found.get_text(' ', strip=True)
            if text:
                return text
    return None


def _image_src(img) -> Optional[str]:
    if img is None:
        return None
    for attr in ('src', 'data-src', 'data-original'):
        value = img.get(attr)
        if value and not value.startswith('data:'):
            return value
    return None


class MarkupStrategy:
    """Product cards in the listing HTML."""
    name = 'markup'
    source = SOURCE_HTML

    def attempt(self, context: PageContext) -> StrategyResult:
        soup = BeautifulSoup(context.html or '', 'html.parser')
        cards = []
        for selector in CARD_SELECTORS:
            cards = soup.select(selector)
            if cards:
                break
        if not cards:
            return StrategyResult(self.source)

        items = []
        for card in cards:
            try:
                raw = self.parse_card(card)
            except (AttributeError, TypeError, ValueError) as e:
                logger.debug(f'Failed to parse product card: {e}')
                continue
            if raw:
                items.append(raw)
        return StrategyResult(self.source, items=items, matched=True)

    def parse_card(self, card) -> Optional[Dict[str, Any]]:
        """Raw item from one card; None when the card has no detail link."""
        link = _select_first(card, LINK_SELECTORS)
        href = link.get('href') if link is not None else None
        if not href:
            return None

        img = card.select_one('img')
        title = (
            link.get('title')
            or (img.get('alt') if img is not None else None)
            or _text_of(card, TITLE_SELECTORS)
            or link.get_text(' ', strip=True)
        )

        product_id = None
        for attr in ID_ATTRIBUTES:
            if card.get(attr):
                product_id = card.get(attr)
                break
        if product_id is None:
            match = PRODUCT_URL_ID_RE.search(href)
            if match:
                product_id = match.group(1)

        raw = {
            'productId': product_id,
            'title': title or None,
            'price': _text_of(card, PRICE_SELECTORS),
            'originalPrice': _text_of(card, ORIGINAL_PRICE_SELECTORS),
            'discount': _text_of(card, DISCOUNT_SELECTORS),
            'rating': _text_of(card, RATING_SELECTORS),
            'reviewCount': _text_of(card, REVIEW_SELECTORS),
            'image': _image_src(img),
            'productUrl': href,
            'location': _text_of(card, LOCATION_SELECTORS),
        }
        if _select_first(card, OUT_OF_STOCK_SELECTORS) is not None:
            raw['inStock'] = False
        return raw


@dataclass
class ExtractionOutcome:
    """Results of running the strategy chain on one page."""
    winner: Optional[StrategyResult] = None
    attempts: Dict[str, StrategyResult] = field(default_factory=dict)

    @property
    def items(self) -> List[Dict[str, Any]]:
        return self.winner.items if self.winner else []

    def result_for(self, name: str) -> Optional[StrategyResult]:
        return self.attempts.get(name)


def default_strategies(user_agents: Optional[Sequence[str]] = None) -> List[ExtractionStrategy]:
    """The strategy chain in priority order."""
    return [ApiStrategy(user_agents), EmbeddedDataStrategy(), MarkupStrategy()]


def run_strategies(strategies: Sequence[ExtractionStrategy], context: PageContext) -> ExtractionOutcome:
    """Try strategies in order and stop at the first one that yields items."""
    outcome = ExtractionOutcome()
    for strategy in strategies:
        result = strategy.attempt(context)
        outcome.attempts[strategy.name] = result
        if result.succeeded:
            outcome.winner = result
            logger.info(
                f'{strategy.name} strategy found {len(result.items)} products on {context.url} '
                f'({context.engine} engine)'
            )
            break
        state = 'empty' if result.matched else 'no match'
        logger.info(f'{strategy.name} strategy: {state} on {context.url} ({context.engine} engine), falling back')
    return outcome
