"""
Next-page resolution for listing pages.
"""
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

from scrapy import Selector

if TYPE_CHECKING:
    from catalog_crawler.strategies import PageContext, StrategyResult


# Explicit "next page" affordances, most specific first
NEXT_LINK_XPATHS = (
    '//link[@rel="next"]/@href',
    '//a[contains(concat(" ", normalize-space(@rel), " "), " next ")]/@href',
    '//a[contains(translate(@aria-label, "NEXT", "next"), "next")][not(@aria-disabled="true")]/@href',
    '//li[contains(@class, "ant-pagination-next")][not(contains(@class, "disabled"))]'
    '[not(@aria-disabled="true")]//a/@href',
    '//a[normalize-space(.)="Next" or normalize-space(.)="›" or normalize-space(.)="»"]'
    '[not(@aria-disabled="true")][not(ancestor::li[contains(@class, "disabled")])]/@href',
)


@dataclass
class NextPage:
    url: str
    page_no: int
    via: str  # "api" or "markup"


def with_query(url: str, **params) -> str:
    """Return url with the given query parameters set (others kept)."""
    parsed = urlparse(url)
    query = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query.update({key: str(value) for key, value in params.items()})
    return urlunparse(parsed._replace(query=urlencode(query)))


def find_next_link(html: str) -> Optional[str]:
    """Href of the page's next-page control, if it has an enabled one."""
    if not html:
        return None
    selector = Selector(text=html)
    for xpath in NEXT_LINK_XPATHS:
        for href in selector.xpath(xpath).getall():
            href = href.strip()
            if href and href != '#' and not href.lower().startswith('javascript:'):
                return href
    return None


def resolve_next_page(context: 'PageContext',
                      api_result: Optional['StrategyResult'] = None) -> Optional[NextPage]:
    """
    Work out the next listing request for a processed page.

    A successful API response continues by page number (bounded by its total
    page count when it reports one); otherwise the page's own next link is
    followed. None means the listing has no further pages.
    """
    next_no = context.page_no + 1

    if api_result is not None and api_result.succeeded:
        total = api_result.total_pages
        # Unknown total: keep going, an empty page ends the branch
        if not total or next_no <= total:
            return NextPage(with_query(context.url, page=next_no), next_no, 'api')

    href = find_next_link(context.html)
    if href:
        return NextPage(urljoin(context.url, href), next_no, 'markup')
    return None
