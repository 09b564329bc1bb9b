"""
Normalization of raw catalog items into ProductItem records.

Raw items come from three different shapes (API JSON, embedded page JSON and
card markup) and share no schema. Each canonical field is projected through an
ordered table of accessor functions; the first accessor that yields a defined
value wins. New raw shapes are supported by extending FIELD_ACCESSORS, not by
touching normalize().
"""
import math
import re
from collections.abc import Mapping
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Optional, Sequence, Tuple
from urllib.parse import urljoin, urlparse

from catalog_crawler.items import ProductItem, SOURCE_TAGS


DEFAULT_ORIGIN = 'https://www.daraz.pk'

# First numeric token, thousands separators allowed ("Rs. 1,250.50", "Rs.1,250").
# A bare ".5" only counts when it doesn't follow a word, so "Rs.1" isn't 0.1
_NUMBER_RE = re.compile(r'\d[\d,]*(?:\.\d+)?|(?<![\w.])\.\d+')
# Leading repeated schemes, e.g. "https:https://..." -> "https://..."
_SCHEME_DUP_RE = re.compile(r'^(?:https?:)+(?=https?:)', re.IGNORECASE)
_ABSOLUTE_RE = re.compile(r'^[a-z][a-z0-9+.\-]*://', re.IGNORECASE)
# Daraz detail pages: /products/<slug>-i<itemId>[-s<skuId>].html
PRODUCT_URL_ID_RE = re.compile(r'-i(\d+)(?:-s\d+)?(?:\.html)?', re.IGNORECASE)

Accessor = Callable[[Mapping], Any]


def _path(*keys: str) -> Accessor:
    """Accessor reading a (possibly nested) key path from a raw item."""
    def accessor(raw: Mapping) -> Any:
        value: Any = raw
        for key in keys:
            if not isinstance(value, Mapping):
                return None
            value = value.get(key)
        return value
    return accessor


def _id_from_url(raw: Mapping) -> Optional[str]:
    for key in ('productUrl', 'itemUrl', 'url', 'link'):
        url = raw.get(key)
        if isinstance(url, str):
            match = PRODUCT_URL_ID_RE.search(url)
            if match:
                return match.group(1)
    return None


def _sold_out(raw: Mapping) -> Optional[bool]:
    sold_out = raw.get('soldOut')
    if isinstance(sold_out, bool):
        return not sold_out
    return None


def _availability(raw: Mapping) -> Optional[bool]:
    offers = raw.get('offers')
    if isinstance(offers, list):
        offers = offers[0] if offers else None
    availability = offers.get('availability') if isinstance(offers, Mapping) else raw.get('availability')
    if not isinstance(availability, str):
        return None
    availability = availability.lower()
    if 'outofstock' in availability or 'soldout' in availability:
        return False
    if 'instock' in availability:
        return True
    return None


def _explicit_bool(key: str) -> Accessor:
    def accessor(raw: Mapping) -> Optional[bool]:
        value = raw.get(key)
        return value if isinstance(value, bool) else None
    return accessor


def _first_offer(key: str) -> Accessor:
    """Accessor for schema.org offers, which may be an object or a list."""
    def accessor(raw: Mapping) -> Any:
        offers = raw.get('offers')
        if isinstance(offers, list):
            offers = offers[0] if offers else None
        if isinstance(offers, Mapping):
            return offers.get(key)
        return None
    return accessor


# Ordered candidates per canonical field, highest priority first
FIELD_ACCESSORS: Dict[str, Tuple[Accessor, ...]] = {
    'productId': (_path('itemId'), _path('productId'), _path('nid'), _path('productID'),
                  _path('sku'), _path('id'), _id_from_url),
    'title': (_path('name'), _path('title'), _path('productTitle')),
    'brand': (_path('brandName'), _path('brand')),
    'price': (_path('price'), _path('priceShow'), _path('salePrice'),
              _first_offer('price'), _first_offer('lowPrice')),
    'originalPrice': (_path('originalPrice'), _path('originalPriceShow'),
                      _path('listPrice'), _path('regularPrice')),
    'discount': (_path('discount'), _path('discountText'), _path('discountPct')),
    'rating': (_path('ratingScore'), _path('rating'), _path('aggregateRating', 'ratingValue')),
    'reviewCount': (_path('review'), _path('reviewCount'), _path('reviews'),
                    _path('aggregateRating', 'reviewCount'), _path('aggregateRating', 'ratingCount')),
    'imageUrl': (_path('image'), _path('imageUrl'), _path('img'), _path('thumbnail'), _path('mainImage')),
    'productUrl': (_path('productUrl'), _path('itemUrl'), _path('url'), _path('link')),
    'inStock': (_explicit_bool('inStock'), _explicit_bool('isInStock'), _sold_out, _availability),
    'sellerName': (_path('sellerName'), _path('seller')),
    'location': (_path('location'), _path('shipFrom')),
    'categoryName': (_path('categoryName'), _path('category')),
}


def _defined(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    if isinstance(value, (list, tuple, dict)) and not value:
        return False
    return True


def project(raw: Mapping, field: str) -> Any:
    """Return the first defined candidate value for a canonical field."""
    for accessor in FIELD_ACCESSORS[field]:
        value = accessor(raw)
        if _defined(value):
            return value
    return None


def parse_number(value: Any) -> Optional[float]:
    """
    Parse a locale-formatted number ("Rs. 1,250", "-50%", 4.5).

    Returns None for absent, unparseable or non-finite values. Integral
    results are returned as int.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        match = _NUMBER_RE.search(str(value))
        if not match:
            return None
        try:
            number = float(match.group(0).replace(',', ''))
        except ValueError:
            return None
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


def _text(value: Any) -> Optional[str]:
    """Coerce a raw field to display text (objects by their name)."""
    if isinstance(value, Mapping):
        value = value.get('name')
    elif isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if value is None or isinstance(value, (Mapping, list, tuple)):
        return None
    text = str(value).strip()
    return text or None


def absolute_url(value: Any, base_url: Optional[str] = None) -> Optional[str]:
    """
    Normalize a raw URL value to absolute form.

    "//host/x" gets the page scheme, "/x" and relative values are resolved
    against the site origin, absolute values pass through unchanged and a
    duplicated scheme prefix ("https:https://") is collapsed.
    """
    url = _text(value)
    if not url:
        return None
    url = _SCHEME_DUP_RE.sub('', url)

    base = urlparse(base_url or DEFAULT_ORIGIN)
    scheme = base.scheme or 'https'
    origin = f'{scheme}://{base.netloc}' if base.netloc else DEFAULT_ORIGIN

    if url.startswith('//'):
        return f'{scheme}:{url}'
    if _ABSOLUTE_RE.match(url):
        return url
    if url.startswith('/'):
        return origin + url
    return urljoin(origin + '/', url)


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves away from zero (12.5 -> 13)."""
    return int(Decimal(repr(value)).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def compute_discount(price: Optional[float], original_price: Optional[float],
                     explicit: Any = None) -> Optional[int]:
    """
    Discount percent from both prices, else from an explicit raw value.

    Percentages are rounded half-up, matching what the catalog displays
    (175 against 200 is 13%, where round() would give 12).
    """
    if price is not None and original_price is not None and price > 0 and original_price > 0:
        return round_half_up((original_price - price) / original_price * 100)
    explicit_pct = parse_number(explicit)
    if explicit_pct is not None:
        return round_half_up(explicit_pct)
    return None


def _raw_text(value: Any) -> Optional[str]:
    if not _defined(value) or isinstance(value, (Mapping, list, tuple)):
        return None
    return str(value).strip()


def normalize(raw: Optional[Mapping], source: str, base_url: Optional[str] = None,
              scraped_at: Optional[str] = None) -> Optional[ProductItem]:
    """
    Convert one raw item into a ProductItem.

    Pure: the same arguments always produce an equal record. Returns None only
    when the raw item itself is absent or empty.
    """
    if source not in SOURCE_TAGS:
        raise ValueError(f'Unknown source tag: {source!r}')
    if not raw or not isinstance(raw, Mapping):
        return None

    raw_price = project(raw, 'price')
    raw_original = project(raw, 'originalPrice')
    raw_discount = project(raw, 'discount')
    price = parse_number(raw_price)
    original_price = parse_number(raw_original)

    rating = parse_number(project(raw, 'rating'))
    review_count = parse_number(project(raw, 'reviewCount'))
    in_stock = project(raw, 'inStock')
    product_id = _text(project(raw, 'productId'))

    item = ProductItem()
    item['productId'] = product_id
    item['title'] = _text(project(raw, 'title'))
    item['brand'] = _text(project(raw, 'brand'))
    item['price'] = price
    item['priceText'] = _raw_text(raw_price)
    item['originalPrice'] = original_price
    item['originalPriceText'] = _raw_text(raw_original)
    item['discountPct'] = compute_discount(price, original_price, raw_discount)
    item['discountText'] = _raw_text(raw_discount)
    item['rating'] = rating or None  # 0 means "not rated" on the catalog
    item['reviewCount'] = int(review_count) if review_count else 0
    item['imageUrl'] = absolute_url(project(raw, 'imageUrl'), base_url)
    item['productUrl'] = absolute_url(project(raw, 'productUrl'), base_url)
    item['inStock'] = in_stock is not False
    item['sellerName'] = _text(project(raw, 'sellerName'))
    item['location'] = _text(project(raw, 'location'))
    item['categoryName'] = _text(project(raw, 'categoryName'))
    item['scrapedAt'] = scraped_at
    item['source'] = source
    return item


def normalize_all(raw_items: Sequence[Mapping], source: str, base_url: Optional[str] = None,
                  scraped_at: Optional[str] = None):
    """Normalize a batch, dropping empty raw items."""
    records = []
    for raw in raw_items:
        record = normalize(raw, source, base_url=base_url, scraped_at=scraped_at)
        if record is not None:
            records.append(record)
    return records
