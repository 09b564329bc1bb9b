"""
Scrapy items for normalized catalog data.
"""
import scrapy


# Strategy tags allowed in ProductItem.source (diagnostics only)
SOURCE_API = 'api'
SOURCE_EMBEDDED = 'embedded'
SOURCE_HTML = 'html'
SOURCE_TAGS = (SOURCE_API, SOURCE_EMBEDDED, SOURCE_HTML)


class ProductItem(scrapy.Item):
    """Normalized product listing (one per catalog product)."""
    productId = scrapy.Field()  # Canonical identity, None when unrecoverable
    title = scrapy.Field()
    brand = scrapy.Field()
    price = scrapy.Field()  # Numeric, PKR
    priceText = scrapy.Field()  # Raw text kept for audit
    originalPrice = scrapy.Field()
    originalPriceText = scrapy.Field()
    discountPct = scrapy.Field()  # Derived from prices when both are known
    discountText = scrapy.Field()
    rating = scrapy.Field()
    reviewCount = scrapy.Field()  # Defaults to 0
    imageUrl = scrapy.Field()  # Absolute
    productUrl = scrapy.Field()  # Absolute
    inStock = scrapy.Field()
    sellerName = scrapy.Field()
    location = scrapy.Field()
    categoryName = scrapy.Field()
    scrapedAt = scrapy.Field()  # ISO timestamp of page capture
    source = scrapy.Field()  # One of SOURCE_TAGS
