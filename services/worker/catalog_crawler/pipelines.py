"""
Scrapy pipelines for persisting products.
"""
import hashlib
import os

import psycopg2
from itemadapter import ItemAdapter
from psycopg2.extras import Json
from scrapy.utils.project import get_project_settings


def product_key(item):
    """Stable row key: the product id, else a hash of the product URL."""
    product_id = item.get('productId')
    if product_id:
        return str(product_id)
    url = item.get('productUrl') or ''
    return 'url:' + hashlib.sha256(url.encode()).hexdigest()


class PostgresPipeline:
    """
    Pipeline that upserts products into Postgres.
    Uses INSERT ... ON CONFLICT (dataset_id, product_key) DO UPDATE.
    """

    def __init__(self, crawler=None):
        self.crawler = crawler
        self.settings = None
        self.dataset_id = None
        self.database_url = None
        self.conn = None
        self.items_count = 0

    @classmethod
    def from_crawler(cls, crawler):
        """Create pipeline instance from crawler (Scrapy's standard way)."""
        return cls(crawler)

    def _get_settings(self):
        """Lazy load settings when needed."""
        if self.settings is None:
            if self.crawler:
                self.settings = self.crawler.settings
            else:
                self.settings = get_project_settings()
            self.dataset_id = self.settings.get('DATASET_ID') or os.environ.get('DATASET_ID') or 'default'
            self.database_url = self.settings.get('DATABASE_URL') or os.environ.get('DATABASE_URL')

    def open_spider(self, spider=None):
        """Open database connection when spider starts."""
        self._get_settings()
        if not self.database_url:
            raise ValueError('DATABASE_URL not set in settings')
        self.conn = psycopg2.connect(self.database_url)
        if spider:
            spider.logger.info(f'PostgresPipeline: Connected to database for dataset {self.dataset_id}')

    def close_spider(self, spider=None):
        """Close database connection when spider finishes."""
        if self.conn:
            self.conn.close()
            self.conn = None
        if spider:
            spider.logger.info(f'PostgresPipeline: Processed {self.items_count} items')

    def process_item(self, item, spider=None):
        """Upsert one product."""
        if not self.conn:
            self.open_spider(spider)

        data = ItemAdapter(item).asdict()
        url = data.get('productUrl')
        key = product_key(data)

        try:
            with self.conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO products (
                        dataset_id, product_key, source, url, data
                    )
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (dataset_id, product_key)
                    DO UPDATE SET
                        observed_at = now(),
                        source = EXCLUDED.source,
                        url = EXCLUDED.url,
                        data = EXCLUDED.data
                    """,
                    (
                        self.dataset_id,
                        key,
                        data.get('source'),
                        url,
                        Json(data),
                    )
                )
            self.conn.commit()
        except psycopg2.Error as e:
            # Rollback so the connection stays usable, then let Scrapy log the failure
            self.conn.rollback()
            if spider:
                spider.logger.error(f'Error upserting product {key}: {e}')
            raise

        self.items_count += 1
        if self.items_count % 10 == 0 and spider:
            spider.logger.info(f'PostgresPipeline: Processed {self.items_count} items so far')
        return item
