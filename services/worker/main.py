"""
Entry point: run one catalog crawl from an input JSON file.

    python main.py input.json

The input path can also come from CRAWL_INPUT. Products are written as JSON
lines to CRAWL_OUTPUT (default products.jsonl) and, when DATABASE_URL is set,
upserted into Postgres.
"""
import json
import os
import sys

from dotenv import load_dotenv
from scrapy.crawler import CrawlerProcess
from scrapy.utils.project import get_project_settings

# Add the worker directory to Python path so Scrapy can find the project
worker_dir = os.path.dirname(os.path.abspath(__file__))
if worker_dir not in sys.path:
    sys.path.insert(0, worker_dir)

from catalog_crawler.config import ConfigurationError, CrawlInput
from catalog_crawler.spiders.catalog_spider import CatalogSpider

# Load environment variables
load_dotenv()


def load_input(path=None):
    """Read the crawl input JSON (empty input when no path is given)."""
    path = path or os.getenv('CRAWL_INPUT')
    if not path:
        return {}
    with open(path, encoding='utf-8') as f:
        return json.load(f)


def build_settings(output_path):
    """Project settings plus the sinks for this run."""
    os.environ.setdefault('SCRAPY_SETTINGS_MODULE', 'catalog_crawler.settings')
    settings = get_project_settings()
    settings.set('FEEDS', {
        output_path: {'format': 'jsonlines', 'encoding': 'utf-8'},
    })

    database_url = os.getenv('DATABASE_URL')
    if database_url:
        settings.set('DATABASE_URL', database_url)
        settings.set('DATASET_ID', os.getenv('DATASET_ID', 'default'))
        settings.set('ITEM_PIPELINES', {
            'catalog_crawler.pipelines.PostgresPipeline': 300,
        })
    return settings


def run_crawl(raw_input, output_path='products.jsonl'):
    """
    Run one crawl and return the number of products saved.

    Raises ConfigurationError before anything is fetched when the input
    yields no usable start URL.
    """
    crawl_input = CrawlInput.from_dict(raw_input)
    seeds = crawl_input.seed_urls()
    print(f'Starting crawl of {len(seeds)} seed URL(s), output: {output_path}')

    process = CrawlerProcess(build_settings(output_path))
    crawler = process.create_crawler(CatalogSpider)
    process.crawl(crawler, crawl_input=crawl_input)
    process.start()

    saved = crawler.spider.state.saved_count if crawler.spider else 0
    print(f'Scraping completed. Total products saved: {saved}')
    return saved


def main():
    try:
        raw_input = load_input(sys.argv[1] if len(sys.argv) > 1 else None)
        run_crawl(raw_input, os.getenv('CRAWL_OUTPUT', 'products.jsonl'))
    except (ConfigurationError, OSError, ValueError) as e:
        print(f'Fatal error: {e}')
        sys.exit(1)


if __name__ == '__main__':
    try:
        main()
    except KeyboardInterrupt:
        print('\nCrawl stopped by user')
        sys.exit(0)
