"""
Tests for the Postgres product sink, with psycopg2 replaced by mocks.
"""
import hashlib
from unittest.mock import MagicMock

import psycopg2
import pytest
from psycopg2.extras import Json

from catalog_crawler import pipelines
from catalog_crawler.items import ProductItem
from catalog_crawler.pipelines import PostgresPipeline, product_key


def make_item(**fields):
    item = ProductItem()
    item['productId'] = '123'
    item['title'] = 'Lamp'
    item['productUrl'] = 'https://site.test/products/lamp-i123.html'
    item['source'] = 'api'
    for key, value in fields.items():
        item[key] = value
    return item


@pytest.fixture
def connection(monkeypatch):
    conn = MagicMock()
    connect = MagicMock(return_value=conn)
    monkeypatch.setattr(pipelines.psycopg2, 'connect', connect)
    conn.connect_mock = connect
    return conn


def make_pipeline(**settings):
    crawler = MagicMock()
    crawler.settings = {'DATABASE_URL': 'postgresql://crawler@db.test/catalog', **settings}
    return PostgresPipeline.from_crawler(crawler)


def test_product_key_prefers_product_id():
    assert product_key({'productId': '123', 'productUrl': 'https://site.test/p'}) == '123'


def test_product_key_falls_back_to_url_hash():
    url = 'https://site.test/p'

    assert product_key({'productId': None, 'productUrl': url}) == (
        'url:' + hashlib.sha256(url.encode()).hexdigest()
    )


def test_upserts_product(connection):
    pipeline = make_pipeline(DATASET_ID='shoes')
    item = make_item()

    assert pipeline.process_item(item) is item

    connection.connect_mock.assert_called_once_with('postgresql://crawler@db.test/catalog')
    cursor = connection.cursor.return_value.__enter__.return_value
    sql, params = cursor.execute.call_args.args
    assert 'ON CONFLICT (dataset_id, product_key)' in sql
    assert params[:4] == ('shoes', '123', 'api', 'https://site.test/products/lamp-i123.html')
    assert isinstance(params[4], Json)
    assert params[4].adapted['title'] == 'Lamp'
    connection.commit.assert_called_once()
    assert pipeline.items_count == 1


def test_dataset_defaults(connection, monkeypatch):
    monkeypatch.delenv('DATASET_ID', raising=False)
    pipeline = make_pipeline()

    pipeline.process_item(make_item())

    assert pipeline.dataset_id == 'default'


def test_database_error_rolls_back_and_propagates(connection):
    cursor = connection.cursor.return_value.__enter__.return_value
    cursor.execute.side_effect = psycopg2.OperationalError('connection lost')
    pipeline = make_pipeline()

    with pytest.raises(psycopg2.OperationalError):
        pipeline.process_item(make_item())

    connection.rollback.assert_called_once()
    connection.commit.assert_not_called()
    assert pipeline.items_count == 0


def test_missing_database_url(monkeypatch):
    monkeypatch.delenv('DATABASE_URL', raising=False)
    pipeline = make_pipeline(DATABASE_URL=None)

    with pytest.raises(ValueError):
        pipeline.open_spider()


def test_close_spider_closes_connection(connection):
    pipeline = make_pipeline()
    pipeline.open_spider()

    pipeline.close_spider()

    connection.close.assert_called_once()
    assert pipeline.conn is None
