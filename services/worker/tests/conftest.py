"""
Shared fixtures: catalog payloads and Scrapy response builders.
"""
import json

import pytest
from scrapy.http import HtmlResponse, Request, TextResponse


CATEGORY_URL = 'https://site.test/cat/'


def make_api_item(item_id, **overrides):
    """A listing item shaped like the catalog API's mods.listItems entries."""
    item = {
        'itemId': str(item_id),
        'name': f'Product {item_id}',
        'brandName': 'Acme',
        'price': '1250.00',
        'priceShow': 'Rs. 1,250',
        'originalPrice': '2500.00',
        'discount': '-50%',
        'ratingScore': '4.5',
        'review': '12',
        'image': '//static-01.site.test/p/img.jpg',
        'productUrl': f'//site.test/products/product-{item_id}-i{item_id}-s1.html',
        'inStock': True,
        'sellerName': 'Acme Store',
        'location': 'Punjab',
        'categoryName': 'Shoes',
    }
    item.update(overrides)
    return item


def make_api_payload(item_ids, page_total=None):
    payload = {'mods': {'listItems': [make_api_item(item_id) for item_id in item_ids]}}
    if page_total is not None:
        payload['mainInfo'] = {'pageTotal': page_total}
    return payload


@pytest.fixture
def api_item():
    return make_api_item


@pytest.fixture
def api_payload():
    return make_api_payload


@pytest.fixture
def page_response():
    """Build a listing page response as the downloader would hand it over."""
    def build(url=CATEGORY_URL, html='<html><body></body></html>', page_no=1, **meta):
        meta.setdefault('branch', url)
        request = Request(url, meta={'page_no': page_no, **meta})
        return HtmlResponse(url, body=html.encode('utf-8'), encoding='utf-8', request=request)
    return build


@pytest.fixture
def run_page():
    """
    Drive one page through the spider: parse() then parse_api() with the
    given API body. Returns everything parse_api yielded.
    """
    def run(spider, page, api_body, status=200, content_type='application/json'):
        requests = list(spider.parse(page))
        assert len(requests) == 1
        api_request = requests[0]
        if not isinstance(api_body, str):
            api_body = json.dumps(api_body)
        api_response = TextResponse(
            api_request.url,
            status=status,
            body=api_body.encode('utf-8'),
            encoding='utf-8',
            headers={'Content-Type': content_type},
            request=api_request,
        )
        return list(spider.parse_api(api_response, **api_request.cb_kwargs))
    return run
