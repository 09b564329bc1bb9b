"""
Unit tests for the extraction strategies and the strategy chain.
"""
import json
import logging

import pytest

from catalog_crawler.strategies import (
    ApiResponse, ApiStrategy, EmbeddedDataStrategy, MarkupStrategy, PageContext,
    default_strategies, find_product_list, find_total_pages, run_strategies,
)


PAGE_URL = 'https://site.test/cat/?q=shoes'


def api_context(body, status=200, html=''):
    if not isinstance(body, str):
        body = json.dumps(body)
    return PageContext(url=PAGE_URL, page_no=2, html=html,
                       api_response=ApiResponse(status=status, text=body))


MARKUP_PAGE = """
<html><body>
<div data-qa-locator="product-item" data-item-id="111">
  <a href="/products/red-shoe-i111-s1.html" title="Red Shoe">
    <img src="data:image/png;base64,AAA" data-src="//static.site.test/red.jpg" alt="Red">
  </a>
  <span class="currency--GmTeX price--NVB62">Rs. 1,250</span>
  <del class="origPrice--AJxRs">Rs. 2,500</del>
  <span class="discount--HADrg">-50%</span>
  <span class="rating--ZI3Ol">4.5</span>
  <span class="review--O7jfc">(37)</span>
  <span class="location--eh0Ro">Sindh</span>
</div>
<div data-qa-locator="product-item">
  <a href="/products/blue-shoe-i222-s5.html">Blue Shoe</a>
  <span class="price--NVB62">Rs. 900</span>
  <span class="soldOut--x1">Sold out</span>
</div>
<div data-qa-locator="product-item">
  <span class="price--NVB62">Rs. 100</span>
</div>
</body></html>
"""


class TestApiStrategy:

    def test_query_url_and_headers(self):
        strategy = ApiStrategy(user_agents=['UA-1'])

        url = strategy.api_url(PAGE_URL, 3)
        headers = strategy.headers(PAGE_URL)

        assert url == 'https://site.test/cat/?q=shoes&page=3&ajax=true'
        assert headers['User-Agent'] == 'UA-1'
        assert headers['Referer'] == PAGE_URL
        assert headers['Origin'] == 'https://site.test'
        assert headers['X-Requested-With'] == 'XMLHttpRequest'
        assert 'application/json' in headers['Accept']

    def test_existing_page_parameter_is_replaced(self):
        url = ApiStrategy().api_url('https://site.test/cat/?page=1&sort=priceasc', 2)

        assert url == 'https://site.test/cat/?page=2&sort=priceasc&ajax=true'

    def test_list_items_and_total_pages(self, api_payload):
        result = ApiStrategy().attempt(api_context(api_payload([1, 2, 3], page_total=7)))

        assert result.matched is True
        assert result.succeeded is True
        assert [item['itemId'] for item in result.items] == ['1', '2', '3']
        assert result.total_pages == 7
        assert result.source == 'api'

    @pytest.mark.parametrize('payload', [
        {'data': {'mods': {'listItems': [{'itemId': '9'}]}}},
        {'listItems': [{'itemId': '9'}]},
        {'data': {'products': [{'itemId': '9'}]}},
        {'mods': {'listItems': []}, 'products': [{'itemId': '9'}]},
    ])
    def test_alternate_key_paths(self, payload):
        result = ApiStrategy().attempt(api_context(payload))

        assert [item['itemId'] for item in result.items] == ['9']

    def test_http_error_is_not_a_match(self, api_payload):
        result = ApiStrategy().attempt(api_context(api_payload([1]), status=429))

        assert result.matched is False
        assert result.items == []

    def test_non_json_body_is_not_a_match(self):
        result = ApiStrategy().attempt(api_context('<html>captcha</html>'))

        assert result.matched is False

    def test_non_json_body_logs_content_type(self, caplog):
        context = PageContext(url=PAGE_URL, page_no=2, api_response=ApiResponse(
            status=200, text='<html>captcha</html>', content_type='text/html; charset=utf-8'))

        with caplog.at_level(logging.INFO, logger='catalog_crawler.strategies'):
            ApiStrategy().attempt(context)

        assert 'non-JSON body (text/html; charset=utf-8) for page 2' in caplog.text

    def test_missing_response_is_not_a_match(self):
        result = ApiStrategy().attempt(PageContext(url=PAGE_URL))

        assert result.matched is False

    def test_empty_list_is_matched_but_empty(self):
        result = ApiStrategy().attempt(api_context({'mods': {'listItems': []}}))

        assert result.matched is True
        assert result.items == []
        assert result.succeeded is False

    def test_unknown_shape_is_not_a_match(self):
        result = ApiStrategy().attempt(api_context({'status': 'ok'}))

        assert result.matched is False


def test_total_pages_from_result_count():
    assert find_total_pages({'mainInfo': {'totalResults': '101', 'pageSize': '40'}}) == 3
    assert find_total_pages({'data': {'mainInfo': {'pageTotal': 4}}}) == 4
    assert find_total_pages({'mainInfo': {}}) is None


def test_find_product_list_skips_non_objects():
    found, items = find_product_list({'listItems': ['x', {'itemId': '1'}]})

    assert found is True
    assert items == [{'itemId': '1'}]


class TestEmbeddedDataStrategy:

    def test_page_data_assignment(self, api_payload):
        html = (
            '<html><head><script>var a = 1;\n'
            f'window.pageData = {json.dumps(api_payload([5, 6], page_total=2))};\n'
            'console.log("ready");</script></head></html>'
        )

        result = EmbeddedDataStrategy().attempt(PageContext(url=PAGE_URL, html=html))

        assert result.matched is True
        assert [item['itemId'] for item in result.items] == ['5', '6']
        assert result.total_pages == 2
        assert result.source == 'embedded'

    def test_all_patterns_are_concatenated(self, api_payload):
        html = (
            f'<script>window.pageData = {json.dumps(api_payload([1]))};</script>'
            f'<script>app.run({json.dumps(api_payload([2]))});</script>'
        )

        result = EmbeddedDataStrategy().attempt(PageContext(url=PAGE_URL, html=html))

        assert [item['itemId'] for item in result.items] == ['1', '2']

    def test_broken_pattern_does_not_block_others(self, api_payload):
        html = (
            '<script>window.pageData = {"mods": {"listItems": [oops</script>'
            f'<script>window.__moduleData__ = {json.dumps(api_payload([3]))}</script>'
        )

        result = EmbeddedDataStrategy().attempt(PageContext(url=PAGE_URL, html=html))

        assert [item['itemId'] for item in result.items] == ['3']

    def test_item_list_metadata(self):
        ld = {
            '@context': 'https://schema.org',
            '@type': 'ItemList',
            'itemListElement': [
                {'@type': 'ListItem', 'position': 1,
                 'item': {'@type': 'Product', 'name': 'A', 'url': '/products/a-i1.html'}},
                {'@type': 'ListItem', 'position': 2, 'url': '/products/b-i2.html', 'name': 'B'},
            ],
        }
        html = f'<script type="application/ld+json">{json.dumps(ld)}</script>'

        result = EmbeddedDataStrategy().attempt(PageContext(url=PAGE_URL, html=html))

        assert result.matched is True
        assert [item['name'] for item in result.items] == ['A', 'B']

    def test_other_json_ld_types_are_ignored(self):
        html = '<script type="application/ld+json">{"@type": "BreadcrumbList"}</script>'

        result = EmbeddedDataStrategy().attempt(PageContext(url=PAGE_URL, html=html))

        assert result.matched is False

    def test_rendered_client_state(self, api_payload):
        context = PageContext(url=PAGE_URL, html='<html></html>', engine='heavy',
                              client_state=api_payload([8]))

        result = EmbeddedDataStrategy().attempt(context)

        assert [item['itemId'] for item in result.items] == ['8']

    def test_plain_page_is_not_a_match(self):
        result = EmbeddedDataStrategy().attempt(PageContext(url=PAGE_URL, html='<p>hi</p>'))

        assert result.matched is False


class TestMarkupStrategy:

    def test_cards(self):
        result = MarkupStrategy().attempt(PageContext(url=PAGE_URL, html=MARKUP_PAGE))

        assert result.matched is True
        assert result.source == 'html'
        # The third card has no detail link
        assert len(result.items) == 2

        first, second = result.items
        assert first['productId'] == '111'
        assert first['title'] == 'Red Shoe'
        assert first['price'] == 'Rs. 1,250'
        assert first['originalPrice'] == 'Rs. 2,500'
        assert first['discount'] == '-50%'
        assert first['rating'] == '4.5'
        assert first['reviewCount'] == '(37)'
        assert first['image'] == '//static.site.test/red.jpg'
        assert first['productUrl'] == '/products/red-shoe-i111-s1.html'
        assert first['location'] == 'Sindh'
        assert 'inStock' not in first

        assert second['productId'] == '222'
        assert second['title'] == 'Blue Shoe'
        assert second['inStock'] is False

    def test_fallback_card_selector(self):
        html = '<div class="product-card"><a href="/products/x-i7.html">X</a></div>'

        result = MarkupStrategy().attempt(PageContext(url=PAGE_URL, html=html))

        assert [item['productId'] for item in result.items] == ['7']

    def test_no_cards(self):
        result = MarkupStrategy().attempt(PageContext(url=PAGE_URL, html='<div>nothing</div>'))

        assert result.matched is False


class TestStrategyChain:

    def test_api_wins_when_it_has_items(self, api_payload):
        outcome = run_strategies(default_strategies(), api_context(api_payload([1]), html=MARKUP_PAGE))

        assert outcome.winner.source == 'api'
        assert list(outcome.attempts) == ['api']

    def test_falls_through_to_markup(self):
        outcome = run_strategies(default_strategies(), api_context('not json', html=MARKUP_PAGE))

        assert outcome.winner.source == 'html'
        assert outcome.result_for('api').matched is False
        assert outcome.result_for('embedded').matched is False
        assert len(outcome.items) == 2

    def test_empty_api_list_falls_through(self, api_payload):
        html = f'<script>window.pageData = {json.dumps(api_payload([4]))};</script>'

        outcome = run_strategies(default_strategies(), api_context({'mods': {'listItems': []}}, html=html))

        assert outcome.winner.source == 'embedded'
        assert outcome.result_for('api').matched is True

    def test_nothing_found(self):
        outcome = run_strategies(default_strategies(), api_context('', status=403, html='<p></p>'))

        assert outcome.winner is None
        assert outcome.items == []
        assert set(outcome.attempts) == {'api', 'embedded', 'markup'}

    def test_winner_is_logged_with_engine(self, api_payload, caplog):
        context = api_context(api_payload([1, 2]))
        context.engine = 'heavy'

        with caplog.at_level(logging.INFO, logger='catalog_crawler.strategies'):
            run_strategies(default_strategies(), context)

        assert 'api strategy found 2 products on https://site.test/cat/?q=shoes (heavy engine)' in caplog.text
