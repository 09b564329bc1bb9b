"""
Process-wide crawl state: deduplication, quota and escalation counters.

Every mutation goes through a CrawlState method holding the same lock, so an
admission decision and its effect on saved_count/seen_product_ids happen as
one step even when page callbacks run concurrently.
"""
import threading
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from catalog_crawler.items import ProductItem


ENGINE_LIGHT = 'light'
ENGINE_HEAVY = 'heavy'


def page_key(url: str, page_no: int) -> str:
    """Identity of a processed page (url + page number)."""
    return f'{url}|{page_no}'


@dataclass
class PageAdmission:
    """Outcome of admitting one page's candidate records."""
    admitted: List[ProductItem] = field(default_factory=list)
    duplicates: int = 0
    over_quota: int = 0

    @property
    def candidates(self) -> int:
        return len(self.admitted) + self.duplicates + self.over_quota

    @property
    def only_duplicates(self) -> bool:
        """True when every candidate was rejected by the identity check."""
        return self.candidates > 0 and self.duplicates == self.candidates


@dataclass
class UnresolvedPage:
    """A page the light engine fetched without extracting anything."""
    url: str
    page_no: int
    branch: str


class CrawlState:
    """
    Dedup and quota tracker shared by all page handlers of one crawl.

    max_products of 0 (or None) means unbounded.
    """

    def __init__(self, max_products: Optional[int] = None, active_engine: str = ENGINE_LIGHT):
        self.max_products = max_products or 0
        self.active_engine = active_engine
        self.saved_count = 0
        self.consecutive_failure_count = 0
        self.processed_page_keys = set()
        self.seen_product_ids = set()
        self.unresolved_pages: List[UnresolvedPage] = []
        self._lock = threading.Lock()

    @property
    def quota_reached(self) -> bool:
        with self._lock:
            return self._quota_reached()

    def _quota_reached(self) -> bool:
        return bool(self.max_products) and self.saved_count >= self.max_products

    def claim_page(self, key: str) -> bool:
        """Mark a page as processed. Returns False if it was already claimed."""
        with self._lock:
            if key in self.processed_page_keys:
                return False
            self.processed_page_keys.add(key)
            return True

    def is_processed(self, key: str) -> bool:
        with self._lock:
            return key in self.processed_page_keys

    def release_page(self, key: str) -> None:
        """Forget a processed page so it can be fetched again."""
        with self._lock:
            self.processed_page_keys.discard(key)

    def _admit(self, record: ProductItem) -> Optional[str]:
        # Returns the rejection reason, or None when admitted
        if self._quota_reached():
            return 'quota'
        product_id = record.get('productId')
        if product_id is not None:
            if product_id in self.seen_product_ids:
                return 'duplicate'
            self.seen_product_ids.add(product_id)
        self.saved_count += 1
        return None

    def admit(self, record: ProductItem) -> bool:
        """Admit a single record if quota remains and its identity is new."""
        with self._lock:
            return self._admit(record) is None

    def admit_page(self, records: Iterable[ProductItem]) -> PageAdmission:
        """Admit a page's records in order, as one atomic step."""
        result = PageAdmission()
        with self._lock:
            for record in records:
                reason = self._admit(record)
                if reason is None:
                    result.admitted.append(record)
                elif reason == 'duplicate':
                    result.duplicates += 1
                else:
                    result.over_quota += 1
        return result

    def record_extraction(self, extracted: int) -> int:
        """Update the consecutive empty-page counter and return it."""
        with self._lock:
            if extracted > 0:
                self.consecutive_failure_count = 0
            else:
                self.consecutive_failure_count += 1
            return self.consecutive_failure_count

    def add_unresolved(self, page: UnresolvedPage) -> None:
        with self._lock:
            self.unresolved_pages.append(page)

    def take_unresolved(self) -> List[UnresolvedPage]:
        """Remove and return the pages waiting for a heavier engine."""
        with self._lock:
            pages, self.unresolved_pages = self.unresolved_pages, []
            return pages

    def switch_engine(self, engine: str) -> bool:
        """Set the active engine. Returns False if it was already active."""
        with self._lock:
            if self.active_engine == engine:
                return False
            self.active_engine = engine
            return True

    def clear_identity(self) -> None:
        """Forget processed pages and seen products; configuration is kept."""
        with self._lock:
            self.processed_page_keys.clear()
            self.seen_product_ids.clear()
            self.unresolved_pages = []
            self.consecutive_failure_count = 0
