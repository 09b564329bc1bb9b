"""
Light -> heavy engine escalation.

Two states (light, heavy) and three triggers:
- mid-crawl: FAILURE_THRESHOLD consecutive pages with nothing extracted while
  light; the crawl keeps going and later pages are rendered;
- restart: the light crawl finished with nothing saved; identity state is
  cleared and the seed frontier is run again rendered;
- usePlaywright: the crawl starts heavy.
There is no transition back to light.
"""
import logging

from catalog_crawler.state import CrawlState, ENGINE_HEAVY, ENGINE_LIGHT


logger = logging.getLogger(__name__)

FAILURE_THRESHOLD = 3


class EscalationController:
    """Engine tier state machine over a CrawlState."""

    def __init__(self, state: CrawlState, threshold: int = FAILURE_THRESHOLD):
        self.state = state
        self.threshold = threshold

    @property
    def engine(self) -> str:
        return self.state.active_engine

    @property
    def escalated(self) -> bool:
        return self.state.active_engine == ENGINE_HEAVY

    def record_page(self, extracted: int) -> bool:
        """
        Feed one page's extraction count.

        Returns True when this page caused the switch to the heavy engine.
        """
        failures = self.state.record_extraction(extracted)
        if extracted > 0 or self.escalated:
            return False
        if failures >= self.threshold and self.state.switch_engine(ENGINE_HEAVY):
            logger.warning(
                f'{failures} consecutive pages without products, '
                f'switching from {ENGINE_LIGHT} to {ENGINE_HEAVY} engine'
            )
            return True
        return False

    def should_restart(self) -> bool:
        """True when a finished light crawl saved nothing."""
        return not self.escalated and self.state.saved_count == 0

    def restart(self) -> None:
        """Enter the heavy state for a full re-run, clearing page/product identity."""
        if self.escalated:
            raise RuntimeError('Crawl already runs on the heavy engine')
        self.state.clear_identity()
        self.state.switch_engine(ENGINE_HEAVY)
        logger.warning(f'Light crawl saved no products, restarting seeds on {ENGINE_HEAVY} engine')
