"""Documentation scraper for DocSage.

Fetches pages from an explicit URL list, extracts their text and stores each
one as a pending document. URLs already in the store are skipped, so
re-running a scrape is harmless.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional, Set

from indexer.document_store import DocumentStore
from observability.logging import log_performance
from services.shared.errors import DuplicateDocumentError
from services.shared.results import BatchResult, ScrapeResult
from .extractor import extract
from .fetcher import Fetcher
from .security import validate_url

logger = logging.getLogger(__name__)


@dataclass
class ScrapeStats:
    """Timing for a scrape session."""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def __post_init__(self):
        if self.start_time is None:
            self.start_time = datetime.now(timezone.utc)

    def finish(self):
        self.end_time = datetime.now(timezone.utc)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.end_time and self.start_time:
            return (self.end_time - self.start_time).total_seconds()
        return None


class DocumentScraper:
    """Sequential scraper writing pending documents to the store."""

    def __init__(self, fetcher: Fetcher, store: DocumentStore, delay: float = 2.0,
                 browser_urls: Optional[Iterable[str]] = None):
        """Initialize scraper.

        Args:
            fetcher: Page fetcher
            store: Document store receiving new documents
            delay: Seconds to wait between URLs in a batch
            browser_urls: URLs that always need browser rendering
        """
        self.fetcher = fetcher
        self.store = store
        self.delay = delay
        self.browser_urls: Set[str] = set(browser_urls or ())

    async def scrape_url(self, url: str, use_browser: bool = False) -> ScrapeResult:
        """Fetch, extract and store one page.

        Raises:
            ValidationError: If the URL is malformed
            FetchError: If the page could not be fetched
        """
        url = validate_url(url)
        if await self.store.url_exists(url):
            logger.info(f"Already scraped, skipping: {url}")
            return ScrapeResult(url=url, document_id=None, skipped=True)

        fetched = await self.fetcher.fetch(url, use_browser=use_browser or url in self.browser_urls)
        page = extract(fetched.html, url)
        if not page.text:
            logger.warning(f"No text extracted from {url}")

        try:
            document = await self.store.create_document(
                url=url,
                title=page.title,
                raw_content=fetched.html,
                cleaned_content=page.text,
                word_count=page.word_count,
                metadata={"fetch_method": fetched.method, "status_code": fetched.status_code}
            )
        except DuplicateDocumentError:
            logger.info(f"Document for {url} was stored concurrently, skipping")
            return ScrapeResult(url=url, document_id=None, skipped=True)

        logger.info(f"Scraped {url}: '{page.title}' ({page.word_count} words, {fetched.method})")
        return ScrapeResult(
            url=url,
            document_id=document.id,
            title=page.title,
            word_count=page.word_count,
            method=fetched.method
        )

    @log_performance(threshold_ms=300000)
    async def scrape_urls(self, urls: Iterable[str], use_browser: bool = False,
                          cancel_event: Optional[asyncio.Event] = None) -> BatchResult:
        """Scrape URLs one at a time in the given order.

        Per-URL failures are recorded in the result and do not stop the run.
        """
        urls = list(urls)
        result = BatchResult()
        stats = ScrapeStats()
        logger.info(f"Starting scrape of {len(urls)} URLs")

        for position, url in enumerate(urls):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Scrape cancelled")
                result.cancelled = True
                break

            try:
                outcome = await self.scrape_url(url, use_browser=use_browser)
            except Exception as e:
                logger.error(f"Failed to scrape {url}: {e}")
                result.record_failure(url, e)
                outcome = None

            if outcome is not None:
                if outcome.skipped:
                    result.skipped.append(outcome)
                    continue
                result.successful.append(outcome)

            if position < len(urls) - 1 and self.delay > 0:
                await asyncio.sleep(self.delay)

        stats.finish()
        logger.info(
            f"Scrape completed in {stats.duration_seconds:.1f}s: {result.success_count} stored, "
            f"{result.failure_count} failed, {len(result.skipped)} skipped"
        )
        return result
