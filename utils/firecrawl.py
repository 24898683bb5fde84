import httpx
import time
import logging
from typing import Optional
from tenacity import retry, retry_if_exception_type, stop_after_attempt, stop_after_delay, wait_random

from config import settings
from exceptions import ProviderNotConfiguredError, ProviderResponseError, ScrapeError

logger = logging.getLogger(__name__)

class FirecrawlClient:
    name = "firecrawl"

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        # a retry must still finish inside the host request ceiling
        stop=stop_after_attempt(2) | stop_after_delay(settings.provider_retry_window),
        wait=wait_random(1, 3),
        reraise=True,
    )
    def fetch_html(self, url: str) -> str:
        """Scrape a page with Firecrawl and return its HTML"""
        api_key = self.api_key or settings.firecrawl_api_key
        if not api_key:
            raise ProviderNotConfiguredError("FIRECRAWL_API_KEY is not configured")

        timeout = self.timeout or settings.provider_timeout
        endpoint = f"{(self.base_url or settings.firecrawl_api_url).rstrip('/')}/v1/scrape"

        logger.info(f"[Firecrawl] Scraping URL: {url}")
        start = time.time()

        response = httpx.post(
            endpoint,
            json={
                "url": url,
                "formats": ["html"],
                "onlyMainContent": False,
                "timeout": int(timeout * 1000),
            },
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
        )
        if response.status_code != 200:
            raise ProviderResponseError(self.name, response.status_code, response.reason_phrase)

        payload = response.json()
        if not payload.get("success"):
            raise ScrapeError(f"Firecrawl error: {payload.get('error') or 'Unknown error'}")

        html = (payload.get("data") or {}).get("html")
        if not html:
            raise ScrapeError("Firecrawl returned no HTML")

        logger.info(f"[Firecrawl] Fetched {len(html)} chars in {time.time() - start:.2f}s")
        return html

# Global instance
firecrawl_client = FirecrawlClient()
