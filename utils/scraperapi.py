import httpx
import time
import logging
from typing import Optional
from tenacity import retry, retry_if_exception_type, stop_after_attempt, stop_after_delay, wait_random

from config import settings
from exceptions import ProviderNotConfiguredError, ProviderResponseError

logger = logging.getLogger(__name__)

SCRAPERAPI_URL = "http://api.scraperapi.com/"

class ScraperAPIClient:
    name = "scraperapi"

    def __init__(self, api_key: Optional[str] = None, timeout: Optional[float] = None):
        self.api_key = api_key
        self.timeout = timeout

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        # a retry must still finish inside the host request ceiling
        stop=stop_after_attempt(2) | stop_after_delay(settings.provider_retry_window),
        wait=wait_random(1, 3),
        reraise=True,
    )
    def fetch_html(self, url: str) -> str:
        """Fetch rendered HTML for a listing page through ScraperAPI"""
        api_key = self.api_key or settings.scraperapi_key
        if not api_key:
            raise ProviderNotConfiguredError("SCRAPERAPI_KEY is not configured")

        logger.info(f"[ScraperAPI] Scraping URL: {url}")
        start = time.time()

        response = httpx.get(
            SCRAPERAPI_URL,
            params={"api_key": api_key, "url": url},
            timeout=self.timeout or settings.provider_timeout,
        )
        if response.status_code != 200:
            raise ProviderResponseError(self.name, response.status_code, response.reason_phrase)

        logger.info(f"[ScraperAPI] Fetched {len(response.text)} chars in {time.time() - start:.2f}s")
        return response.text

# Global instance
scraperapi_client = ScraperAPIClient()
