import json
from unittest.mock import Mock, patch

import httpx
from tenacity import wait_none
import pytest

from config import Settings, settings
from exceptions import ProviderNotConfiguredError, ProviderResponseError, ScrapeError, UnsupportedUrlError
from scrape_executor import extract_property_data, scrape_listing, select_provider
from utils.firecrawl import FirecrawlClient
from utils.scraperapi import ScraperAPIClient

JSON_LD_PAGE = """
<html><head>
<title>Ignored title</title>
<script type="application/ld+json">{}</script>
</head><body></body></html>
""".format(json.dumps({
    "@context": "https://schema.org",
    "@graph": [
        {"@type": "BreadcrumbList", "name": "crumbs"},
        {
            "@type": ["RealEstateListing"],
            "name": "Sunny 3 bed house",
            "description": "Close to the park",
            "image": ["https://img.example.com/1.jpg", {"url": "https://img.example.com/2.jpg"}],
            "offers": {
                "@type": "Offer",
                "price": "$1,250,000",
                "priceCurrency": "USD",
                "itemOffered": {
                    "@type": "SingleFamilyResidence",
                    "address": {
                        "streetAddress": "12 Main St",
                        "addressLocality": "Springfield",
                        "addressRegion": "IL",
                        "postalCode": "62701",
                    },
                    "numberOfBedrooms": 3,
                    "numberOfBathroomsTotal": "2.5",
                    "floorSize": {"value": "1,800", "unitCode": "FTK"},
                },
            },
        },
    ],
}))

OPEN_GRAPH_PAGE = """
<html><head>
<meta property="og:title" content="Flat in the centre">
<meta property="og:description" content="Two rooms">
<meta property="og:image" content="https://img.example.com/a.jpg">
<meta property="og:image" content="https://img.example.com/b.jpg">
<meta property="product:price:amount" content="320000">
<meta property="product:price:currency" content="EUR">
<script type="application/ld+json">not json</script>
</head></html>
"""


class TestExtraction:

    def test_json_ld_listing(self):
        data = extract_property_data(JSON_LD_PAGE, "https://example.com/listing/1", "scraperapi")

        assert data.title == "Sunny 3 bed house"
        assert data.description == "Close to the park"
        assert data.price == 1250000.0
        assert data.currency == "USD"
        assert data.address == "12 Main St, Springfield, IL, 62701"
        assert data.bedrooms == 3
        assert data.bathrooms == 2.5
        assert data.area == 1800.0
        assert data.images == ["https://img.example.com/1.jpg", "https://img.example.com/2.jpg"]
        assert data.provider == "scraperapi"

    def test_open_graph_fallback(self):
        data = extract_property_data(OPEN_GRAPH_PAGE, "https://example.com/listing/2", "firecrawl")

        assert data.title == "Flat in the centre"
        assert data.description == "Two rooms"
        assert data.price == 320000.0
        assert data.currency == "EUR"
        assert data.images == ["https://img.example.com/a.jpg", "https://img.example.com/b.jpg"]

    def test_title_tag_fallback(self):
        data = extract_property_data("<html><head><title> Listing 7 </title></head></html>",
                                     "https://example.com/7", "scraperapi")
        assert data.title == "Listing 7"

    def test_page_without_listing_data(self):
        with pytest.raises(ScrapeError, match="No listing data found"):
            extract_property_data("<html><body><p>Access denied</p></body></html>",
                                  "https://example.com/x", "scraperapi")


class TestProviderRouting:

    def test_site_specific_provider(self):
        assert select_provider("https://www.zillow.com/homedetails/1") == "firecrawl"
        assert select_provider("https://zillow.com/homedetails/1") == "firecrawl"

    def test_general_provider(self):
        assert select_provider("https://example.com/listing/1") == "scraperapi"

    def test_suffix_match_requires_label_boundary(self):
        assert select_provider("https://notzillow.com/listing/1") == "scraperapi"

    @pytest.mark.parametrize("url", ["ftp://example.com/file", "example.com/listing", "https://"])
    def test_unsupported_url(self, url):
        with pytest.raises(UnsupportedUrlError):
            scrape_listing(url)

    def test_scrape_listing_uses_selected_provider(self):
        client = Mock()
        client.fetch_html.return_value = OPEN_GRAPH_PAGE

        with patch.dict("scrape_executor.PROVIDERS", {"scraperapi": client}):
            data = scrape_listing("https://example.com/listing/2")

        client.fetch_html.assert_called_once_with("https://example.com/listing/2")
        assert data.provider == "scraperapi"
        assert data.title == "Flat in the centre"


class TestProviders:

    def test_scraperapi_requires_key(self, monkeypatch):
        monkeypatch.setattr("utils.scraperapi.settings.scraperapi_key", None)
        with pytest.raises(ProviderNotConfiguredError):
            ScraperAPIClient().fetch_html("https://example.com/listing/1")

    @patch("utils.scraperapi.httpx.get")
    def test_scraperapi_fetch(self, mock_get):
        mock_get.return_value = httpx.Response(200, text="<html></html>")

        html = ScraperAPIClient(api_key="key").fetch_html("https://example.com/listing/1")

        assert html == "<html></html>"
        params = mock_get.call_args.kwargs["params"]
        assert params == {"api_key": "key", "url": "https://example.com/listing/1"}

    @patch("utils.scraperapi.httpx.get")
    def test_scraperapi_error_status(self, mock_get):
        mock_get.return_value = httpx.Response(403, text="blocked")

        with pytest.raises(ProviderResponseError) as exc_info:
            ScraperAPIClient(api_key="key").fetch_html("https://example.com/listing/1")

        assert exc_info.value.status_code == 403

    @patch("utils.firecrawl.httpx.post")
    def test_firecrawl_fetch(self, mock_post):
        mock_post.return_value = httpx.Response(200, json={"success": True, "data": {"html": "<p>hi</p>"}})

        html = FirecrawlClient(api_key="key", base_url="https://fc.local").fetch_html("https://zillow.com/1")

        assert html == "<p>hi</p>"
        assert mock_post.call_args.args[0] == "https://fc.local/v1/scrape"
        assert mock_post.call_args.kwargs["headers"] == {"Authorization": "Bearer key"}

    @patch("utils.firecrawl.httpx.post")
    def test_firecrawl_unsuccessful(self, mock_post):
        mock_post.return_value = httpx.Response(200, json={"success": False, "error": "quota"})

        with pytest.raises(ScrapeError, match="quota"):
            FirecrawlClient(api_key="key").fetch_html("https://zillow.com/1")


class TestRequestCeiling:

    def test_provider_budget_fits_host_ceiling(self):
        """Worst case: retry starts at the end of the window, waits 3s, runs a full attempt"""
        assert settings.provider_retry_window + 3 + settings.provider_timeout < settings.max_request_duration
        assert settings.processing_lease > settings.max_request_duration

    def test_short_ceiling_caps_timeout_and_disables_retry(self):
        short = Settings(max_request_duration=120, scrape_timeout=170)

        assert short.provider_timeout == 90
        assert short.provider_retry_window == 0
        assert short.processing_lease == 180

    def test_explicit_lease(self):
        assert Settings(processing_lease_seconds=900).processing_lease == 900

    @pytest.mark.parametrize("client_class", [ScraperAPIClient, FirecrawlClient])
    def test_retry_stops_after_window(self, client_class):
        stop = client_class.fetch_html.retry.stop

        assert not stop(Mock(attempt_number=1, seconds_since_start=1.0))
        assert stop(Mock(attempt_number=1, seconds_since_start=settings.provider_retry_window + 1))
        assert stop(Mock(attempt_number=2, seconds_since_start=1.0))

    @patch("utils.scraperapi.httpx.get")
    def test_transport_error_is_retried_once(self, mock_get):
        mock_get.side_effect = [httpx.ConnectError("reset"), httpx.Response(200, text="<html></html>")]
        client = ScraperAPIClient(api_key="key")

        html = ScraperAPIClient.fetch_html.retry_with(wait=wait_none())(client, "https://example.com/1")

        assert html == "<html></html>"
        assert mock_get.call_count == 2
        assert mock_get.call_args.kwargs["timeout"] == settings.provider_timeout
