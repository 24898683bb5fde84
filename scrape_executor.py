"""Turns a listing URL into normalized property data.

The executor picks a provider for the URL (a site-specific one when the host
is listed in ``settings.site_providers``, the general provider otherwise),
fetches the page and extracts listing fields from JSON-LD, OpenGraph tags and
the document title. It knows nothing about the queue.
"""
import json
import re
import logging
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup
from pydantic import BaseModel

from config import settings
from exceptions import ScrapeError, UnsupportedUrlError
from utils.firecrawl import firecrawl_client
from utils.scraperapi import scraperapi_client

logger = logging.getLogger(__name__)

PROVIDERS = {
    "scraperapi": scraperapi_client,
    "firecrawl": firecrawl_client,
}

LISTING_TYPES = {
    "RealEstateListing", "Product", "Offer", "Residence", "House",
    "SingleFamilyResidence", "Apartment", "Accommodation", "Place",
}

class PropertyData(BaseModel):
    source_url: str
    provider: str
    title: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    currency: Optional[str] = None
    address: Optional[str] = None
    bedrooms: Optional[float] = None
    bathrooms: Optional[float] = None
    area: Optional[float] = None
    images: List[str] = []

    def has_listing_fields(self) -> bool:
        return any(
            value is not None
            for value in (self.price, self.address, self.bedrooms, self.bathrooms, self.area)
        )


def validate_listing_url(url: str) -> str:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise UnsupportedUrlError(f"Unsupported URL: {url}")
    return url


def select_provider(url: str) -> str:
    """Site-specific provider for known hosts, the configured general one otherwise"""
    host = (urlparse(url).hostname or "").lower()
    for domain, provider in settings.site_providers.items():
        domain = domain.lower()
        if host == domain or host.endswith("." + domain):
            return provider
    return settings.scraper_provider.lower()


def _parse_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, dict):
        return _parse_number(value.get("value"))
    match = re.search(r"\d[\d,]*(?:\.\d+)?", str(value))
    if not match:
        return None
    return float(match.group(0).replace(",", ""))


def _as_list(value: Any) -> list:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _iter_json_ld(soup: BeautifulSoup) -> Iterable[Dict[str, Any]]:
    for script in soup.find_all("script", type="application/ld+json"):
        try:
            data = json.loads(script.string or "")
        except (TypeError, ValueError):
            continue
        stack = _as_list(data)
        while stack:
            node = stack.pop(0)
            if not isinstance(node, dict):
                continue
            yield node
            stack.extend(_as_list(node.get("@graph")))
            stack.extend(n for n in _as_list(node.get("mainEntity")) if isinstance(n, dict))


def _node_types(node: Dict[str, Any]) -> set:
    return {str(t) for t in _as_list(node.get("@type"))}


def _format_address(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, dict):
        parts = [
            value.get("streetAddress"),
            value.get("addressLocality"),
            value.get("addressRegion"),
            value.get("postalCode"),
        ]
        joined = ", ".join(str(p).strip() for p in parts if p)
        return joined or None
    return None


def _image_urls(value: Any) -> List[str]:
    urls = []
    for item in _as_list(value):
        if isinstance(item, str):
            urls.append(item)
        elif isinstance(item, dict) and item.get("url"):
            urls.append(item["url"])
    return urls


def _meta(soup: BeautifulSoup, key: str) -> Optional[str]:
    tag = soup.find("meta", attrs={"property": key}) or soup.find("meta", attrs={"name": key})
    if tag and tag.get("content"):
        return tag["content"].strip()
    return None


def extract_property_data(html: str, source_url: str, provider: str) -> PropertyData:
    soup = BeautifulSoup(html, "html.parser")
    data = PropertyData(source_url=source_url, provider=provider)

    for node in _iter_json_ld(soup):
        if not _node_types(node) & LISTING_TYPES:
            continue
        data.title = data.title or node.get("name")
        data.description = data.description or node.get("description")

        offers = next((o for o in _as_list(node.get("offers")) if isinstance(o, dict)), {})
        if data.price is None:
            data.price = _parse_number(offers.get("price") or node.get("price"))
        data.currency = data.currency or offers.get("priceCurrency") or node.get("priceCurrency")

        item = offers.get("itemOffered") if isinstance(offers.get("itemOffered"), dict) else node
        data.address = data.address or _format_address(item.get("address") or node.get("address"))
        if data.bedrooms is None:
            data.bedrooms = _parse_number(item.get("numberOfBedrooms") or item.get("numberOfRooms"))
        if data.bathrooms is None:
            data.bathrooms = _parse_number(item.get("numberOfBathroomsTotal") or item.get("numberOfBathrooms"))
        if data.area is None:
            data.area = _parse_number(item.get("floorSize"))
        for url in _image_urls(node.get("image")):
            if url not in data.images:
                data.images.append(url)

    # OpenGraph fallbacks
    data.title = data.title or _meta(soup, "og:title")
    data.description = data.description or _meta(soup, "og:description") or _meta(soup, "description")
    if data.price is None:
        data.price = _parse_number(_meta(soup, "product:price:amount") or _meta(soup, "og:price:amount"))
    data.currency = data.currency or _meta(soup, "product:price:currency") or _meta(soup, "og:price:currency")
    for tag in soup.find_all("meta", attrs={"property": "og:image"}):
        url = (tag.get("content") or "").strip()
        if url and url not in data.images:
            data.images.append(url)

    if not data.title and soup.title and soup.title.string:
        data.title = soup.title.string.strip()

    if not data.title and not data.has_listing_fields():
        raise ScrapeError("No listing data found")

    return data


def scrape_listing(url: str) -> PropertyData:
    """Fetch and normalize one listing page"""
    validate_listing_url(url)

    provider_name = select_provider(url)
    client = PROVIDERS.get(provider_name)
    if client is None:
        raise ScrapeError(f"Unknown scraper provider: {provider_name}")

    logger.info(f"Scraping {url} with {provider_name}")
    html = client.fetch_html(url)
    return extract_property_data(html, url, provider_name)
