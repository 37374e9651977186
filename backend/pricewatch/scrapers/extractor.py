"""Product extraction from a page's HTML snapshot.

Three tiers feed each field, first non-empty value wins:
structured data (JSON-LD), a site-specific extractor, then the site's
CSS selector chains.
"""

import json
from decimal import Decimal
from typing import Iterator, List, Optional, Tuple
from urllib.parse import urljoin

import structlog
from bs4 import BeautifulSoup

from pricewatch.core.exceptions import ExtractionError
from pricewatch.scrapers.base import ProductRecord, RawProduct
from pricewatch.scrapers.error_classifier import ErrorCategory
from pricewatch.scrapers.site_registry import SiteEntry
from pricewatch.scrapers.utils.normalizer import PriceNormalizer, clean_text


logger = structlog.get_logger(__name__)

MAX_PRICE = Decimal("99999999.99")
MAX_TITLE_LENGTH = 1000

ADD_TO_CART_SELECTOR = 'button[id*="add-to-cart"], button[class*="add-to-cart"], [data-action="add-to-cart"]'

SOURCE_STRUCTURED = "structured_data"
SOURCE_SITE = "site_extractor"
SOURCE_SELECTORS = "selectors"

_INVISIBLE_TAGS = ("script", "style", "noscript", "template")


def _parse(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


def page_text(html: str) -> str:
    """Visible text of a page, whitespace-collapsed."""
    soup = _parse(html)
    for tag in soup(_INVISIBLE_TAGS):
        tag.decompose()
    return clean_text(soup.get_text(" ", strip=True)) or ""


# ----------------------------------------------------------------- JSON-LD


def _iter_nodes(data) -> Iterator[dict]:
    if isinstance(data, list):
        for item in data:
            yield from _iter_nodes(item)
    elif isinstance(data, dict):
        yield data
        if "@graph" in data:
            yield from _iter_nodes(data["@graph"])


def _is_product(node: dict) -> bool:
    node_type = node.get("@type")
    if isinstance(node_type, list):
        return "Product" in node_type
    return node_type == "Product"


def _first(value):
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _text_of(value) -> Optional[str]:
    value = _first(value)
    if isinstance(value, dict):
        value = value.get("name") or value.get("url") or value.get("@id")
    if value is None or isinstance(value, (dict, list)):
        return None
    return clean_text(str(value))


def _structured_product(soup: BeautifulSoup) -> Optional[RawProduct]:
    """The first JSON-LD Product node, as raw field text."""
    for script in soup.find_all("script", type="application/ld+json"):
        try:
            data = json.loads(script.string or script.get_text() or "")
        except (json.JSONDecodeError, TypeError):
            continue

        for node in _iter_nodes(data):
            if not _is_product(node):
                continue

            offer = _first(node.get("offers")) or {}
            if not isinstance(offer, dict):
                offer = {}
            price = offer.get("price")
            if price in (None, ""):
                price = offer.get("lowPrice")

            label, available = PriceNormalizer.availability_from_schema(_text_of(offer.get("availability")))

            return RawProduct(
                title=_text_of(node.get("name")),
                price_text=None if price in (None, "") else str(price),
                currency=PriceNormalizer.normalize_currency(offer.get("priceCurrency")),
                availability=label,
                available=available,
                brand=_text_of(node.get("brand")),
                sku=_text_of(node.get("sku")),
                image=_text_of(node.get("image")),
            )
    return None


# --------------------------------------------------------------- selectors


def _select_text(soup: BeautifulSoup, selectors: Tuple[str, ...], attr: Optional[str] = None) -> Optional[str]:
    for selector in selectors:
        try:
            node = soup.select_one(selector)
        except Exception as e:
            logger.debug("invalid_selector", selector=selector, error=str(e))
            continue
        if node is None:
            continue
        if attr is not None:
            for name in (attr, "data-src", "data-zoom-src", "content"):
                value = clean_text(node.get(name))
                if value:
                    return value
            continue
        text = clean_text(node.get_text(" ", strip=True)) or clean_text(node.get("content"))
        if text:
            return text
    return None


def _selector_product(soup: BeautifulSoup, site: SiteEntry) -> RawProduct:
    selectors = site.selectors
    availability = _select_text(soup, selectors.availability)
    return RawProduct(
        title=_select_text(soup, selectors.title),
        price_text=_select_text(soup, selectors.price),
        availability=availability,
        available=PriceNormalizer.availability_from_text(availability),
        image=_select_text(soup, selectors.image, attr="src"),
    )


# ----------------------------------------------------------------- merging


def _merge(tiers: List[Tuple[str, RawProduct]]) -> Tuple[RawProduct, Optional[str]]:
    """Combine tiers field by field; also return the tier that supplied the price."""
    merged = RawProduct()
    price_source = None
    for source, raw in tiers:
        for name in ("title", "currency", "availability", "brand", "sku", "image"):
            if getattr(merged, name) is None and getattr(raw, name):
                setattr(merged, name, getattr(raw, name))
        if merged.price_text is None and raw.price_text:
            merged.price_text = raw.price_text
            price_source = source
        if merged.available is None and raw.available is not None:
            merged.available = raw.available
    return merged, price_source


def extract(html: str, url: str, site: SiteEntry) -> ProductRecord:
    """Extract a validated product record from page HTML.

    Args:
        html: Page content snapshot
        url: Page URL, used for the record and for resolving image links
        site: Registry entry for the page's site

    Returns:
        ProductRecord

    Raises:
        ExtractionError: ``selector_failed`` when title or price is missing,
            ``parse_error`` when the price text is not a valid price
    """
    soup = _parse(html)

    tiers: List[Tuple[str, RawProduct]] = []
    structured = _structured_product(soup)
    if structured is not None:
        tiers.append((SOURCE_STRUCTURED, structured))
    if site.extractor is not None:
        try:
            specialized = site.extractor(soup)
        except Exception as e:
            logger.warning("site_extractor_failed", site=site.key, url=url, error=str(e))
            specialized = None
        if specialized is not None:
            tiers.append((SOURCE_SITE, specialized))
    tiers.append((SOURCE_SELECTORS, _selector_product(soup, site)))

    raw, price_source = _merge(tiers)

    if not raw.title:
        raise ExtractionError("Could not find product title", ErrorCategory.SELECTOR_FAILED.value, url=url)
    if not raw.price_text:
        raise ExtractionError("Could not find product price", ErrorCategory.SELECTOR_FAILED.value, url=url)

    price = PriceNormalizer.parse_price(raw.price_text)
    if price is None:
        raise ExtractionError(f"Unparseable price: {raw.price_text!r}", ErrorCategory.PARSE_ERROR.value, url=url)
    if price <= 0 or price > MAX_PRICE:
        raise ExtractionError(f"Price out of range: {price}", ErrorCategory.PARSE_ERROR.value, url=url)

    currency = raw.currency or PriceNormalizer.detect_currency(raw.price_text, default=site.currency)

    available = raw.available
    if available is None and soup.select_one(ADD_TO_CART_SELECTOR) is not None:
        available = True

    record = ProductRecord(
        site=site.name,
        url=url,
        title=raw.title[:MAX_TITLE_LENGTH],
        price=price.quantize(Decimal("0.01")) if price.as_tuple().exponent < -2 else price,
        currency=currency,
        availability=raw.availability,
        available=available,
        brand=raw.brand,
        sku=raw.sku,
        image=urljoin(url, raw.image) if raw.image else None,
        source=price_source or SOURCE_SELECTORS,
    )
    logger.debug("product_extracted", url=url, site=site.key, price=str(record.price), source=record.source)
    return record
