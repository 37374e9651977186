"""Registry of supported e-commerce sites.

Maps host patterns to a site entry holding the canonical name, selector
chains per field, the rate-limit profile and an optional specialized
extractor. Unknown hosts resolve to the ``generic`` entry.
"""

from dataclasses import dataclass, field, fields, replace
from typing import Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

import structlog
from bs4 import BeautifulSoup

from pricewatch.scrapers.adapters import extract_amazon, extract_burton
from pricewatch.scrapers.base import RawProduct


logger = structlog.get_logger(__name__)

GENERIC_KEY = "generic"

SpecializedExtractor = Callable[[BeautifulSoup], Optional[RawProduct]]


@dataclass(frozen=True)
class RateLimitProfile:
    """Per-site request pacing. All durations are in milliseconds."""

    min_delay_ms: int = 3000
    max_delay_ms: int = 6000
    max_requests_per_minute: int = 5
    backoff_multiplier: float = 2.0
    max_backoff_ms: int = 60000

    def __post_init__(self):
        """Validate data after initialization."""
        if self.min_delay_ms < 0 or self.max_delay_ms < self.min_delay_ms:
            raise ValueError("Require 0 <= min_delay_ms <= max_delay_ms")
        if self.max_requests_per_minute < 1:
            raise ValueError("max_requests_per_minute must be >= 1")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")
        if self.max_backoff_ms < self.min_delay_ms:
            raise ValueError("max_backoff_ms must be >= min_delay_ms")

    def with_overrides(self, **overrides) -> "RateLimitProfile":
        """Return a copy with the given fields replaced; unknown keys raise."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown rate limit fields: {sorted(unknown)}")
        return replace(self, **overrides)

    def to_dict(self) -> dict:
        return {
            "minDelay": self.min_delay_ms,
            "maxDelay": self.max_delay_ms,
            "maxRequestsPerMinute": self.max_requests_per_minute,
            "backoffMultiplier": self.backoff_multiplier,
            "maxBackoffDelay": self.max_backoff_ms,
        }


@dataclass(frozen=True)
class FieldSelectors:
    """Ordered CSS selector alternatives per field; the first hit wins."""

    title: Tuple[str, ...] = ()
    price: Tuple[str, ...] = ()
    availability: Tuple[str, ...] = ()
    image: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SiteEntry:
    """A known retailer."""

    key: str
    name: str
    host_patterns: Tuple[str, ...]
    selectors: FieldSelectors
    rate_profile: RateLimitProfile = field(default_factory=RateLimitProfile)
    priority: int = 0
    currency: str = "USD"
    extractor: Optional[SpecializedExtractor] = None

    @property
    def is_generic(self) -> bool:
        return self.key == GENERIC_KEY

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "name": self.name,
            "domains": list(self.host_patterns),
            "priority": self.priority,
            "currency": self.currency,
            "hasExtractor": self.extractor is not None,
            "rateLimit": self.rate_profile.to_dict(),
        }


DEFAULT_PROFILE = RateLimitProfile(3000, 6000, 5, 2.0, 60000)
AMAZON_PROFILE = RateLimitProfile(2000, 5000, 10, 2.0, 30000)
BURTON_PROFILE = RateLimitProfile(1000, 3000, 20, 1.5, 15000)
RETAILER_PROFILE = RateLimitProfile(2000, 4000, 10, 2.0, 30000)
EBAY_PROFILE = RateLimitProfile(1500, 3500, 10, 2.0, 30000)


BUILTIN_SITES: Tuple[SiteEntry, ...] = (
    SiteEntry(
        key="amazon",
        name="Amazon",
        host_patterns=("amazon.com", "amazon.co.uk", "amazon.ca", "amazon.de", "amazon.fr"),
        selectors=FieldSelectors(
            title=(
                "#productTitle",
                "#title",
                ".product-title-word-break",
                "h1.a-size-large",
                "[data-feature-name='title'] h1",
                "h1",
            ),
            price=(
                ".a-price > .a-offscreen",
                "#priceblock_ourprice",
                "#priceblock_dealprice",
                "span.a-price-whole",
                ".a-color-price",
                "#price_inside_buybox",
                ".apexPriceToPay .a-offscreen",
            ),
            availability=("#availability span", "#outOfStock", ".a-color-success"),
            image=("#landingImage", "#imgBlkFront", ".a-dynamic-image"),
        ),
        rate_profile=AMAZON_PROFILE,
        priority=10,
        extractor=extract_amazon,
    ),
    SiteEntry(
        key="burton",
        name="Burton",
        host_patterns=("burton.com",),
        selectors=FieldSelectors(
            title=("h1.product-name", ".product-name", "h1.pdp-title", ".product-title", "[data-product-title]", "h1"),
            price=(
                "span.standard-price",
                ".price-value",
                ".product-price",
                "[data-product-price]",
                "span[itemprop='price']",
                ".pdp-price",
                ".price",
            ),
            availability=(".availability-message", ".in-stock", ".out-of-stock", "[data-availability]"),
            image=(".product-image img", "[data-product-image]", "img.primary-image"),
        ),
        rate_profile=BURTON_PROFILE,
        priority=8,
        extractor=extract_burton,
    ),
    SiteEntry(
        key="walmart",
        name="Walmart",
        host_patterns=("walmart.com",),
        selectors=FieldSelectors(
            title=("h1[itemprop='name']", "h1.prod-ProductTitle", "[data-automation-id='product-title']", "h1"),
            price=(
                "[itemprop='price']",
                ".price-characteristic",
                "[data-automation-id='product-price'] span",
                ".price-group",
            ),
            availability=(
                ".prod-fulfillment-shipping-text",
                "[data-automation-id='fulfillment-shipping']",
                ".fulfillment-shipping-text",
            ),
            image=("[data-automation-id='hero-image'] img", ".hover-zoom-hero-image img"),
        ),
        rate_profile=RETAILER_PROFILE,
        priority=9,
    ),
    SiteEntry(
        key="target",
        name="Target",
        host_patterns=("target.com",),
        selectors=FieldSelectors(
            title=("h1[data-test='product-title']", "h1.Heading", "[data-test='@web/ProductDetailPage/Title']", "h1"),
            price=(
                "[data-test='product-price']",
                ".styles__CurrentPriceFontSize",
                "[data-test='@web/ProductDetailPage/SalePrice']",
            ),
            availability=("[data-test='fulfillment-cell']", ".styles__StyledFulfillmentSection"),
            image=("[data-test='product-image'] img", "picture img"),
        ),
        rate_profile=RETAILER_PROFILE,
        priority=8,
    ),
    SiteEntry(
        key="bestbuy",
        name="Best Buy",
        host_patterns=("bestbuy.com",),
        selectors=FieldSelectors(
            title=(".sku-title h1", "h1.heading-5", "[data-track='product-title']", "h1"),
            price=(".priceView-hero-price span", ".priceView-customer-price span", "[data-track='product-price']"),
            availability=(".fulfillment-fulfillment-summary", "[data-track='pickup-availability']"),
            image=(".primary-image", "img.product-image"),
        ),
        rate_profile=RETAILER_PROFILE,
        priority=8,
    ),
    SiteEntry(
        key="ebay",
        name="eBay",
        host_patterns=("ebay.com", "ebay.co.uk"),
        selectors=FieldSelectors(
            title=("h1.x-item-title__mainTitle", "h1[itemprop='name']", "#itemTitle", "h1"),
            price=(".x-price-primary span", "#prcIsum", "[itemprop='price']", ".vi-VR-cvipPrice"),
            availability=("#qtySubTxt", ".d-quantity__availability", "#vi-quantity"),
            image=("#icImg", "[data-zoom-src]", ".ux-image-magnify__container img"),
        ),
        rate_profile=EBAY_PROFILE,
        priority=7,
    ),
)

GENERIC_SITE = SiteEntry(
    key=GENERIC_KEY,
    name="Generic",
    host_patterns=(),
    selectors=FieldSelectors(
        title=(
            "h1[itemprop='name']",
            "[itemprop='name']",
            "h1.product-title",
            "h1.product-name",
            ".product-title",
            ".product-name",
            "h1",
        ),
        price=(
            "[itemprop='price']",
            ".product-price",
            ".current-price",
            ".sale-price",
            ".price",
            ".regular-price",
            "[data-price]",
            ".price-value",
        ),
        availability=(
            "[itemprop='availability']",
            ".availability",
            ".stock-status",
            ".in-stock",
            ".out-of-stock",
        ),
        image=("[itemprop='image']", ".product-image img", "#product-image", "img.product"),
    ),
    rate_profile=DEFAULT_PROFILE,
)


def normalize_host(url: str) -> Optional[str]:
    """Lower-cased hostname without a leading ``www.``; None if unparseable."""
    try:
        host = urlparse(url).hostname
    except ValueError:
        return None
    if not host:
        return None
    host = host.lower().rstrip(".")
    if host.startswith("www."):
        host = host[4:]
    return host


def _host_matches(host: str, pattern: str) -> bool:
    return host == pattern or host.endswith("." + pattern)


class SiteRegistry:
    """Lookup table from URL host to SiteEntry.

    Entries are immutable. ``register`` appends; existing keys cannot be
    replaced. Rate profile overrides are applied once, at construction.
    """

    def __init__(
        self,
        entries: Optional[List[SiteEntry]] = None,
        generic: SiteEntry = GENERIC_SITE,
        rate_overrides: Optional[Mapping[str, Mapping]] = None,
    ):
        overrides = dict(rate_overrides or {})
        # "default" is accepted as an alias for the generic profile
        if "default" in overrides and GENERIC_KEY not in overrides:
            overrides[GENERIC_KEY] = overrides.pop("default")

        self._sites: Dict[str, SiteEntry] = {}
        for entry in entries if entries is not None else BUILTIN_SITES:
            self._add(self._with_override(entry, overrides))
        self._generic = self._with_override(generic, overrides)

        unknown = set(overrides) - set(self._sites) - {GENERIC_KEY}
        if unknown:
            logger.warning("rate_overrides_unknown_sites", sites=sorted(unknown))

    @staticmethod
    def _with_override(entry: SiteEntry, overrides: Mapping[str, Mapping]) -> SiteEntry:
        override = overrides.get(entry.key)
        if not override:
            return entry
        logger.info("rate_profile_overridden", site=entry.key, override=dict(override))
        return replace(entry, rate_profile=entry.rate_profile.with_overrides(**override))

    def _add(self, entry: SiteEntry) -> None:
        if entry.key in self._sites or entry.key == GENERIC_KEY:
            raise ValueError(f"Site already registered: {entry.key}")
        self._sites[entry.key] = entry

    def register(self, entry: SiteEntry) -> None:
        """Append a new site entry.

        Raises:
            ValueError: If the key is already registered
        """
        self._add(entry)
        logger.info("site_registered", site=entry.key, name=entry.name, domains=list(entry.host_patterns))

    def detect(self, url: str) -> SiteEntry:
        """Resolve a URL to its site entry; the longest matching pattern wins."""
        host = normalize_host(url)
        if not host:
            return self._generic

        best: Optional[SiteEntry] = None
        best_len = -1
        for entry in self._sites.values():
            for pattern in entry.host_patterns:
                if len(pattern) > best_len and _host_matches(host, pattern):
                    best, best_len = entry, len(pattern)
        return best or self._generic

    def site_key(self, url: str) -> str:
        """Registry key for known sites, the bare host for generic ones."""
        entry = self.detect(url)
        if entry.is_generic:
            return normalize_host(url) or GENERIC_KEY
        return entry.key

    def selectors_for(self, url: str) -> FieldSelectors:
        return self.detect(url).selectors

    def rate_profile_for(self, url: str) -> RateLimitProfile:
        return self.detect(url).rate_profile

    def specialized_extractor(self, url: str) -> Optional[SpecializedExtractor]:
        return self.detect(url).extractor

    def site_name(self, url: str) -> str:
        return self.detect(url).name

    def is_supported(self, url: str) -> bool:
        """True when the URL belongs to a registered (non-generic) site."""
        return not self.detect(url).is_generic

    def get(self, key: str) -> Optional[SiteEntry]:
        if key == GENERIC_KEY:
            return self._generic
        return self._sites.get(key)

    def all_sites(self) -> List[SiteEntry]:
        """Registered entries ordered by priority, generic last."""
        ordered = sorted(self._sites.values(), key=lambda e: e.priority, reverse=True)
        return ordered + [self._generic]


# Global registry instance
site_registry = SiteRegistry()


def get_site_registry() -> SiteRegistry:
    """Get the global site registry instance.

    Returns:
        SiteRegistry instance
    """
    return site_registry
