"""Amazon product page extractor."""

from typing import Optional

from bs4 import BeautifulSoup

from pricewatch.scrapers.base import RawProduct


# The buy-box price is split into whole/fraction spans; the off-screen copy
# holds the full formatted string.
_PRICE_SELECTORS = (
    "#corePrice_feature_div .a-price > .a-offscreen",
    ".a-price > .a-offscreen",
    "#priceblock_ourprice",
    "#priceblock_dealprice",
    ".apexPriceToPay .a-offscreen",
)


def _text(soup: BeautifulSoup, selector: str) -> Optional[str]:
    node = soup.select_one(selector)
    if node is None:
        return None
    text = node.get_text(" ", strip=True)
    return text or None


def _whole_fraction_price(soup: BeautifulSoup) -> Optional[str]:
    """Rebuild "$1,234.56" from the a-price-whole / a-price-fraction spans."""
    whole = soup.select_one(".a-price .a-price-whole")
    if whole is None:
        return None
    whole_text = whole.get_text(strip=True).rstrip(".")
    if not whole_text:
        return None
    fraction = soup.select_one(".a-price .a-price-fraction")
    symbol = soup.select_one(".a-price .a-price-symbol")
    parts = [symbol.get_text(strip=True) if symbol else "", whole_text]
    if fraction is not None and fraction.get_text(strip=True):
        parts.append("." + fraction.get_text(strip=True))
    return "".join(parts)


def extract_amazon(soup: BeautifulSoup) -> Optional[RawProduct]:
    """Extract title, price and availability from an Amazon detail page."""
    title = _text(soup, "#productTitle")
    if not title:
        return None

    price_text = None
    for selector in _PRICE_SELECTORS:
        price_text = _text(soup, selector)
        if price_text:
            break
    if not price_text:
        price_text = _whole_fraction_price(soup)

    availability = _text(soup, "#availability span") or _text(soup, "#availability")
    available = None
    if soup.select_one("#outOfStock") is not None:
        available = False
    elif soup.select_one("#add-to-cart-button") is not None:
        available = True

    brand = _text(soup, "#bylineInfo")
    if brand:
        brand = brand.replace("Visit the", "").replace("Store", "").replace("Brand:", "").strip() or None

    image = None
    image_node = soup.select_one("#landingImage") or soup.select_one("#imgBlkFront")
    if image_node is not None:
        image = image_node.get("data-old-hires") or image_node.get("src")

    asin_node = soup.select_one("input#ASIN")
    sku = asin_node.get("value") if asin_node is not None else None

    return RawProduct(
        title=title,
        price_text=price_text,
        availability=availability,
        available=available,
        brand=brand,
        sku=sku,
        image=image,
    )
