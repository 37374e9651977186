"""Burton product page extractor."""

from typing import Optional

from bs4 import BeautifulSoup

from pricewatch.scrapers.base import RawProduct


def extract_burton(soup: BeautifulSoup) -> Optional[RawProduct]:
    """Extract title and price from a burton.com product page.

    Sale items show both a standard and a sale price; the sale price wins.
    """
    title_node = soup.select_one("h1.product-name")
    if title_node is None or not title_node.get_text(strip=True):
        return None

    price_node = (
        soup.select_one("span.sale-price")
        or soup.select_one("span.standard-price")
        or soup.select_one(".product-price")
    )
    price_text = price_node.get_text(" ", strip=True) if price_node is not None else None

    availability_node = soup.select_one(".availability-message")
    availability = availability_node.get_text(" ", strip=True) if availability_node is not None else None

    image_node = soup.select_one(".product-image img")
    image = image_node.get("src") if image_node is not None else None

    return RawProduct(
        title=title_node.get_text(" ", strip=True),
        price_text=price_text or None,
        availability=availability or None,
        brand="Burton",
        image=image,
    )
