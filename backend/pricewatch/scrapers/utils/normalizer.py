"""Data normalization utilities for price, currency and availability parsing."""

import re
from decimal import Decimal, InvalidOperation
from typing import Optional, Tuple, Union

import structlog

logger = structlog.get_logger()


# ISO codes recognised when spelled out in price text ("USD 0.99")
ISO_CURRENCY_CODES = (
    "USD", "EUR", "GBP", "JPY", "CAD", "AUD", "NZD", "CHF", "SEK", "NOK",
    "DKK", "PLN", "CZK", "KRW", "CNY", "INR", "MXN", "BRL",
)

# Symbol -> ISO code, longest symbols first so "C$" wins over "$"
CURRENCY_SYMBOLS: Tuple[Tuple[str, str], ...] = (
    ("US$", "USD"),
    ("CA$", "CAD"),
    ("AU$", "AUD"),
    ("NZ$", "NZD"),
    ("C$", "CAD"),
    ("A$", "AUD"),
    ("R$", "BRL"),
    ("zł", "PLN"),
    ("kr", "SEK"),
    ("$", "USD"),
    ("€", "EUR"),
    ("£", "GBP"),
    ("¥", "JPY"),
    ("₩", "KRW"),
    ("₹", "INR"),
)

OUT_OF_STOCK_PHRASES = (
    "out of stock",
    "unavailable",
    "sold out",
    "not available",
    "no longer available",
)

IN_STOCK_PHRASES = (
    "in stock",
    "in-stock",
    "available",
    "add to cart",
    "add to bag",
    "ships",
)

# schema.org ItemAvailability values
SCHEMA_AVAILABILITY = {
    "instock": True,
    "instoreonly": True,
    "onlineonly": True,
    "limitedavailability": True,
    "preorder": True,
    "presale": True,
    "backorder": True,
    "madetoorder": True,
    "outofstock": False,
    "soldout": False,
    "discontinued": False,
    "reserved": False,
}

_ISO_RE = re.compile(r"\b(" + "|".join(ISO_CURRENCY_CODES) + r")\b")
_NUMBER_RE = re.compile(r"\d[\d.,'   ]*")
_SPACING_RE = re.compile(r"[\s'  ]")
_WHITESPACE_RE = re.compile(r"\s+")


def _number_token(text: str) -> Optional[str]:
    """Return the first number-like token with inner spacing removed."""
    match = _NUMBER_RE.search(text)
    if not match:
        return None
    token = _SPACING_RE.sub("", match.group(0)).rstrip(".,")
    return token or None


def _has_decimal_comma(token: str) -> bool:
    """True when the token uses a comma as decimal separator (1.234,56 / 12,34)."""
    if "," not in token:
        return False
    last_comma = token.rfind(",")
    if "." in token:
        return last_comma > token.rfind(".")
    parts = token.split(",")
    return len(parts) == 2 and len(parts[-1]) == 2


class PriceNormalizer:
    """Price, currency and availability parsing for scraped text.

    Handles both US (1,234.56) and European (1.234,56) conventions; the
    position of the last separator decides which one applies.
    """

    @staticmethod
    def parse_price(raw: Union[str, int, float, Decimal, None]) -> Optional[Decimal]:
        """Parse a price string and extract its numeric value.

        Handles various formats:
        - "$1,234.56" -> 1234.56
        - "1.234,56 €" -> 1234.56
        - "12,34" -> 12.34
        - "1,234" -> 1234
        - "USD 0.99" -> 0.99

        Args:
            raw: Raw price text or number (JSON-LD prices are often numbers)

        Returns:
            Decimal price value, or None if parsing fails
        """
        if raw is None or isinstance(raw, bool):
            return None

        if isinstance(raw, (int, float, Decimal)):
            try:
                value = Decimal(str(raw))
            except InvalidOperation:
                return None
            return value if value.is_finite() else None

        token = _number_token(str(raw))
        if not token:
            return None

        if "," in token and "." in token:
            if token.rfind(",") > token.rfind("."):
                # European format: 1.234,56
                token = token.replace(".", "").replace(",", ".")
            else:
                # US format: 1,234.56
                token = token.replace(",", "")
        elif "," in token:
            # 12,34 (decimal) vs 1,234 (thousands)
            if _has_decimal_comma(token):
                token = token.replace(",", ".")
            else:
                token = token.replace(",", "")
        elif token.count(".") > 1:
            # 1.234.567 uses dots as thousand separators
            token = token.replace(".", "")

        try:
            value = Decimal(token)
        except InvalidOperation:
            logger.debug("price_parse_failed", raw=str(raw)[:100])
            return None

        if not value.is_finite():
            return None
        return value

    @staticmethod
    def detect_currency(text: Optional[str], default: str = "USD") -> str:
        """Detect the ISO currency code of a price string.

        ISO codes are checked first, then currency symbols (longest first).
        A number written with a decimal comma and no symbol is taken as EUR.

        Args:
            text: Original price text
            default: Code returned when nothing matches

        Returns:
            ISO 4217 currency code
        """
        if not text:
            return default

        iso = _ISO_RE.search(text.upper())
        if iso:
            return iso.group(1)

        for symbol, code in CURRENCY_SYMBOLS:
            if symbol in text:
                return code

        token = _number_token(text)
        if token and _has_decimal_comma(token):
            return "EUR"

        return default

    @staticmethod
    def normalize_currency(code: Optional[str]) -> Optional[str]:
        """Upper-case a currency code, returning None unless it is 3 letters."""
        if not code or not isinstance(code, str):
            return None
        code = code.strip().upper()
        if len(code) != 3 or not code.isalpha():
            return None
        return code

    @staticmethod
    def availability_from_text(text: Optional[str]) -> Optional[bool]:
        """Map availability text to True / False / None (unknown)."""
        if not text:
            return None
        lowered = text.lower()
        if any(phrase in lowered for phrase in OUT_OF_STOCK_PHRASES):
            return False
        if any(phrase in lowered for phrase in IN_STOCK_PHRASES):
            return True
        return None

    @staticmethod
    def availability_from_schema(value: Optional[str]) -> Tuple[Optional[str], Optional[bool]]:
        """Map a schema.org availability value to (label, available).

        "https://schema.org/InStock" -> ("InStock", True)
        """
        if not value or not isinstance(value, str):
            return None, None
        label = value.rstrip("/").rsplit("/", 1)[-1].strip()
        available = SCHEMA_AVAILABILITY.get(label.lower())
        if available is None:
            available = PriceNormalizer.availability_from_text(label)
        return label, available


def clean_text(text: Optional[str]) -> Optional[str]:
    """Collapse whitespace and strip; empty strings become None."""
    if text is None:
        return None
    cleaned = _WHITESPACE_RE.sub(" ", str(text)).strip()
    return cleaned or None
