"""Site-specific extractors.

Each extractor takes a parsed product page and returns the raw field text it
found (or None). Validation and price parsing happen in the extractor module.
"""

from .amazon import extract_amazon
from .burton import extract_burton

__all__ = [
    "extract_amazon",
    "extract_burton",
]
