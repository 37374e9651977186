"""PriceWatch scraping coordinator.

Fetches product pages from e-commerce sites through a pooled headless
browser, paces requests per site, rotates proxies, classifies failures
and exposes health/metrics over HTTP.
"""

__version__ = "0.1.0"
