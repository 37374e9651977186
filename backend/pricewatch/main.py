"""PriceWatch scraper entry point.

Starts the health server, launches the browser pool and either scrapes the
URLs given on the command line or keeps serving until SIGINT/SIGTERM.

Usage:
    # Serve health/metrics and wait for work
    pricewatch --serve

    # Scrape a few products and print the results as JSON lines
    pricewatch https://www.amazon.com/dp/B000000000 https://www.burton.com/us/en/p/some-board

    # Direct connections only, visible browser
    pricewatch --no-proxy --no-headless https://www.target.com/p/-/A-000000

Setup (run once):
    pip install -e .
    playwright install chromium
"""

import argparse
import asyncio
import json
import signal
import sys
from typing import List, Optional

import structlog

from pricewatch.config import settings
from pricewatch.core.exceptions import BrowserPoolError, ConfigurationError, HealthServerError
from pricewatch.core.logging import configure_logging
from pricewatch.monitoring.server import HealthServer
from pricewatch.runtime import Runtime
from pricewatch.scrapers.base import ScrapeJob


logger = structlog.get_logger(__name__)


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops do not support add_signal_handler
            pass


async def main(urls: List[str], serve: bool, use_proxy: Optional[bool], headless: Optional[bool]) -> int:
    """Run the scraper.

    Args:
        urls: Product URLs to scrape once
        serve: Keep serving health endpoints after the URLs are done
        use_proxy: Override SCRAPE_USE_PROXY
        headless: Override BROWSER_HEADLESS

    Returns:
        Process exit code
    """
    if headless is not None:
        settings.BROWSER_HEADLESS = headless
    if use_proxy is not None:
        settings.SCRAPE_USE_PROXY = use_proxy

    try:
        runtime = Runtime.from_settings(settings)
    except ConfigurationError as e:
        logger.error("configuration_invalid", error=str(e))
        return 2

    server = HealthServer(
        runtime,
        host=settings.HEALTH_HOST,
        port=settings.HEALTH_PORT,
        attempts=settings.HEALTH_PORT_ATTEMPTS,
    )
    try:
        await server.start()
    except HealthServerError as e:
        logger.error("health_server_failed", error=str(e))
        return 1

    exit_code = 0
    stop = asyncio.Event()
    _install_signal_handlers(stop)

    try:
        await runtime.start()

        if urls:
            jobs = [
                ScrapeJob.create(url, timeout=settings.SCRAPE_TIMEOUT_SECONDS, use_proxy=settings.SCRAPE_USE_PROXY)
                for url in urls
            ]
            results = await runtime.coordinator.scrape_many(jobs)
            for result in results:
                print(json.dumps(result.to_dict(), ensure_ascii=False))
            if not all(r.ok for r in results):
                exit_code = 1

        if serve or not urls:
            logger.info("waiting_for_shutdown_signal")
            await stop.wait()
    except BrowserPoolError as e:
        logger.error("browser_pool_start_failed", error=str(e))
        exit_code = 1
    except ValueError as e:
        logger.error("invalid_url", error=str(e))
        exit_code = 2
    finally:
        logger.info("shutting_down")
        await runtime.close()
        await server.stop()

    return exit_code


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Scrape product prices through a pooled headless browser, with health and metrics endpoints.",
    )
    parser.add_argument("urls", nargs="*", metavar="URL", help="Product page URLs to scrape")
    parser.add_argument(
        "--serve",
        action="store_true",
        help="Keep the health server running after the URLs are scraped",
    )
    parser.add_argument(
        "--no-proxy",
        action="store_true",
        help="Connect directly instead of through the proxy pool",
    )
    parser.add_argument(
        "--no-headless",
        action="store_true",
        help="Show the browser window (debugging)",
    )
    return parser.parse_args(argv)


def run(argv: Optional[List[str]] = None) -> None:
    """Console script entry point."""
    args = parse_args(argv)
    configure_logging(settings.LOG_LEVEL, settings.LOG_PRETTY)
    try:
        code = asyncio.run(
            main(
                urls=args.urls,
                serve=args.serve,
                use_proxy=False if args.no_proxy else None,
                headless=False if args.no_headless else None,
            )
        )
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    run()
