"""Scraping coordination: site registry, fetcher, extractor and coordinator."""
