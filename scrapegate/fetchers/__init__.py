"""Fetchers module - lightweight non-rendering fetch."""

from .http_fetcher import HTTPFetcher

__all__ = ["HTTPFetcher"]
