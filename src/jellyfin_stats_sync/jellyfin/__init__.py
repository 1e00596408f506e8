"""Jellyfin API access."""

from .client import JellyfinClient
from .dates import parse_jellyfin_date
from .rate_limit import RateLimiter

__all__ = ["JellyfinClient", "RateLimiter", "parse_jellyfin_date"]
