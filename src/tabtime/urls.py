"""Hostname and registrable-domain extraction for tracked URLs."""

from __future__ import annotations

import logging
from urllib.parse import urlsplit

import tldextract

logger = logging.getLogger(__name__)

# Bundled public suffix snapshot only: aggregation must never block on a
# network fetch of the list.
_extract = tldextract.TLDExtract(suffix_list_urls=(), cache_dir=None)


class UrlParseError(ValueError):
    """Raised when an event URL cannot be parsed into a hostname."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Invalid URL for parsing: {url!r} ({reason})")
        self.url = url
        self.reason = reason


def parse_url(url: str) -> tuple[str, str]:
    """Split a URL into (hostname, parent_domain).

    The parent domain is the registrable domain (eTLD+1) according to the
    public suffix list, so ``sub.example.com`` and ``example.com`` both map
    to ``example.com`` while ``example.co.uk`` maps to itself. Hosts with no
    registrable domain (IP addresses, ``localhost``) use the hostname.

    Raises:
        UrlParseError: If the URL is empty, not http(s), or has no host.
    """
    if not url or not url.startswith("http"):
        raise UrlParseError(url, "not an http(s) URL")
    try:
        hostname = urlsplit(url).hostname
    except ValueError as e:
        raise UrlParseError(url, str(e)) from e
    if not hostname:
        raise UrlParseError(url, "missing hostname")

    ext = _extract(hostname)
    if ext.domain and ext.suffix:
        return hostname, f"{ext.domain}.{ext.suffix}"
    return hostname, hostname
