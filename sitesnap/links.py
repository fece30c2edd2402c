"""DOM link harvesting and URL normalization helpers for the crawler."""

from __future__ import annotations

from typing import Sequence
from urllib.parse import urldefrag, urljoin, urlparse, urlunparse

from bs4 import BeautifulSoup

_HTTP_SCHEMES = {"http", "https"}


def extract_anchor_hrefs(html: str, *, base_url: str) -> list[str]:
    """Return absolute http(s) hrefs for every ``<a href>`` in document order.

    Relative links are resolved against ``base_url`` (or a ``<base href>``
    when the document declares one); fragments are dropped.
    """

    soup = BeautifulSoup(html, "html.parser")
    base_tag = soup.find("base", href=True)
    effective_base = urljoin(base_url, base_tag["href"]) if base_tag else base_url

    hrefs: list[str] = []
    for anchor in soup.find_all("a", href=True):
        raw = anchor["href"].strip()
        if not raw or raw.startswith(("javascript:", "mailto:", "tel:", "data:")):
            continue
        absolute, _fragment = urldefrag(urljoin(effective_base, raw))
        if urlparse(absolute).scheme.lower() in _HTTP_SCHEMES:
            hrefs.append(absolute)
    return hrefs


def normalize_url(url: str) -> str:
    """Visited-set key: lowercase scheme/host plus path; query and fragment dropped."""

    parsed = urlparse(url)
    scheme = (parsed.scheme or "http").lower()
    netloc = (parsed.netloc or "").lower()
    path = parsed.path or "/"
    return urlunparse((scheme, netloc, path, "", "", ""))


def url_origin(url: str) -> str:
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    scheme = parsed.scheme.lower()
    port = parsed.port
    if port is None or (scheme, port) in {("http", 80), ("https", 443)}:
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


def same_origin(url: str, origin: str) -> bool:
    return url_origin(url) == origin


def is_http_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme.lower() in _HTTP_SCHEMES and bool(parsed.netloc)


def filter_same_origin(links: Sequence[str], *, origin: str) -> list[str]:
    """Keep absolute http(s) links that share ``origin``, preserving order."""

    return [link for link in links if is_http_url(link) and same_origin(link, origin)]
