"""Bounded same-origin breadth-first discovery feeding the capture pipeline."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Sequence

from sitesnap.links import filter_same_origin, normalize_url, url_origin
from sitesnap.renderer import RenderError

LOGGER = logging.getLogger(__name__)

LinkExtractor = Callable[[str], Awaitable[Sequence[str]]]


class CrawlError(Exception):
    """The seed page could not be reached, so nothing can be discovered."""

    def __init__(self, seed_url: str, reason: str) -> None:
        super().__init__(f"seed {seed_url} unreachable: {reason}")
        self.seed_url = seed_url
        self.reason = reason


@dataclass
class CrawlReport:
    """Discovered URLs in BFS order plus per-page extraction failures."""

    seed_url: str
    page_budget: int
    urls: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)
    navigations: int = 0


class SiteCrawler:
    """Discover up to ``page_budget`` same-origin pages starting from a seed.

    Link extraction is delegated to ``extract_links`` (normally
    :meth:`sitesnap.renderer.Renderer.extract_links`), so the crawler itself
    never touches the browser.
    """

    def __init__(self, extract_links: LinkExtractor) -> None:
        self._extract_links = extract_links

    async def discover(self, seed_url: str, page_budget: int) -> list[str]:
        report = await self.crawl(seed_url, page_budget)
        return list(report.urls)

    async def crawl(self, seed_url: str, page_budget: int) -> CrawlReport:
        if page_budget < 1:
            msg = "page_budget must be >= 1"
            raise ValueError(msg)

        report = CrawlReport(seed_url=seed_url, page_budget=page_budget)
        if page_budget == 1:
            report.urls.append(seed_url)
            return report

        origin = url_origin(seed_url)
        visited: set[str] = {normalize_url(seed_url)}
        queue: deque[str] = deque([seed_url])

        while queue and len(report.urls) < page_budget:
            url = queue.popleft()
            report.urls.append(url)
            if len(report.urls) >= page_budget:
                break

            report.navigations += 1
            try:
                links = await self._extract_links(url)
            except RenderError as exc:
                if url == seed_url:
                    raise CrawlError(seed_url, str(exc)) from exc
                LOGGER.warning("Link extraction failed for %s: %s", url, exc)
                report.failures[url] = str(exc)
                continue

            for link in filter_same_origin(links, origin=origin):
                key = normalize_url(link)
                if key in visited:
                    continue
                visited.add(key)
                queue.append(link)

        LOGGER.info(
            "Crawl from %s discovered %d/%d pages (%d extraction failures)",
            seed_url,
            len(report.urls),
            page_budget,
            len(report.failures),
        )
        return report
