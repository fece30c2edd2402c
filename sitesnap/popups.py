"""Best-effort consent banner and modal suppression applied before capture."""

from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Mapping
from urllib.parse import urlparse

from playwright.async_api import Page

HEURISTIC_KEY = "heuristic:stacked-fixed"
OVERLAY_KEY = "heuristic:overlay-backdrop"

_REMOVE_SELECTORS_JS = """
(selectors) => {
    const stats = {};
    for (const selector of selectors) {
        let nodes = [];
        try {
            nodes = Array.from(document.querySelectorAll(selector));
        } catch (err) {
            stats[selector] = 0;
            continue;
        }
        stats[selector] = nodes.length;
        for (const node of nodes) {
            node.remove();
        }
    }
    return stats;
}
"""

_HIDE_STACKED_JS = """
(threshold) => {
    let stacked = 0;
    let overlays = 0;
    const isPositioned = (style) => style.position === 'fixed' || style.position === 'absolute';
    for (const el of Array.from(document.querySelectorAll('body *'))) {
        const style = window.getComputedStyle(el);
        if (!isPositioned(style)) {
            continue;
        }
        const z = parseInt(style.zIndex, 10);
        if (!Number.isNaN(z) && z > threshold) {
            el.style.setProperty('display', 'none', 'important');
            stacked += 1;
            continue;
        }
        const marker = `${el.id || ''} ${typeof el.className === 'string' ? el.className : ''}`.toLowerCase();
        if (marker.includes('overlay') || marker.includes('backdrop')) {
            el.style.setProperty('display', 'none', 'important');
            overlays += 1;
        }
    }
    document.documentElement.style.setProperty('overflow', 'auto', 'important');
    if (document.body) {
        document.body.style.setProperty('overflow', 'auto', 'important');
    }
    return { stacked, overlays };
}
"""


@dataclass(frozen=True)
class PopupBlocklist:
    """Curated consent/modal selectors grouped by global/domain scope."""

    version: str
    global_selectors: tuple[str, ...]
    domain_selectors: Mapping[str, tuple[str, ...]]

    def selectors_for_url(self, url: str) -> tuple[str, ...]:
        """Return the selector set applicable to a given URL (global + domain)."""

        host = (urlparse(url).hostname or "").lower()
        selectors: list[str] = list(self.global_selectors)
        for pattern, scoped in self.domain_selectors.items():
            if _host_matches_pattern(host, pattern.lower()):
                selectors.extend(scoped)
        deduped: dict[str, None] = {selector: None for selector in selectors}
        return tuple(deduped.keys())


async def suppress_popups(
    page: Page,
    *,
    url: str,
    blocklist: PopupBlocklist,
    z_index_threshold: int,
) -> dict[str, int]:
    """Remove blocklisted nodes, then hide high-stacked fixed/absolute layers.

    Returns per-selector hit counts plus two heuristic counters. Legitimate
    sticky content can be hidden and novel popups can be missed.
    """

    hits: dict[str, int] = {}
    selectors = blocklist.selectors_for_url(url)
    if selectors:
        raw = await page.evaluate(_REMOVE_SELECTORS_JS, list(selectors))
        hits.update({selector: int(count) for selector, count in (raw or {}).items() if count})

    heuristics = await page.evaluate(_HIDE_STACKED_JS, z_index_threshold) or {}
    if heuristics.get("stacked"):
        hits[HEURISTIC_KEY] = int(heuristics["stacked"])
    if heuristics.get("overlays"):
        hits[OVERLAY_KEY] = int(heuristics["overlays"])
    return hits


def load_blocklist(path: Path) -> PopupBlocklist:
    """Parse the JSON blocklist file."""

    data = json.loads(path.read_text("utf-8"))
    global_selectors = tuple(data.get("global", []))
    domains_raw: Mapping[str, Iterable[str]] = data.get("domains", {})
    domain_selectors = {domain: tuple(selectors) for domain, selectors in domains_raw.items()}
    return PopupBlocklist(
        version=data.get("version", "unknown"),
        global_selectors=global_selectors,
        domain_selectors=domain_selectors,
    )


@lru_cache(maxsize=1)
def cached_blocklist(path: str) -> PopupBlocklist:
    """Memoized blocklist loader suitable for per-process reuse."""

    return load_blocklist(Path(path))


def _host_matches_pattern(host: str, pattern: str) -> bool:
    if not pattern:
        return False
    if pattern.startswith("*."):
        suffix = pattern[1:]
        return host.endswith(suffix)
    return host == pattern
