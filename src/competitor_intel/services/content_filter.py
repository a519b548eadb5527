"""Content filtering (noise removal + main-content extraction)."""

from __future__ import annotations

from bs4 import BeautifulSoup

DEFAULT_NOISE_SELECTORS = [
    "header",
    "footer",
    "nav",
    "aside",
    "form",
    ".navigation",
    ".menu",
    ".breadcrumb",
    ".cookie",
    "#cookie-banner",
    ".cookie-consent",
    ".newsletter",
    ".social-media",
    ".advertisement",
    "[role=dialog]",
]


class ContentFilter:
    """Noise filtering for business pages.

    Rules:
    - Apply noise filters before main-content extraction
    - Fall back to the whole (filtered) document when no main region stands out
    """

    def __init__(self, default_noise_selectors: list[str] | None = None, *, min_main_text: int = 200):
        self._default_noise_selectors = (
            default_noise_selectors if default_noise_selectors is not None else list(DEFAULT_NOISE_SELECTORS)
        )
        self._min_main_text = int(min_main_text)
        self._content_selectors = [
            "main",
            "[role=main]",
            "article",
            "#content",
            ".content",
            ".main-content",
            "#main",
            ".page-content",
        ]

    def filter_soup(self, soup: BeautifulSoup, noise_selectors: list[str] | None = None):
        """Remove noise in place and return the main-content element (or the soup itself)."""
        for tag in soup.find_all(["script", "style", "noscript", "iframe", "template", "svg"]):
            tag.decompose()

        selectors = noise_selectors if noise_selectors else self._default_noise_selectors
        for selector in selectors:
            for el in soup.select(selector):
                el.decompose()

        main = self._find_main_content(soup)
        return main if main is not None else soup

    def filter_html(self, html: str, noise_selectors: list[str] | None = None) -> str:
        soup = BeautifulSoup(html, "lxml")
        return str(self.filter_soup(soup, noise_selectors))

    def main_text(self, html: str, noise_selectors: list[str] | None = None) -> str:
        soup = BeautifulSoup(html, "lxml")
        node = self.filter_soup(soup, noise_selectors)
        return " ".join(node.get_text(" ", strip=True).split())

    def _find_main_content(self, soup: BeautifulSoup):
        for selector in self._content_selectors:
            candidate = soup.select_one(selector)
            if candidate is None:
                continue
            text = candidate.get_text(strip=True)
            if len(text) >= self._min_main_text:
                return candidate
        return None
