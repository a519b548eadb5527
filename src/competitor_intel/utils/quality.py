"""Content quality checks.

Used by the fetcher to tell an empty shell page (client-side rendered, bot
wall) from real content before falling back to another user agent.
"""

from __future__ import annotations

from dataclasses import dataclass

from bs4 import BeautifulSoup


@dataclass(frozen=True)
class QualityReport:
    word_count: int
    text_length: int
    text_to_html_ratio: float

    def is_empty_shell(self, min_word_count: int) -> bool:
        return self.word_count == 0 or self.word_count < min_word_count


def assess_quality(html: str) -> QualityReport:
    soup = BeautifulSoup(html or "", "lxml")
    # Remove common non-content elements that can heavily skew HTML size.
    for tag in soup.find_all(["script", "style", "noscript", "template"]):
        tag.decompose()
    text = soup.get_text("\n", strip=True)
    text_len = len(text)
    cleaned_html = str(soup)
    html_len = max(1, len(cleaned_html))
    words = [w for w in text.split() if w]
    return QualityReport(
        word_count=len(words),
        text_length=text_len,
        text_to_html_ratio=float(text_len) / float(html_len),
    )
