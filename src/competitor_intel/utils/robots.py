"""robots.txt parsing.

Supports `User-agent` groups, `Allow`/`Disallow` with `*` and `$` wildcards
(longest match wins, `Allow` wins ties), `Crawl-delay` and `Sitemap` lines.
Fetching and caching live in `crawl.site_structure`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlparse


@dataclass(frozen=True)
class RobotsRule:
    pattern: str
    allow: bool

    def _regex(self) -> re.Pattern:
        anchored = self.pattern.endswith("$")
        body = self.pattern[:-1] if anchored else self.pattern
        rx = "".join(".*" if ch == "*" else re.escape(ch) for ch in body)
        return re.compile("^" + rx + ("$" if anchored else ""))

    def matches(self, path: str) -> bool:
        return bool(self._regex().match(path))


@dataclass(frozen=True)
class RobotsRules:
    rules: tuple[RobotsRule, ...] = ()
    sitemaps: tuple[str, ...] = ()
    crawl_delay: Optional[float] = None

    @classmethod
    def allow_all(cls) -> RobotsRules:
        return cls()

    def is_allowed(self, url_or_path: str) -> bool:
        parsed = urlparse(url_or_path)
        path = parsed.path or "/"
        if parsed.query:
            path = f"{path}?{parsed.query}"

        best: RobotsRule | None = None
        for rule in self.rules:
            if not rule.matches(path):
                continue
            if best is None or len(rule.pattern) > len(best.pattern):
                best = rule
            elif len(rule.pattern) == len(best.pattern) and rule.allow:
                best = rule
        return True if best is None else best.allow


@dataclass
class _Group:
    agents: list[str] = field(default_factory=list)
    rules: list[RobotsRule] = field(default_factory=list)
    crawl_delay: Optional[float] = None


def _agent_token(user_agent: str) -> str:
    # "Mozilla/5.0 (compatible; MyBot/1.0)" -> "mozilla"; "MyBot/1.0" -> "mybot"
    parts = (user_agent or "").split("/")[0].split()
    return parts[0].lower() if parts else "*"


def parse_robots_txt(text: str, user_agent: str = "*") -> RobotsRules:
    groups: list[_Group] = []
    sitemaps: list[str] = []
    current: _Group | None = None
    last_was_agent = False

    for raw in (text or "").splitlines():
        line = raw.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue
        key, value = line.split(":", 1)
        key = key.strip().lower()
        value = value.strip()

        if key == "sitemap":
            if value:
                sitemaps.append(value)
            continue
        if key == "user-agent":
            if current is None or not last_was_agent:
                current = _Group()
                groups.append(current)
            current.agents.append(value.lower())
            last_was_agent = True
            continue

        last_was_agent = False
        if current is None:
            continue
        if key in ("allow", "disallow"):
            # Empty Disallow means "allow everything"
            if value:
                current.rules.append(RobotsRule(pattern=value, allow=(key == "allow")))
        elif key == "crawl-delay":
            try:
                current.crawl_delay = float(value)
            except ValueError:
                pass

    token = _agent_token(user_agent)
    chosen = None
    if token != "*":
        chosen = next((g for g in groups if any(a != "*" and a in token for a in g.agents)), None)
    if chosen is None:
        chosen = next((g for g in groups if "*" in g.agents), None)

    seen: set[str] = set()
    unique_sitemaps = tuple(s for s in sitemaps if not (s in seen or seen.add(s)))
    if chosen is None:
        return RobotsRules(sitemaps=unique_sitemaps)
    return RobotsRules(rules=tuple(chosen.rules), sitemaps=unique_sitemaps, crawl_delay=chosen.crawl_delay)
