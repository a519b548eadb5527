from __future__ import annotations

from competitor_intel.utils.robots import RobotsRules, parse_robots_txt

ROBOTS = """
# comment
User-agent: *
Disallow: /private
Allow: /private/public
Disallow: /*.pdf$
Crawl-delay: 2
Sitemap: https://a.com/sitemap.xml
Sitemap: https://a.com/sitemap.xml

User-agent: MyBot
Disallow: /
"""


def test_wildcard_group_longest_match_wins() -> None:
    rules = parse_robots_txt(ROBOTS)
    assert not rules.is_allowed("https://a.com/private/x")
    assert rules.is_allowed("https://a.com/private/public/x")
    assert not rules.is_allowed("/docs/file.pdf")
    assert rules.is_allowed("/docs/file.pdf?page=2")
    assert rules.is_allowed("/")
    assert rules.crawl_delay == 2.0
    assert rules.sitemaps == ("https://a.com/sitemap.xml",)


def test_named_agent_group_is_preferred() -> None:
    rules = parse_robots_txt(ROBOTS, user_agent="MyBot/1.0 (+https://mybot.example)")
    assert not rules.is_allowed("/anything")
    assert rules.crawl_delay is None
    assert rules.sitemaps == ("https://a.com/sitemap.xml",)


def test_allow_wins_ties_and_empty_disallow_allows_all() -> None:
    tie = parse_robots_txt("User-agent: *\nDisallow: /a\nAllow: /a\n")
    assert tie.is_allowed("/a/b")
    assert parse_robots_txt("User-agent: *\nDisallow:\n").is_allowed("/x")


def test_missing_or_unmatched_groups_allow_everything() -> None:
    assert parse_robots_txt("").is_allowed("/x")
    assert parse_robots_txt("User-agent: OtherBot\nDisallow: /\n").is_allowed("/x")
    assert RobotsRules.allow_all().is_allowed("https://a.com/admin")
