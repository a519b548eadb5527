"""HTML -> normalized WebsiteContent.

Deterministic parts (meta tags, JSON-LD, contact info, keywords, categories,
heuristic prices, main text) are pure functions of the HTML. Products and
services come from one LLM call through the model router, validated field by
field before they are trusted.
"""

from __future__ import annotations

import json
import re
from typing import Any, Iterable, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from bs4.element import Comment, Tag

from ..domain.errors import CompetitorIntelError, ModelSaturationError
from ..llm.router import ModelRouter
from ..models.website import ContactInfo, Offering, PriceData, WebsiteContent, WebsiteMetadata
from ..observability.logger import get_logger
from ..utils.deadline import Deadline
from ..utils.validators import normalize_url
from .content_filter import ContentFilter

logger = get_logger(__name__)

MAX_PRICE = 1_000_000

PRICE_SELECTORS = (
    "[itemprop=price]",
    ".price",
    "[data-price]",
    "[class*=price]",
    "[id*=price]",
)

_CURRENCY = r"(?:US\$|\$|€|£|¥|(?<![A-Za-z])(?:USD|EUR|GBP|CHF|JPY)(?![A-Za-z]))"
_NUMBER = r"\d[\d.,]*\d|\d"
PRICE_RE = re.compile(
    rf"(?P<cur1>{_CURRENCY})\s?(?P<num1>{_NUMBER})|(?P<num2>{_NUMBER})\s?(?P<cur2>{_CURRENCY})"
)
CURRENCY_RE = re.compile(_CURRENCY)

_CURRENCY_SYMBOLS = {
    "US$": "$",
    "$": "$",
    "USD": "$",
    "€": "€",
    "EUR": "€",
    "£": "£",
    "GBP": "£",
    "¥": "¥",
    "JPY": "¥",
    "CHF": "CHF",
}

_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_EXCLUDED_TAGS = {"nav", "footer", "header", "script", "style", "noscript", "template"}

OFFERINGS_PROMPT = """Analyze this website content and extract the products and services it offers.

Structured Data Available:
{structured_data}

Guidelines:
1. Look for clear product/service offerings with names and prices
2. Categorize items appropriately
3. Extract URLs when available
4. Use currency symbols ($, €, £) or ISO codes
5. Include descriptions that explain the value proposition

Return ONLY a JSON object with this structure:
{{
  "products": [
    {{"name": "Product Name", "url": "URL or null", "price": number or null,
      "currency": "USD/EUR/etc", "description": "Brief description or null",
      "category": "Product category or null"}}
  ],
  "services": [
    {{"name": "Service Name", "url": "URL or null", "price": number or null,
      "currency": "USD/EUR/etc", "description": "Brief description or null",
      "category": "Service category or null"}}
  ]
}}

Website Content:
{content}"""


# ---------------------------------------------------------------------------
# text
# ---------------------------------------------------------------------------
def sanitize_text(text: str) -> str:
    return " ".join((text or "").split())


def prepare_text_for_analysis(texts: Iterable[str], max_length: int) -> str:
    """Join cleaned texts, truncating the last one that does not fit."""
    out = ""
    for text in (sanitize_text(t) for t in texts):
        if not text:
            continue
        if len(out) + len(text) <= max_length:
            out += text + " "
            continue
        remaining = max_length - len(out)
        if remaining > 0:
            out += text[:remaining]
        break
    return out.strip()


# ---------------------------------------------------------------------------
# prices
# ---------------------------------------------------------------------------
def normalize_currency(token: str | None, default: str = "$") -> str:
    if not token:
        return default
    t = token.strip()
    return _CURRENCY_SYMBOLS.get(t.upper() if t.isalpha() else t, t)


def normalize_number(raw: str) -> Optional[float]:
    """Parse a price number with US or European separators.

    Both separators present: the last one is the decimal mark. A single kind of
    separator is a decimal mark only when exactly one occurrence is followed by
    one or two digits; otherwise it groups thousands.
    """
    s = (raw or "").strip()
    if not s:
        return None
    has_dot = "." in s
    has_comma = "," in s
    if has_dot and has_comma:
        decimal = "." if s.rfind(".") > s.rfind(",") else ","
        thousands = "," if decimal == "." else "."
        s = s.replace(thousands, "").replace(decimal, ".")
    elif has_comma or has_dot:
        sep = "," if has_comma else "."
        parts = s.split(sep)
        if len(parts) == 2 and 1 <= len(parts[1]) <= 2:
            s = parts[0] + "." + parts[1]
        else:
            s = "".join(parts)
    try:
        return float(s)
    except ValueError:
        return None


def _valid_price(value: Optional[float]) -> Optional[float]:
    if value is None or not 0 < value < MAX_PRICE:
        return None
    return round(value, 2)


def parse_price_text(text: str, default_currency: str | None = None) -> list[tuple[float, str]]:
    """All (price, currency) pairs found in `text`.

    Without a currency token nothing is returned unless `default_currency` is given,
    in which case the first bare number counts.
    """
    if not text or "@" in text:
        return []
    found: list[tuple[float, str]] = []
    for m in PRICE_RE.finditer(text):
        num = m.group("num1") or m.group("num2")
        cur = m.group("cur1") or m.group("cur2")
        price = _valid_price(normalize_number(num))
        if price is not None:
            found.append((price, normalize_currency(cur)))
    if not found and default_currency:
        m = re.search(_NUMBER, text)
        if m:
            price = _valid_price(normalize_number(m.group(0)))
            if price is not None:
                found.append((price, normalize_currency(default_currency)))
    return found


def _is_excluded(tag: Tag) -> bool:
    """Inside nav/header/footer, or hidden by attribute/inline style."""
    node: Any = tag
    while isinstance(node, Tag):
        if node.name in _EXCLUDED_TAGS:
            return True
        if node.has_attr("hidden") or node.get("aria-hidden") == "true":
            return True
        style = (node.get("style") or "").replace(" ", "").lower()
        if "display:none" in style or "visibility:hidden" in style:
            return True
        node = node.parent
    return False


def _item_currency(tag: Tag) -> Optional[str]:
    scope = tag.find_parent(attrs={"itemscope": True}) or tag.parent
    if scope is None:
        return None
    cur = scope.find(attrs={"itemprop": "priceCurrency"})
    if cur is None:
        return None
    return cur.get("content") or cur.get_text(strip=True) or None


def extract_prices(soup: BeautifulSoup) -> list[PriceData]:
    prices: list[PriceData] = []
    seen: set[tuple[float, str, str]] = set()

    def add(price: float, currency: str, source: str, context: str) -> None:
        key = (price, currency, context)
        if key in seen:
            return
        seen.add(key)
        prices.append(PriceData(price=price, currency=currency, source=source, context=context or None))

    for selector in PRICE_SELECTORS:
        for el in soup.select(selector):
            if _is_excluded(el):
                continue
            text = sanitize_text(el.get_text(" ", strip=True))
            context = text[:120]
            machine = el.get("content") or el.get("data-price")
            if machine:
                token = CURRENCY_RE.search(text)
                currency = _item_currency(el) or (token.group(0) if token else None)
                for price, cur in parse_price_text(str(machine), default_currency=currency or "$"):
                    add(price, cur, selector, context)
                continue
            for price, cur in parse_price_text(text):
                add(price, cur, selector, context)

    # Free text mentioning a currency ("Rooms from €1.200,50 per night")
    for node in soup.find_all(string=CURRENCY_RE):
        parent = node.parent
        if isinstance(node, Comment) or parent is None or _is_excluded(parent):
            continue
        text = sanitize_text(str(node))
        for price, cur in parse_price_text(text):
            add(price, cur, "text", text[:120])

    return prices


# ---------------------------------------------------------------------------
# structured data / meta
# ---------------------------------------------------------------------------
def extract_structured_data(soup: BeautifulSoup) -> list[dict[str, Any]]:
    """JSON-LD blocks, flattened (top-level arrays and `@graph`); invalid blocks are skipped."""
    items: list[dict[str, Any]] = []
    for el in soup.find_all("script", attrs={"type": "application/ld+json"}):
        raw = el.string or el.get_text() or ""
        if not raw.strip():
            continue
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.debug("json_ld_invalid", error=str(e))
            continue
        stack = data if isinstance(data, list) else [data]
        for item in stack:
            if not isinstance(item, dict):
                continue
            graph = item.get("@graph")
            if isinstance(graph, list):
                items.extend(g for g in graph if isinstance(g, dict))
                if len(item) > 2:
                    items.append({k: v for k, v in item.items() if k != "@graph"})
            else:
                items.append(item)
    return items


def _meta(soup: BeautifulSoup, *, name: str | None = None, prop: str | None = None) -> str:
    attrs = {"name": name} if name else {"property": prop}
    el = soup.find("meta", attrs=attrs)
    if el is None:
        return ""
    return sanitize_text(el.get("content") or "")


def extract_meta_tags(soup: BeautifulSoup) -> tuple[str, str]:
    title_el = soup.find("title")
    title = sanitize_text(title_el.get_text()) if title_el else ""
    title = title or _meta(soup, prop="og:title") or _meta(soup, name="twitter:title")
    description = (
        _meta(soup, name="description")
        or _meta(soup, prop="og:description")
        or _meta(soup, name="twitter:description")
    )
    return title, description


def _types(item: dict[str, Any]) -> set[str]:
    t = item.get("@type")
    if isinstance(t, list):
        return {str(x) for x in t}
    return {str(t)} if t else set()


def extract_keywords(soup: BeautifulSoup, structured_data: list[dict[str, Any]]) -> list[str]:
    raw: list[str] = []
    meta = _meta(soup, name="keywords")
    if meta:
        raw.extend(meta.split(","))
    for item in structured_data:
        kw = item.get("keywords")
        if isinstance(kw, str):
            raw.extend(kw.split(","))
        elif isinstance(kw, list):
            raw.extend(str(k) for k in kw)
    out: list[str] = []
    seen: set[str] = set()
    for k in (sanitize_text(x) for x in raw):
        if k and k.lower() not in seen:
            seen.add(k.lower())
            out.append(k)
    return out


def extract_categories(structured_data: list[dict[str, Any]]) -> list[str]:
    out: list[str] = []
    for item in structured_data:
        types = _types(item)
        if "BreadcrumbList" in types:
            for el in item.get("itemListElement") or []:
                if not isinstance(el, dict):
                    continue
                name = el.get("name")
                if name is None and isinstance(el.get("item"), dict):
                    name = el["item"].get("name")
                if isinstance(name, str) and name.strip().lower() not in ("home", ""):
                    out.append(name.strip())
        cat = item.get("category")
        if isinstance(cat, str) and cat.strip():
            out.append(cat.strip())
    seen: set[str] = set()
    return [c for c in out if not (c.lower() in seen or seen.add(c.lower()))]


def _str(value: Any) -> Optional[str]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    return value.strip() if isinstance(value, str) and value.strip() else None


def _address_fields(address: Any) -> dict[str, Any]:
    if isinstance(address, str):
        return {"address": sanitize_text(address)}
    if not isinstance(address, dict):
        return {}
    country = address.get("addressCountry")
    if isinstance(country, dict):
        country = country.get("name")
    parts = [
        _str(address.get(k))
        for k in ("streetAddress", "addressLocality", "addressRegion", "postalCode")
        if _str(address.get(k))
    ]
    return {
        "address": _str(address.get("streetAddress")) or (", ".join(parts) if parts else None),
        "city": _str(address.get("addressLocality")),
        "region": _str(address.get("addressRegion")),
        "postal_code": _str(address.get("postalCode")),
        "country": _str(country),
    }


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def extract_contact_info(soup: BeautifulSoup, structured_data: list[dict[str, Any]]) -> ContactInfo:
    data: dict[str, Any] = {}

    for item in structured_data:
        types = _types(item)
        if "PostalAddress" in types:
            data.update({k: v for k, v in _address_fields(item).items() if v})
        elif item.get("address"):
            data.update({k: v for k, v in _address_fields(item["address"]).items() if v and k not in data})
        geo = item.get("geo")
        if isinstance(geo, dict) and "latitude" not in data:
            lat, lng = _to_float(geo.get("latitude")), _to_float(geo.get("longitude"))
            if lat is not None and lng is not None:
                data["latitude"], data["longitude"] = lat, lng
        if isinstance(item.get("telephone"), str) and "phone" not in data:
            data["phone"] = item["telephone"].strip()
        if isinstance(item.get("email"), str) and "email" not in data:
            data["email"] = item["email"].replace("mailto:", "").strip()

    if "email" not in data:
        mail = soup.select_one("a[href^='mailto:']")
        if mail is not None:
            data["email"] = mail["href"][len("mailto:") :].split("?")[0].strip()
    if "phone" not in data:
        tel = soup.select_one("a[href^='tel:']")
        if tel is not None:
            data["phone"] = tel["href"][len("tel:") :].strip()

    if "address" not in data:
        for node in soup.find_all(string=re.compile("Address:")):
            text = sanitize_text(node.parent.get_text(" ", strip=True) if node.parent else str(node))
            if len(text) > 10 and "," in text:
                data["address"] = text.replace("Address:", "").strip()
                break

    if "email" not in data:
        m = _EMAIL_RE.search(soup.get_text(" ", strip=True))
        if m:
            data["email"] = m.group(0)

    return ContactInfo(**data)


# ---------------------------------------------------------------------------
# offerings
# ---------------------------------------------------------------------------
def validate_offerings(raw: Any, base_url: str | None = None) -> list[Offering]:
    """Keep entries with a name; default/normalize price, currency, url, description, category."""
    if not isinstance(raw, list):
        return []
    out: list[Offering] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        name = item.get("name")
        if not isinstance(name, str) or not name.strip():
            continue

        price_raw = item.get("price")
        price: Optional[float] = None
        if isinstance(price_raw, (int, float)) and not isinstance(price_raw, bool):
            price = _valid_price(float(price_raw))
        elif isinstance(price_raw, str):
            parsed = parse_price_text(price_raw, default_currency="$")
            price = parsed[0][0] if parsed else None

        currency = item.get("currency")
        url = item.get("url")
        if isinstance(url, str) and url.strip() and url.strip().lower() != "null":
            url = urljoin(base_url, url.strip()) if base_url else url.strip()
        else:
            url = None

        def _opt(key: str) -> Optional[str]:
            v = item.get(key)
            return v.strip() if isinstance(v, str) and v.strip() and v.strip().lower() != "null" else None

        out.append(
            Offering(
                name=name.strip(),
                price=price,
                currency=normalize_currency(currency if isinstance(currency, str) else None),
                url=url,
                description=_opt("description"),
                category=_opt("category"),
            )
        )
    return out


def offerings_from_structured_data(structured_data: list[dict[str, Any]], base_url: str | None = None) -> list[Offering]:
    """Schema.org Product/Service/Offer nodes as offerings."""
    raw: list[dict[str, Any]] = []
    for item in structured_data:
        types = _types(item)
        if not types & {"Product", "Service", "Offer", "HotelRoom", "Course", "SoftwareApplication"}:
            continue
        offers = item.get("offers")
        if isinstance(offers, list):
            offers = offers[0] if offers else None
        offer = offers if isinstance(offers, dict) else (item if "Offer" in types else {})
        raw.append(
            {
                "name": item.get("name"),
                "url": item.get("url") or offer.get("url"),
                "price": offer.get("price") or offer.get("lowPrice"),
                "currency": offer.get("priceCurrency"),
                "description": item.get("description"),
                "category": item.get("category") if isinstance(item.get("category"), str) else None,
            }
        )
    return validate_offerings(raw, base_url)


class ContentExtractor:
    def __init__(
        self,
        router: ModelRouter | None,
        *,
        content_filter: ContentFilter | None = None,
        max_text_length: int = 15000,
        max_structured_data_chars: int = 4000,
    ):
        self._router = router
        self._filter = content_filter or ContentFilter()
        self._max_text = int(max_text_length)
        self._max_sd_chars = int(max_structured_data_chars)

    def extract_static(self, html: str, url: str) -> WebsiteContent:
        """Everything except the LLM offerings."""
        soup = BeautifulSoup(html or "", "lxml")
        structured = extract_structured_data(soup)
        title, description = extract_meta_tags(soup)
        contact = extract_contact_info(soup, structured)
        prices = extract_prices(soup)
        main = prepare_text_for_analysis([self._filter.main_text(html or "")], self._max_text)
        return WebsiteContent(
            url=normalize_url(url),
            title=title,
            description=description,
            categories=extract_categories(structured),
            keywords=extract_keywords(soup, structured),
            main_content=main,
            metadata=WebsiteMetadata(
                structured_data=structured,
                contact_info=None if contact.is_empty() else contact,
                prices=prices,
            ),
        )

    async def extract(self, html: str, url: str, deadline: Deadline | None = None) -> WebsiteContent:
        content = self.extract_static(html, url)
        products, services = await self.extract_offerings(content, deadline)
        content.products = products
        content.services = services
        logger.info(
            "content_extracted",
            url=content.url,
            products=len(products),
            services=len(services),
            prices=len(content.metadata.prices),
            structured_data=len(content.metadata.structured_data),
        )
        return content

    async def extract_offerings(
        self, content: WebsiteContent, deadline: Deadline | None = None
    ) -> tuple[list[Offering], list[Offering]]:
        """LLM extraction of products/services, with schema.org nodes as the fallback."""
        structured = content.metadata.structured_data
        fallback = offerings_from_structured_data(structured, content.url)
        if self._router is None or not (content.main_content or structured):
            return fallback, []

        sd_text = json.dumps(structured, ensure_ascii=False, default=str)[: self._max_sd_chars]
        prompt = OFFERINGS_PROMPT.format(structured_data=sd_text or "[]", content=content.main_content[: self._max_text])
        try:
            data = await self._router.invoke_json("extract_offerings", prompt, "object", deadline=deadline)
        except ModelSaturationError:
            raise
        except CompetitorIntelError as e:
            # The static parts of the page stay usable
            logger.warning(
                "offerings_extraction_failed",
                url=content.url,
                error_type=type(e).__name__,
                error=str(e),
                fallback=len(fallback),
            )
            return fallback, []

        products = validate_offerings(data.get("products"), content.url)
        services = validate_offerings(data.get("services"), content.url)
        if not products and not services and fallback:
            logger.info("offerings_from_structured_data", url=content.url, count=len(fallback))
            return fallback, []
        return products, services
