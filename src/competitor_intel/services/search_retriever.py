"""Search-engine result retrieval (ValueSERP).

Two uses: candidate discovery (`search`) turns a `SearchStrategy` into
candidate competitor domains with whatever rating/review/price metadata the
result page carried; pricing lookup (`search_prices`) runs templated
pricing queries for one domain and pulls numeric prices out of the results.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any, Iterable, Optional

import aiohttp

from ..domain.errors import (
    AccessDeniedError,
    CompetitorIntelError,
    InvalidInputError,
    NetworkTimeoutError,
    RateLimitedError,
    ServerError,
)
from ..domain.models import PriceRangeHint, SearchCandidate, SearchType
from ..models.insight import SearchStrategy
from ..models.website import Offering, PriceData
from ..observability.logger import get_logger
from ..utils.deadline import Deadline, clamp_timeout
from ..utils.validators import is_valid_domain, normalize_domain

logger = get_logger(__name__)

MAX_PRICE = 1_000_000

_RATING_RE = re.compile(r"(\d+\.?\d*)\((\d+)\)")
_SNIPPET_PRICE_RE = re.compile(r"\$\d+(?:\.\d{2})?")
_CURRENCY_CODE_RE = re.compile(r"[A-Z]{3}")
_NON_NUMERIC_RE = re.compile(r"[^0-9.]")

GENERIC_PRICING_QUERIES = (
    "{domain} pricing",
    "{domain} cost",
    "{domain} rates",
    "how much does {domain} cost",
    "{domain} price comparison",
    "{domain} alternatives price",
    "{domain} vs * price",
    "{domain} monthly fee",
    "{domain} annual subscription",
)


async def _sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None
    cleaned = _NON_NUMERIC_RE.sub("", value)
    try:
        return float(cleaned)
    except ValueError:
        return None


def _int(value: Any) -> Optional[int]:
    n = _number(value)
    return int(n) if n is not None else None


def _domain_of(link: Any) -> str:
    if not isinstance(link, str) or not link.strip():
        return ""
    domain = normalize_domain(link)
    return domain if is_valid_domain(domain) else ""


def _rich_snippet_metadata(result: dict[str, Any]) -> dict[str, Any]:
    top = ((result.get("rich_snippet") or {}).get("top")) or {}
    ext = top.get("detected_extensions") or {}
    out: dict[str, Any] = {}

    currency = ext.get("currency")
    price = _number(ext.get("price"))
    if price is not None and currency:
        code = currency if isinstance(currency, str) else (currency.get("code") or currency.get("symbol"))
        out["price_range"] = PriceRangeHint(min=price, max=price, currency=code or "USD")

    extensions = top.get("extensions") or []
    if extensions and isinstance(extensions[0], str):
        m = _RATING_RE.search(extensions[0])
        if m:
            out["rating"] = float(m.group(1))
            out["review_count"] = int(m.group(2))
    return out


def extract_candidates(response: dict[str, Any], search_type: SearchType) -> list[SearchCandidate]:
    """Normalize one ValueSERP response into candidates (first occurrence of a domain wins)."""
    found: list[SearchCandidate] = []

    kg = response.get("knowledge_graph") or {}
    domain = _domain_of(kg.get("website"))
    if domain:
        price_range = None
        kg_price = _number(kg.get("price_range"))
        if kg_price is not None:
            price_range = PriceRangeHint(min=kg_price, max=kg_price, currency="USD")
        found.append(
            SearchCandidate(
                domain=domain,
                title=kg.get("title"),
                snippet=kg.get("description"),
                url=kg.get("website"),
                rating=_number(kg.get("rating")),
                review_count=_int(kg.get("reviews")),
                price_range=price_range,
            )
        )

    if search_type == SearchType.MAPS:
        for r in response.get("local_results") or []:
            domain = _domain_of(r.get("website"))
            if not domain:
                continue
            found.append(
                SearchCandidate(
                    domain=domain,
                    title=r.get("title"),
                    snippet=r.get("snippet"),
                    url=r.get("website"),
                    rating=_number(r.get("rating")),
                    review_count=_int(r.get("reviews")),
                )
            )
    else:
        key = "shopping_results" if search_type == SearchType.SHOPPING else "organic_results"
        for r in response.get(key) or []:
            domain = _domain_of(r.get("link"))
            if not domain:
                continue
            found.append(
                SearchCandidate(
                    domain=domain,
                    title=r.get("title"),
                    snippet=r.get("snippet"),
                    url=r.get("link"),
                    **_rich_snippet_metadata(r),
                )
            )

    for q in response.get("related_questions") or []:
        source = q.get("source") or {}
        domain = _domain_of(source.get("link"))
        if domain:
            found.append(SearchCandidate(domain=domain, title=source.get("title"), snippet=q.get("answer"), url=source.get("link")))

    unique: dict[str, SearchCandidate] = {}
    for c in found:
        unique.setdefault(c.domain, c)
    return list(unique.values())


def _valid_price(value: Optional[float]) -> Optional[float]:
    if value is None or not 0 < value < MAX_PRICE:
        return None
    return round(value, 2)


def extract_price_data(response: dict[str, Any]) -> list[PriceData]:
    """Prices from shopping results; organic snippets (`$12.34`) only when there are none."""
    results: list[PriceData] = []

    for item in response.get("shopping_results") or []:
        raw = item.get("price")
        if raw is None:
            continue
        price = _valid_price(_number(raw))
        if price is None:
            continue
        code = _CURRENCY_CODE_RE.search(str(raw))
        results.append(
            PriceData(
                price=price,
                currency=code.group(0) if code else "USD",
                source=item.get("link") or "",
                context=item.get("title"),
            )
        )

    if not results:
        for item in response.get("organic_results") or []:
            raw = item.get("price")
            if raw is None:
                m = _SNIPPET_PRICE_RE.search(item.get("snippet") or "")
                raw = m.group(0) if m else None
            if raw is None:
                continue
            price = _valid_price(_number(raw))
            if price is None:
                continue
            code = _CURRENCY_CODE_RE.search(str(raw))
            results.append(
                PriceData(
                    price=price,
                    currency=code.group(0) if code else "USD",
                    source=item.get("link") or "",
                    context=item.get("title"),
                )
            )

    if not results and (response.get("search_information") or {}).get("total_results") == 0:
        logger.info("search_no_results", query=(response.get("search_parameters") or {}).get("q"))
    return results


def pricing_queries(domain: str, offerings: Iterable[Offering] = (), limit: int = 5) -> list[str]:
    """Offering-specific queries first, then the generic templates; at most `limit`."""
    queries: list[str] = []
    for offering in offerings:
        queries.append(f"{domain} {offering.name} price")
        queries.append(f"{offering.name} pricing")
    queries.extend(t.format(domain=domain) for t in GENERIC_PRICING_QUERIES)
    return list(dict.fromkeys(queries))[: max(0, limit)]


class SearchResultRetriever:
    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str = "https://api.valueserp.com",
        google_domain: str = "google.com",
        gl: str = "us",
        hl: str = "en",
        default_location: str = "United States",
        timeout_seconds: float = 15.0,
        max_retries: int = 2,
        retry_backoff_seconds: float = 1.0,
        max_pricing_queries: int = 5,
    ):
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._google_domain = google_domain
        self._gl = gl
        self._hl = hl
        self._default_location = default_location
        self._timeout = float(timeout_seconds)
        self._max_retries = max(0, int(max_retries))
        self._backoff = float(retry_backoff_seconds)
        self._max_pricing_queries = int(max_pricing_queries)

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    def _base_params(self, location: str | None) -> dict[str, str]:
        return {
            "api_key": self._api_key or "",
            "google_domain": self._google_domain,
            "gl": self._gl,
            "hl": self._hl,
            "location": location or self._default_location,
        }

    @staticmethod
    def endpoint_for(strategy: SearchStrategy) -> tuple[str, dict[str, str]]:
        """Path and type-specific query parameters for a strategy."""
        radius = strategy.location_context.radius
        query = strategy.search_query
        if strategy.search_type == SearchType.MAPS:
            return "/search", {"q": query, "tbm": "lcl", "num": "20", "radius": str(radius or 25)}
        if strategy.search_type == SearchType.SHOPPING:
            return "/shopping", {"q": query, "tbm": "shop", "num": "15"}
        if strategy.search_type == SearchType.LOCAL:
            return "/search", {"q": query, "tbm": "lcl", "num": "15", "radius": str(radius or 50)}
        return "/search", {"q": query, "num": "20"}

    async def search(self, strategy: SearchStrategy, deadline: Deadline | None = None) -> list[SearchCandidate]:
        """Candidate domains for `strategy`; [] when search is not configured.

        Raises:
            CompetitorIntelError: the search API failed after bounded retries.
        """
        if not self.enabled:
            logger.warning("search_disabled_missing_api_key")
            return []
        if not strategy.search_query.strip():
            return []

        path, params = self.endpoint_for(strategy)
        location = strategy.location_context.location.country
        data = await self._request(path, {**self._base_params(location), **params}, deadline)
        candidates = extract_candidates(data, strategy.search_type)
        logger.info(
            "search_candidates_retrieved",
            search_type=strategy.search_type.value,
            query=strategy.search_query,
            candidates=len(candidates),
        )
        return candidates

    async def search_prices(
        self,
        domain: str,
        offerings: Iterable[Offering] = (),
        deadline: Deadline | None = None,
    ) -> list[PriceData]:
        """Run pricing queries for `domain`; a failing query is skipped."""
        if not self.enabled:
            return []
        results: list[PriceData] = []
        for query in pricing_queries(domain, offerings, self._max_pricing_queries):
            if deadline is not None and deadline.expired:
                logger.info("pricing_search_budget_exhausted", domain=domain)
                break
            params = {**self._base_params(None), "q": query, "page": "1"}
            try:
                data = await self._request("/search", params, deadline)
            except CompetitorIntelError as e:
                logger.warning("pricing_search_failed", domain=domain, query=query, error=str(e))
                continue
            results.extend(extract_price_data(data))
        logger.info("pricing_search_completed", domain=domain, prices=len(results))
        return results

    async def _request(self, path: str, params: dict[str, str], deadline: Deadline | None) -> dict[str, Any]:
        attempts = self._max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await self._request_once(path, params, deadline)
            except (RateLimitedError, ServerError, NetworkTimeoutError) as e:
                if attempt >= attempts:
                    raise
                delay = self._backoff * (2 ** (attempt - 1))
                if isinstance(e, RateLimitedError) and e.retry_after is not None:
                    delay = e.retry_after
                if deadline is not None and deadline.remaining() <= delay:
                    raise
                logger.info("search_retry_scheduled", path=path, attempt=attempt, delay_s=delay, reason=e.info.code)
                await _sleep(delay)
        raise NetworkTimeoutError("search_retries_exhausted", detail=path)

    async def _request_once(self, path: str, params: dict[str, str], deadline: Deadline | None) -> dict[str, Any]:
        timeout = aiohttp.ClientTimeout(total=clamp_timeout(self._timeout, deadline, stage="search"))
        url = f"{self._base_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=timeout, headers={"Accept": "application/json"}) as session:
                async with session.get(url, params=params) as resp:
                    if resp.status in (401, 403):
                        raise AccessDeniedError("search_api_denied", detail=f"status={resp.status}")
                    if resp.status == 429:
                        retry_after = resp.headers.get("Retry-After")
                        raise RateLimitedError(
                            "search_rate_limited",
                            detail=path,
                            retry_after=_number(retry_after) if retry_after else None,
                        )
                    if resp.status >= 500:
                        raise ServerError("search_server_error", detail=f"status={resp.status}", status=resp.status)
                    if resp.status >= 400:
                        body = await resp.text()
                        raise InvalidInputError("search_request_rejected", detail=f"status={resp.status} {body[:200]}")
                    data = await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise NetworkTimeoutError("search_timeout", detail=path) from e
        except aiohttp.ClientError as e:
            raise NetworkTimeoutError("search_network_error", detail=f"{path}: {e}") from e
        except ValueError as e:
            raise ServerError("search_invalid_response", detail=f"{path}: {e}") from e
        if not isinstance(data, dict):
            raise ServerError("search_invalid_response", detail=path)
        return data
