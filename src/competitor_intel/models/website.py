"""Wire models for crawled website content.

Field names serialize in camelCase (`model_dump(by_alias=True)`); the shapes are
shared with the persistence/UI collaborators and only grow additively.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..utils.validators import normalize_url


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PriceData(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    price: float
    currency: str
    timestamp: datetime = Field(default_factory=utc_now)
    source: str
    # Text the price was found in (product name / snippet), when known
    context: Optional[str] = None


class Offering(WireModel):
    """A product or service offered on a website."""

    name: str
    price: Optional[float] = None
    currency: str = "$"
    url: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None


class ContactInfo(WireModel):
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def is_empty(self) -> bool:
        return all(v is None for v in self.model_dump().values())

    def merged_with(self, other: ContactInfo | None) -> ContactInfo:
        """Fill our missing fields from `other` (ours win)."""
        if other is None:
            return self
        data = other.model_dump(exclude_none=True)
        data.update(self.model_dump(exclude_none=True))
        return ContactInfo(**data)


class WebsiteMetadata(WireModel):
    structured_data: List[dict[str, Any]] = Field(default_factory=list)
    contact_info: Optional[ContactInfo] = None
    prices: List[PriceData] = Field(default_factory=list)


class WebsiteContent(WireModel):
    url: str
    title: str = ""
    description: str = ""
    products: List[Offering] = Field(default_factory=list)
    services: List[Offering] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    main_content: str = ""
    metadata: WebsiteMetadata = Field(default_factory=WebsiteMetadata)

    @field_validator("url")
    @classmethod
    def _with_scheme(cls, v: str) -> str:
        return normalize_url(v)

    @classmethod
    def empty(cls, url: str) -> WebsiteContent:
        return cls(url=url)

    @property
    def offerings(self) -> list[Offering]:
        return [*self.products, *self.services]

    def is_empty(self) -> bool:
        return not (
            self.title
            or self.description
            or self.products
            or self.services
            or self.main_content
            or self.metadata.structured_data
            or self.metadata.prices
        )


def _dedup(values: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for v in values:
        key = v.strip().lower()
        if not key or key in seen:
            continue
        seen.add(key)
        out.append(v.strip())
    return out


def merge_website_content(base: WebsiteContent, extra: WebsiteContent | None) -> WebsiteContent:
    """Merge two crawls of the same business additively.

    Products/services/structured data/prices are unioned, categories/keywords are
    deduplicated, and `base` keeps its url/title/description unless they are empty.
    """
    if extra is None:
        return base

    contact = base.metadata.contact_info
    if contact is None:
        contact = extra.metadata.contact_info
    else:
        contact = contact.merged_with(extra.metadata.contact_info)

    main_parts = [p for p in (base.main_content, extra.main_content) if p]
    return WebsiteContent(
        url=base.url,
        title=base.title or extra.title,
        description=base.description or extra.description,
        products=[*base.products, *extra.products],
        services=[*base.services, *extra.services],
        categories=_dedup([*base.categories, *extra.categories]),
        keywords=_dedup([*base.keywords, *extra.keywords]),
        main_content="\n".join(main_parts),
        metadata=WebsiteMetadata(
            structured_data=[*base.metadata.structured_data, *extra.metadata.structured_data],
            contact_info=contact,
            prices=[*base.metadata.prices, *extra.metadata.prices],
        ),
    )
