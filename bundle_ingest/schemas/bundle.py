"""Pydantic schemas for scraped and canonical bundles.

Both accept the camelCase wire names used by the bundle feeds
(``billingCycle``, ``isActive``, ``lastVerified``, ``rawPayload``) as well as
the snake_case field names.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Optional

from pydantic import (
    AnyHttpUrl,
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    TypeAdapter,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]

_http_url = TypeAdapter(AnyHttpUrl)

# Largest price whose cent value fits the 32-bit price_cents columns
MAX_PRICE = 21_474_836.47


class ScrapedBundle(BaseModel):
    """Raw, untrusted record as returned by a scraper."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: str
    name: str
    services: list[str] = Field(default_factory=list)
    price: float
    currency: str
    billing_cycle: Optional[str] = None
    regions: list[str] = Field(default_factory=list)
    provider: str
    link: str
    tags: list[str] = Field(default_factory=list)
    summary: Optional[str] = None
    is_active: Optional[bool] = None
    last_verified: Optional[datetime] = None
    source: Optional[str] = None
    confidence: Optional[float] = None
    raw_payload: Optional[Any] = None


class Bundle(BaseModel):
    """Canonical, validated bundle ready for persistence."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: NonEmptyStr
    name: NonEmptyStr
    services: list[NonEmptyStr] = Field(min_length=1)
    price: float = Field(ge=0, le=MAX_PRICE, allow_inf_nan=False)
    currency: Literal["USD", "EUR", "GBP", "CAD", "AUD"]
    billing_cycle: Literal["mo", "yr"] = "mo"
    regions: list[NonEmptyStr] = Field(min_length=1)
    provider: NonEmptyStr
    link: str
    tags: list[NonEmptyStr] = Field(default_factory=list)
    summary: Optional[NonEmptyStr] = None
    is_active: bool = True
    last_verified: Optional[datetime] = None
    source: Optional[Literal["official", "carrier", "partner", "aggregator"]] = None
    confidence: Optional[float] = Field(default=None, ge=0, le=1)
    raw_payload: Optional[Any] = None

    @field_validator("link")
    @classmethod
    def _link_must_be_http(cls, value: str) -> str:
        # Validate with pydantic's URL type but keep the scraper's exact string
        value = value.strip()
        try:
            _http_url.validate_python(value)
        except ValidationError as exc:
            raise ValueError("link must be an http(s) URL") from exc
        return value
