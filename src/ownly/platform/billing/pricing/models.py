"""
Pricing reference data and quote models.

Capabilities, their base prices and synergy rules are immutable values.
A ``PricingTable`` is injected into the pricing engine so alternate tables
can be used in tests or for future price revisions.
"""

from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator, model_validator


class Capability(str, Enum):
    """Sellable product capabilities."""

    WEBSITE = "website"
    WEB_APP = "web-app"
    AI = "ai"
    AUTOMATIONS = "automations"
    PAYMENTS = "payments"
    CONTENT_MANAGEMENT = "content-management"
    EMAIL = "email"


CAPABILITY_LABELS: Mapping[Capability, str] = MappingProxyType(
    {
        Capability.WEBSITE: "Website",
        Capability.WEB_APP: "Web App",
        Capability.AI: "AI Assistant",
        Capability.AUTOMATIONS: "Automations",
        Capability.PAYMENTS: "Payments",
        Capability.CONTENT_MANAGEMENT: "CMS",
        Capability.EMAIL: "Email",
    }
)

_CAPABILITY_ORDER = {capability: index for index, capability in enumerate(Capability)}


def sort_capabilities(features: Iterable[Capability]) -> list[Capability]:
    """Deduplicate and order capabilities by catalog position."""
    return sorted(set(features), key=_CAPABILITY_ORDER.__getitem__)


def plan_label(features: Iterable[Capability]) -> str:
    """Human-readable plan name, e.g. ``"Website + Web App"``."""
    return " + ".join(CAPABILITY_LABELS[c] for c in sort_capabilities(features))


class FeaturePrice(BaseModel):
    """Base price pair for a capability, in cents."""

    model_config = ConfigDict(frozen=True)

    setup_cents: StrictInt = Field(ge=0)
    monthly_cents: StrictInt = Field(ge=0)


class SynergyRule(BaseModel):
    """Setup adjustment applied when every required capability is selected.

    The adjustment is always a percentage of the *base* setup price, so several
    rules touching the same line add up instead of compounding.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    requires: frozenset[Capability]
    adjusts: frozenset[Capability]
    setup_percent: Decimal

    @model_validator(mode="after")
    def _adjusts_only_required(self) -> "SynergyRule":
        if not self.adjusts <= self.requires:
            raise ValueError("Synergy rule may only adjust capabilities it requires")
        return self

    def applies_to(self, selection: frozenset[Capability]) -> bool:
        return self.requires <= selection


class PricingTable(BaseModel):
    """Immutable pricing configuration."""

    model_config = ConfigDict(frozen=True)

    prices: Mapping[Capability, FeaturePrice]
    synergy_rules: tuple[SynergyRule, ...] = ()
    currency: str = "USD"

    @field_validator("prices", mode="after")
    @classmethod
    def _read_only_prices(
        cls, value: Mapping[Capability, FeaturePrice]
    ) -> Mapping[Capability, FeaturePrice]:
        return MappingProxyType(dict(value))

    @model_validator(mode="after")
    def _rules_reference_priced_capabilities(self) -> "PricingTable":
        for rule in self.synergy_rules:
            missing = rule.requires - self.prices.keys()
            if missing:
                raise ValueError(f"Synergy rule {rule.name} references unpriced capabilities")
        return self


DEFAULT_PRICING_TABLE = PricingTable(
    prices={
        Capability.WEBSITE: FeaturePrice(setup_cents=600_000, monthly_cents=15_000),
        Capability.WEB_APP: FeaturePrice(setup_cents=1_200_000, monthly_cents=40_000),
        Capability.AI: FeaturePrice(setup_cents=300_000, monthly_cents=15_000),
        Capability.AUTOMATIONS: FeaturePrice(setup_cents=200_000, monthly_cents=10_000),
        Capability.PAYMENTS: FeaturePrice(setup_cents=250_000, monthly_cents=12_000),
        Capability.CONTENT_MANAGEMENT: FeaturePrice(setup_cents=150_000, monthly_cents=8_000),
        Capability.EMAIL: FeaturePrice(setup_cents=30_000, monthly_cents=1_500),
    },
    synergy_rules=(
        SynergyRule(
            name="web-app-ai",
            requires=frozenset({Capability.WEB_APP, Capability.AI}),
            adjusts=frozenset({Capability.WEB_APP, Capability.AI}),
            setup_percent=Decimal("10"),
        ),
    ),
)


class QuoteLine(BaseModel):
    """Per-capability price line in cents."""

    model_config = ConfigDict(frozen=True)

    setup: int = Field(ge=0)
    monthly: int = Field(ge=0)


class Quote(BaseModel):
    """Itemized price quote. Always replaced wholesale, never edited."""

    model_config = ConfigDict(frozen=True)

    setup_total: int = Field(ge=0)
    monthly_total: int = Field(ge=0)
    breakdown: dict[Capability, QuoteLine] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _totals_match_breakdown(self) -> "Quote":
        if self.setup_total != sum(line.setup for line in self.breakdown.values()):
            raise ValueError("setup_total must equal the sum of breakdown setup values")
        if self.monthly_total != sum(line.monthly for line in self.breakdown.values()):
            raise ValueError("monthly_total must equal the sum of breakdown monthly values")
        return self

    @property
    def features(self) -> list[Capability]:
        return sort_capabilities(self.breakdown)


class QuoteRecord(BaseModel):
    """Last computed quote for an organization or project."""

    owner_id: str
    features: list[Capability]
    quote: Quote
    approved: bool = False
    approved_at: datetime | None = None
    approved_by: str | None = None
    computed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


__all__ = [
    "Capability",
    "CAPABILITY_LABELS",
    "FeaturePrice",
    "SynergyRule",
    "PricingTable",
    "DEFAULT_PRICING_TABLE",
    "QuoteLine",
    "Quote",
    "QuoteRecord",
    "plan_label",
    "sort_capabilities",
]
