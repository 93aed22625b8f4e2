"""Feature pricing: reference data, quote computation and quote approval."""

from ownly.platform.billing.pricing.models import (
    CAPABILITY_LABELS,
    DEFAULT_PRICING_TABLE,
    Capability,
    FeaturePrice,
    PricingTable,
    Quote,
    QuoteLine,
    QuoteRecord,
    SynergyRule,
    plan_label,
)
from ownly.platform.billing.pricing.service import PricingEngine, QuoteService, parse_features

__all__ = [
    "CAPABILITY_LABELS",
    "DEFAULT_PRICING_TABLE",
    "Capability",
    "FeaturePrice",
    "PricingEngine",
    "PricingTable",
    "Quote",
    "QuoteLine",
    "QuoteRecord",
    "QuoteService",
    "SynergyRule",
    "parse_features",
    "plan_label",
]
