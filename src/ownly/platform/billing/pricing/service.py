"""
Pricing engine and quote persistence.

``PricingEngine`` is a pure function of its pricing table: no I/O, safe to
call concurrently. ``QuoteService`` stores the last computed quote for an
organization or project and records client approval.
"""

from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from ownly.platform.billing.exceptions import InvalidFeatureError, QuoteNotFoundError
from ownly.platform.billing.money_utils import format_cents, percentage_of
from ownly.platform.billing.pricing.models import (
    DEFAULT_PRICING_TABLE,
    Capability,
    PricingTable,
    Quote,
    QuoteLine,
    QuoteRecord,
    sort_capabilities,
)

if TYPE_CHECKING:
    from ownly.platform.billing.store.base import BillingStore

logger = structlog.get_logger(__name__)


def parse_features(selection: Iterable[str | Capability]) -> frozenset[Capability]:
    """Convert raw feature keys to capabilities, rejecting unknown keys."""
    features: set[Capability] = set()
    unknown: list[str] = []
    for key in selection:
        if isinstance(key, Capability):
            features.add(key)
            continue
        try:
            features.add(Capability(key))
        except ValueError:
            unknown.append(str(key))

    if unknown:
        raise InvalidFeatureError(
            f"Unknown feature(s): {', '.join(sorted(unknown))}", features=sorted(unknown)
        )
    return frozenset(features)


class PricingEngine:
    """Turns a feature selection into an itemized quote."""

    def __init__(self, pricing_table: PricingTable = DEFAULT_PRICING_TABLE) -> None:
        self.pricing_table = pricing_table

    def compute_quote(self, selection: Iterable[str | Capability]) -> Quote:
        """
        Price a feature selection.

        Args:
            selection: Capability keys; duplicates are ignored

        Returns:
            Quote with per-capability breakdown and totals in cents

        Raises:
            InvalidFeatureError: If a key is unknown or has no price
        """
        features = parse_features(selection)
        prices = self.pricing_table.prices

        unpriced = [c.value for c in features if c not in prices]
        if unpriced:
            raise InvalidFeatureError(
                f"No price configured for: {', '.join(sorted(unpriced))}", features=sorted(unpriced)
            )

        setup = {c: prices[c].setup_cents for c in features}
        monthly = {c: prices[c].monthly_cents for c in features}

        # Each rule works off the base price so rules never compound
        for rule in self.pricing_table.synergy_rules:
            if not rule.applies_to(features):
                continue
            for capability in rule.adjusts:
                setup[capability] += percentage_of(
                    prices[capability].setup_cents, rule.setup_percent
                )

        breakdown = {
            c: QuoteLine(setup=setup[c], monthly=monthly[c]) for c in sort_capabilities(features)
        }
        return Quote(
            setup_total=sum(line.setup for line in breakdown.values()),
            monthly_total=sum(line.monthly for line in breakdown.values()),
            breakdown=breakdown,
        )


class QuoteService:
    """Prices selections for an owner and tracks approval of the latest quote."""

    def __init__(
        self,
        store: "BillingStore",
        engine: PricingEngine | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.engine = engine or PricingEngine()
        self._clock = clock or (lambda: datetime.now(UTC))

    async def price_selection(
        self, owner_id: str, selection: Iterable[str | Capability]
    ) -> QuoteRecord:
        """Compute a quote and replace the owner's stored quote with it."""
        quote = self.engine.compute_quote(selection)
        record = QuoteRecord(
            owner_id=owner_id,
            features=quote.features,
            quote=quote,
            computed_at=self._clock(),
        )
        await self.store.save_quote(record)

        currency = self.engine.pricing_table.currency
        logger.info(
            "quote.computed",
            owner_id=owner_id,
            features=[f.value for f in record.features],
            setup_total=quote.setup_total,
            monthly_total=quote.monthly_total,
            setup_display=format_cents(quote.setup_total, currency),
            monthly_display=format_cents(quote.monthly_total, currency),
        )
        return record

    async def get_quote(self, owner_id: str) -> QuoteRecord | None:
        return await self.store.get_quote(owner_id)

    async def approve_quote(self, owner_id: str, approved_by: str) -> QuoteRecord:
        """Mark the owner's current quote as approved."""
        record = await self.store.get_quote(owner_id)
        if record is None:
            raise QuoteNotFoundError(f"No quote stored for {owner_id}", owner_id=owner_id)

        approved = record.model_copy(
            update={"approved": True, "approved_at": self._clock(), "approved_by": approved_by}
        )
        await self.store.save_quote(approved)

        logger.info("quote.approved", owner_id=owner_id, approved_by=approved_by)
        return approved
