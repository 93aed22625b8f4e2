"""Tests for feature pricing and synergy rules."""

from decimal import Decimal
from itertools import combinations

import pytest
from pydantic import ValidationError

from ownly.platform.billing.exceptions import InvalidFeatureError
from ownly.platform.billing.pricing.models import (
    DEFAULT_PRICING_TABLE,
    Capability,
    FeaturePrice,
    PricingTable,
    Quote,
    QuoteLine,
    SynergyRule,
    plan_label,
)
from ownly.platform.billing.pricing.service import PricingEngine, parse_features

pytestmark = pytest.mark.unit

ALL_FEATURES = [c.value for c in Capability]


@pytest.fixture
def engine() -> PricingEngine:
    return PricingEngine()


class TestComputeQuote:
    """Quote computation against the default table."""

    @pytest.mark.parametrize("size", [1, 2, 3, 7])
    def test_totals_equal_breakdown_sums(self, engine, size):
        for selection in combinations(ALL_FEATURES, size):
            quote = engine.compute_quote(selection)

            assert quote.setup_total == sum(line.setup for line in quote.breakdown.values())
            assert quote.monthly_total == sum(line.monthly for line in quote.breakdown.values())
            assert isinstance(quote.setup_total, int) and quote.setup_total >= 0
            assert isinstance(quote.monthly_total, int) and quote.monthly_total >= 0
            assert set(quote.breakdown) == {Capability(key) for key in selection}

    def test_single_feature_uses_base_price(self, engine):
        quote = engine.compute_quote(["website"])

        assert quote.setup_total == 600_000
        assert quote.monthly_total == 15_000
        assert quote.breakdown[Capability.WEBSITE] == QuoteLine(setup=600_000, monthly=15_000)

    def test_web_app_and_ai_synergy_adds_ten_percent_setup(self, engine):
        quote = engine.compute_quote(["web-app", "ai", "website"])

        assert quote.breakdown[Capability.WEB_APP] == QuoteLine(setup=1_320_000, monthly=40_000)
        assert quote.breakdown[Capability.AI] == QuoteLine(setup=330_000, monthly=15_000)
        # Other lines untouched
        assert quote.breakdown[Capability.WEBSITE] == QuoteLine(setup=600_000, monthly=15_000)
        assert quote.setup_total == 1_320_000 + 330_000 + 600_000
        assert quote.monthly_total == 40_000 + 15_000 + 15_000

    @pytest.mark.parametrize("feature", ["web-app", "ai"])
    def test_synergy_requires_both_features(self, engine, feature):
        quote = engine.compute_quote([feature])
        base = DEFAULT_PRICING_TABLE.prices[Capability(feature)]

        assert quote.setup_total == base.setup_cents
        assert quote.monthly_total == base.monthly_cents

    def test_empty_selection_is_zero_quote(self, engine):
        quote = engine.compute_quote([])

        assert quote.setup_total == 0
        assert quote.monthly_total == 0
        assert quote.breakdown == {}

    def test_duplicates_are_ignored(self, engine):
        assert engine.compute_quote(["email", "email"]) == engine.compute_quote(["email"])

    def test_unknown_feature_raises(self, engine):
        with pytest.raises(InvalidFeatureError) as exc_info:
            engine.compute_quote(["website", "crypto-mining"])

        assert exc_info.value.error_code == "INVALID_FEATURE"
        assert exc_info.value.context["features"] == ["crypto-mining"]

    def test_breakdown_follows_catalog_order(self, engine):
        quote = engine.compute_quote(["email", "website", "ai"])

        assert list(quote.breakdown) == [Capability.WEBSITE, Capability.AI, Capability.EMAIL]
        assert quote.features == [Capability.WEBSITE, Capability.AI, Capability.EMAIL]


class TestInjectedPricingTable:
    """The engine prices from whatever table it is given."""

    def test_alternate_table(self):
        table = PricingTable(
            prices={
                Capability.WEBSITE: FeaturePrice(setup_cents=1_000, monthly_cents=100),
                Capability.EMAIL: FeaturePrice(setup_cents=333, monthly_cents=10),
            },
            synergy_rules=(
                SynergyRule(
                    name="site-mail",
                    requires=frozenset({Capability.WEBSITE, Capability.EMAIL}),
                    adjusts=frozenset({Capability.EMAIL}),
                    setup_percent=Decimal("15"),
                ),
            ),
        )
        quote = PricingEngine(table).compute_quote(["website", "email"])

        # 15% of 333 = 49.95 -> 50
        assert quote.breakdown[Capability.EMAIL].setup == 383
        assert quote.breakdown[Capability.WEBSITE].setup == 1_000

    def test_rules_do_not_compound(self):
        prices = {
            Capability.WEBSITE: FeaturePrice(setup_cents=10_000, monthly_cents=0),
            Capability.AI: FeaturePrice(setup_cents=10_000, monthly_cents=0),
        }
        both = frozenset({Capability.WEBSITE, Capability.AI})
        table = PricingTable(
            prices=prices,
            synergy_rules=(
                SynergyRule(
                    name="a",
                    requires=both,
                    adjusts=frozenset({Capability.WEBSITE}),
                    setup_percent=Decimal("10"),
                ),
                SynergyRule(
                    name="b",
                    requires=both,
                    adjusts=frozenset({Capability.WEBSITE}),
                    setup_percent=Decimal("10"),
                ),
            ),
        )
        quote = PricingEngine(table).compute_quote(["website", "ai"])

        assert quote.breakdown[Capability.WEBSITE].setup == 12_000

    def test_unpriced_capability_rejected(self):
        table = PricingTable(
            prices={Capability.WEBSITE: FeaturePrice(setup_cents=1, monthly_cents=1)}
        )
        with pytest.raises(InvalidFeatureError):
            PricingEngine(table).compute_quote(["ai"])

    def test_table_is_immutable(self):
        with pytest.raises(TypeError):
            DEFAULT_PRICING_TABLE.prices[Capability.AI] = FeaturePrice(
                setup_cents=0, monthly_cents=0
            )  # type: ignore[index]

    def test_rule_must_adjust_only_required_capabilities(self):
        with pytest.raises(ValueError):
            SynergyRule(
                name="bad",
                requires=frozenset({Capability.AI}),
                adjusts=frozenset({Capability.EMAIL}),
                setup_percent=Decimal("5"),
            )

    def test_feature_price_rejects_negative_and_float(self):
        with pytest.raises(ValueError):
            FeaturePrice(setup_cents=-1, monthly_cents=0)
        with pytest.raises(ValueError):
            FeaturePrice(setup_cents=10.5, monthly_cents=0)  # type: ignore[arg-type]
        with pytest.raises(ValueError):
            FeaturePrice(setup_cents=True, monthly_cents=0)  # type: ignore[arg-type]

    def test_rule_must_reference_priced_capabilities(self):
        with pytest.raises(ValueError):
            PricingTable(
                prices={Capability.WEBSITE: FeaturePrice(setup_cents=1, monthly_cents=1)},
                synergy_rules=(
                    SynergyRule(
                        name="site-ai",
                        requires=frozenset({Capability.WEBSITE, Capability.AI}),
                        adjusts=frozenset({Capability.AI}),
                        setup_percent=Decimal("5"),
                    ),
                ),
            )

    def test_price_values_are_frozen(self):
        price = DEFAULT_PRICING_TABLE.prices[Capability.WEBSITE]

        with pytest.raises(ValidationError):
            price.setup_cents = 1  # type: ignore[misc]


class TestQuoteModel:
    def test_inconsistent_totals_rejected(self):
        with pytest.raises(ValueError):
            Quote(
                setup_total=10,
                monthly_total=0,
                breakdown={Capability.AI: QuoteLine(setup=5, monthly=0)},
            )

    def test_plan_label_joins_labels(self):
        assert plan_label([Capability.AI, Capability.WEBSITE]) == "Website + AI Assistant"

    def test_parse_features_accepts_enum_members(self):
        assert parse_features([Capability.AI, "email"]) == {Capability.AI, Capability.EMAIL}
