"""
Subscription and organization billing models.

The organization document owns its subscription state. Status changes are
constrained by ``SUBSCRIPTION_TRANSITIONS``.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from ownly.platform.billing.pricing.models import Capability


class SubscriptionStatus(str, Enum):
    """Subscription status."""

    INCOMPLETE = "incomplete"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    PAUSED = "paused"


# canceled -> active is reachable only through reactivation, never from a
# processor event.
# Nothing but an administrative pause leads to paused.
SUBSCRIPTION_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.INCOMPLETE: frozenset(
        {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.TRIALING,
            SubscriptionStatus.CANCELED,
            SubscriptionStatus.PAUSED,
        }
    ),
    SubscriptionStatus.TRIALING: frozenset(
        {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.CANCELED,
            SubscriptionStatus.PAUSED,
        }
    ),
    SubscriptionStatus.ACTIVE: frozenset(
        {SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELED, SubscriptionStatus.PAUSED}
    ),
    SubscriptionStatus.PAST_DUE: frozenset(
        {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.CANCELED,
            SubscriptionStatus.UNPAID,
            SubscriptionStatus.PAUSED,
        }
    ),
    SubscriptionStatus.UNPAID: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED, SubscriptionStatus.PAUSED}
    ),
    SubscriptionStatus.CANCELED: frozenset({SubscriptionStatus.ACTIVE}),
    SubscriptionStatus.PAUSED: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED}),
}

ACTIVE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


def can_transition(
    current: SubscriptionStatus, target: SubscriptionStatus, *, reactivating: bool = False
) -> bool:
    """Whether ``current -> target`` is a legal status change.

    A canceled subscription only moves again when ``reactivating`` is set.
    """
    if current == target:
        return True
    if current == SubscriptionStatus.CANCELED and not reactivating:
        return False
    return target in SUBSCRIPTION_TRANSITIONS[current]


class PrimaryContact(BaseModel):
    """Organization billing contact."""

    name: str
    email: str
    phone: str | None = None


class OrganizationSubscription(BaseModel):
    """Billing state owned by an organization."""

    model_config = ConfigDict(validate_assignment=True)

    plan: str = ""
    active: bool = False
    features: list[Capability] = Field(default_factory=list)

    external_customer_id: str | None = None
    external_subscription_id: str | None = None
    billing_email: str

    setup_total: int = Field(0, ge=0, description="Setup charge in cents")
    monthly_total: int = Field(0, ge=0, description="Monthly charge in cents")
    setup_paid: bool = False

    status: SubscriptionStatus = SubscriptionStatus.INCOMPLETE
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    trial_start: datetime | None = None
    trial_end: datetime | None = None

    # Hosted page for the first invoice until the setup charge is paid
    payment_url: str | None = None

    # Processor timestamp of the last applied subscription event, or of our
    # own confirmed lifecycle change
    external_updated_at: datetime | None = None

    def set_status(self, status: SubscriptionStatus) -> None:
        """Set status and keep the derived ``active`` flag in sync."""
        self.status = status
        self.active = status in ACTIVE_STATUSES

    @property
    def is_live(self) -> bool:
        """Has a processor subscription that has not been canceled."""
        return (
            self.external_subscription_id is not None
            and self.status != SubscriptionStatus.CANCELED
        )


class Organization(BaseModel):
    """Client organization document (billing-relevant fields only)."""

    id: str
    name: str
    primary_contact: PrimaryContact
    subscription: OrganizationSubscription | None = None
    version: int = 0


class SubscriptionSummary(BaseModel):
    """Read model returned to account pages."""

    org_id: str
    plan: str
    active: bool
    status: SubscriptionStatus
    features: list[Capability]
    setup_total: int
    monthly_total: int
    setup_paid: bool
    payment_url: str | None = None
    cancel_at_period_end: bool
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    next_billing_date: datetime | None = None

    @classmethod
    def from_organization(cls, org: Organization) -> "SubscriptionSummary":
        sub = org.subscription
        if sub is None:
            raise ValueError(f"Organization {org.id} has no subscription")
        next_billing = None
        if sub.status not in (SubscriptionStatus.CANCELED, SubscriptionStatus.PAUSED) and not (
            sub.cancel_at_period_end
        ):
            next_billing = sub.current_period_end
        return cls(
            org_id=org.id,
            plan=sub.plan,
            active=sub.active,
            status=sub.status,
            features=sub.features,
            setup_total=sub.setup_total,
            monthly_total=sub.monthly_total,
            setup_paid=sub.setup_paid,
            payment_url=sub.payment_url,
            cancel_at_period_end=sub.cancel_at_period_end,
            current_period_start=sub.current_period_start,
            current_period_end=sub.current_period_end,
            trial_end=sub.trial_end,
            next_billing_date=next_billing,
        )
