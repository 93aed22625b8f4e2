"""Organization subscriptions: state machine and lifecycle."""

from ownly.platform.billing.subscriptions.models import (
    ACTIVE_STATUSES,
    SUBSCRIPTION_TRANSITIONS,
    Organization,
    OrganizationSubscription,
    PrimaryContact,
    SubscriptionStatus,
    SubscriptionSummary,
    can_transition,
)

__all__ = [
    "ACTIVE_STATUSES",
    "SUBSCRIPTION_TRANSITIONS",
    "Organization",
    "OrganizationSubscription",
    "PrimaryContact",
    "SubscriptionStatus",
    "SubscriptionSummary",
    "can_transition",
]
