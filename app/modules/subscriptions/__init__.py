"""
Subscription billing module.

Billing periods, proration and plan transitions (upgrade, downgrade,
renewal, cancellation) for gym organizations.
"""

from .models import (
    SubscriptionPlan, SubscriptionOrganization, SubscriptionOperation, SubscriptionCancellation,
    SubscriptionStatus, SubscriptionOperationType, DurationPeriod, BillingFrequency, CancellationReason
)
from .billing_period import BillingPeriodCalculator
from .proration import ProrationEngine
from .service import SubscriptionTransitionService
from . import crud, router

__all__ = [
    # Models
    "SubscriptionPlan",
    "SubscriptionOrganization",
    "SubscriptionOperation",
    "SubscriptionCancellation",
    "SubscriptionStatus",
    "SubscriptionOperationType",
    "DurationPeriod",
    "BillingFrequency",
    "CancellationReason",

    # Core
    "BillingPeriodCalculator",
    "ProrationEngine",
    "SubscriptionTransitionService",

    # Modules
    "crud",
    "router"
]
