"""Models package."""

from .credit_balance import CreditBalance
from .credit_usage_event import CreditUsageEvent
from .credit_purchase import CreditPurchase
