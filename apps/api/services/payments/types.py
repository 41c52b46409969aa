"""Payment gateway contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional


ProviderKey = Literal["stripe", "payhere"]
GatewayVerdict = Literal["completed", "failed"]


@dataclass(frozen=True)
class CheckoutSession:
    provider: ProviderKey
    payment_reference: str
    redirect_url: str
    form_fields: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "payment_reference": self.payment_reference,
            "redirect_url": self.redirect_url,
            "form_fields": dict(self.form_fields),
        }


@dataclass(frozen=True)
class GatewayNotification:
    """A verified completion or failure signal for one purchase.

    Gateways deliver these at least once, so the same notification may
    arrive repeatedly and out of order.
    """

    provider: ProviderKey
    verdict: GatewayVerdict
    purchase_id: Optional[str]
    payment_reference: Optional[str]
    event_id: Optional[str] = None
    raw_status: Optional[str] = None
    amount_minor: Optional[int] = None
    currency: Optional[str] = None
