"""Static credit bundle catalog and per-model credit costs."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Mapping, Optional, Sequence, Tuple

from config import settings


TOKENS_PER_CREDIT_UNIT = 1000


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class CreditPlan:
    id: str
    name: str
    credits: int
    price: Decimal
    currency: str
    description: str
    features: Tuple[str, ...] = field(default_factory=tuple)
    popular: bool = False

    @property
    def price_minor(self) -> int:
        """Price in minor currency units (cents)."""
        return to_minor_units(self.price)

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "credits": self.credits,
            "price": str(self.price),
            "price_minor": self.price_minor,
            "currency": self.currency,
            "popular": self.popular,
            "description": self.description,
            "features": list(self.features),
        }


CREDIT_PLANS: Tuple[CreditPlan, ...] = (
    CreditPlan(
        id="starter",
        name="Starter",
        credits=100,
        price=Decimal("9.99"),
        currency="USD",
        description="Perfect for trying out AI tools",
        features=("100 AI credits", "Access to all AI models", "Basic support", "Credit usage analytics"),
    ),
    CreditPlan(
        id="professional",
        name="Professional",
        credits=500,
        price=Decimal("29.99"),
        currency="USD",
        popular=True,
        description="Best value for regular users",
        features=(
            "500 AI credits",
            "Access to all AI models",
            "Priority support",
            "Advanced analytics",
            "Export chat history",
        ),
    ),
    CreditPlan(
        id="enterprise",
        name="Enterprise",
        credits=2000,
        price=Decimal("99.99"),
        currency="USD",
        description="For power users and teams",
        features=(
            "2000 AI credits",
            "Access to all AI models",
            "Premium support",
            "Advanced analytics",
            "Export chat history",
            "API access",
            "Custom integrations",
        ),
    ),
)

MODEL_CREDIT_COSTS: Dict[str, int] = {
    "v0": 2,
    "cursor": 3,
    "bolt": 2,
    "lovable": 4,
    "devin": 5,
    "cluely": 3,
    "windsurf": 3,
    "replit": 2,
    "claude": 4,
    "llama": 1,
    "gpt4free": 1,
}


class PlanCatalog:
    """Read-only lookup over purchasable plans and model costs.

    Instances never change after construction, so one catalog can be shared
    by every request.
    """

    def __init__(
        self,
        plans: Sequence[CreditPlan],
        model_costs: Mapping[str, int],
        default_model_cost: int = 1,
    ) -> None:
        if default_model_cost < 1:
            raise ValueError("default_model_cost must be at least 1")
        seen = set()
        for plan in plans:
            if plan.id in seen:
                raise ValueError(f"Duplicate credit plan id: {plan.id}")
            if plan.credits <= 0:
                raise ValueError(f"Credit plan {plan.id} must grant a positive number of credits")
            seen.add(plan.id)
        for model_id, cost in model_costs.items():
            if int(cost) < 1:
                raise ValueError(f"Model {model_id} must cost at least 1 credit")

        self._plans: Tuple[CreditPlan, ...] = tuple(plans)
        self._plans_by_id: Dict[str, CreditPlan] = {plan.id: plan for plan in self._plans}
        self._model_costs: Dict[str, int] = {key: int(value) for key, value in model_costs.items()}
        self.default_model_cost = int(default_model_cost)

    def list_plans(self) -> Tuple[CreditPlan, ...]:
        return self._plans

    def get_plan(self, plan_id: str) -> Optional[CreditPlan]:
        """Return the plan, or None when the id is not in the catalog."""
        return self._plans_by_id.get(str(plan_id or "").strip())

    def get_model_cost(self, model_id: str) -> int:
        """Credits charged per invocation. Unknown models fall back to the default cost."""
        return self._model_costs.get(str(model_id or "").strip(), self.default_model_cost)

    def model_costs(self) -> Dict[str, int]:
        return dict(self._model_costs)

    def calculate_tokens_from_credits(self, credits: int, model_id: str) -> int:
        cost = self.get_model_cost(model_id)
        return (max(int(credits), 0) // cost) * TOKENS_PER_CREDIT_UNIT


def default_catalog() -> PlanCatalog:
    return PlanCatalog(
        CREDIT_PLANS,
        MODEL_CREDIT_COSTS,
        default_model_cost=max(int(settings.DEFAULT_MODEL_CREDIT_COST), 1),
    )
