from decimal import Decimal

import pytest

from services.credit_plans import (
    CREDIT_PLANS,
    MODEL_CREDIT_COSTS,
    CreditPlan,
    PlanCatalog,
    TOKENS_PER_CREDIT_UNIT,
    to_minor_units,
)


def test_catalog_lists_bundles_in_display_order(catalog):
    plans = catalog.list_plans()
    assert [plan.id for plan in plans] == ["starter", "professional", "enterprise"]
    assert [plan.credits for plan in plans] == [100, 500, 2000]
    assert [plan for plan in plans if plan.popular][0].id == "professional"


def test_get_plan_returns_none_for_unknown_id(catalog):
    assert catalog.get_plan("starter").credits == 100
    assert catalog.get_plan(" professional ").id == "professional"
    assert catalog.get_plan("platinum") is None
    assert catalog.get_plan("") is None


def test_unknown_models_cost_the_default_credit(catalog):
    assert catalog.get_model_cost("devin") == 5
    assert catalog.get_model_cost("llama") == 1
    assert catalog.get_model_cost("unknown-model-xyz") == 1
    assert catalog.get_model_cost("") == 1


def test_default_model_cost_is_configurable():
    catalog = PlanCatalog(CREDIT_PLANS, MODEL_CREDIT_COSTS, default_model_cost=3)
    assert catalog.get_model_cost("brand-new-model") == 3
    assert catalog.get_model_cost("cursor") == 3
    assert catalog.get_model_cost("v0") == 2


def test_catalog_rejects_free_models_and_duplicate_plans():
    with pytest.raises(ValueError):
        PlanCatalog(CREDIT_PLANS, {"free-model": 0})
    with pytest.raises(ValueError):
        PlanCatalog(CREDIT_PLANS, MODEL_CREDIT_COSTS, default_model_cost=0)
    with pytest.raises(ValueError):
        PlanCatalog(CREDIT_PLANS + (CREDIT_PLANS[0],), MODEL_CREDIT_COSTS)


def test_model_costs_copy_does_not_mutate_catalog(catalog):
    costs = catalog.model_costs()
    costs["devin"] = 1
    assert catalog.get_model_cost("devin") == 5


def test_prices_convert_to_minor_units():
    assert to_minor_units(Decimal("9.99")) == 999
    assert to_minor_units(Decimal("29.99")) == 2999
    assert to_minor_units(Decimal("0.005")) == 1

    plan = CreditPlan(
        id="tiny",
        name="Tiny",
        credits=5,
        price=Decimal("1.50"),
        currency="USD",
        description="test plan",
    )
    payload = plan.to_dict()
    assert payload["price"] == "1.50"
    assert payload["price_minor"] == 150
    assert payload["features"] == []


def test_calculate_tokens_from_credits(catalog):
    assert catalog.calculate_tokens_from_credits(10, "devin") == 2 * TOKENS_PER_CREDIT_UNIT
    assert catalog.calculate_tokens_from_credits(10, "unknown") == 10 * TOKENS_PER_CREDIT_UNIT
    assert catalog.calculate_tokens_from_credits(-4, "llama") == 0
