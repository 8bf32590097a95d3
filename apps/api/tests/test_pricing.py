from decimal import Decimal

import pytest

from services.pricing import (
    DEFAULT_SERVICE_TYPE,
    ServiceType,
    coerce_service_type,
    compute_cost,
    describe_service,
    estimate_cost,
    get_model_cost_multiplier,
    list_models,
    round_credits,
)


def test_facebook_pages_cost_sums_pages_and_posts():
    assert compute_cost(ServiceType.FACEBOOK_PAGES, {"pages": 3, "posts": 150}) == Decimal("16.50")


def test_page_agents_share_facebook_pages_rates():
    quantities = {"pages": 2, "posts": 10}
    expected = compute_cost(ServiceType.FACEBOOK_PAGES, quantities)
    for service in (
        ServiceType.FACEBOOK_PAGES_BENCHMARK,
        ServiceType.FACEBOOK_PAGES_CALENDAR,
        ServiceType.FACEBOOK_PAGES_COPYWRITING,
    ):
        assert compute_cost(service, quantities) == expected


def test_ai_analysis_applies_model_multiplier_to_every_item():
    base = compute_cost("ai_analysis", {"pages": 2, "posts": 20})
    assert base == Decimal("5.00")
    assert compute_cost("ai_analysis", {"pages": 2, "posts": 20}, model_id="openai/gpt-4o") == Decimal("25.00")


def test_benchmark_multiplier_only_scales_ai_item():
    quantities = {"pages": 3, "posts": 30}
    # 3*2 + 30*0.1 + 3 (AI) + 1 (report)
    assert compute_cost("benchmark", quantities) == Decimal("13.00")
    # AI item becomes 3 * 1.5
    assert compute_cost("benchmark", quantities, model_id="openai/gpt-4o-mini") == Decimal("14.50")
    assert compute_cost("benchmark", {**quantities, "ai_analysis": 0}) == Decimal("10.00")


def test_cost_rounds_up_to_smallest_increment():
    # 0.3 * 0.02 = 0.006
    assert compute_cost("comments", {"comments": "0.3"}) == Decimal("0.01")
    # 1 page * 2 * 1.5 + 1 post * 0.05 * 1.5 = 3.075
    assert compute_cost("ai_analysis", {"pages": 1, "posts": 1}, model_id="openai/gpt-4o-mini") == Decimal("3.08")
    assert round_credits(Decimal("1.001")) == Decimal("1.01")
    assert round_credits(Decimal("1.000")) == Decimal("1.00")


def test_unknown_service_falls_back_to_default_rate():
    assert coerce_service_type("teleportation") == DEFAULT_SERVICE_TYPE
    assert compute_cost("teleportation", {"items": 4}) == compute_cost(DEFAULT_SERVICE_TYPE, {"items": 4})


def test_unknown_model_prices_at_base_rate():
    assert get_model_cost_multiplier("acme/unknown-model") == Decimal("1")
    assert get_model_cost_multiplier(None) == Decimal("1")
    assert compute_cost("ai_analysis", {"pages": 1}, model_id="acme/unknown-model") == Decimal("2.00")


def test_non_ai_services_ignore_model():
    assert compute_cost("marketplace", {"items": 10}, model_id="anthropic/claude-3.5-sonnet") == Decimal("5.00")
    assert not ServiceType.MARKETPLACE.is_ai_driven
    assert ServiceType.AI_ANALYSIS.is_ai_driven


def test_negative_quantities_are_rejected():
    with pytest.raises(ValueError):
        compute_cost("marketplace", {"items": -1})


def test_estimate_breakdown_matches_total():
    estimate = estimate_cost("benchmark", {"pages": 2, "posts": 20}, model_id="google/gemini-2.5-pro")

    assert [item.label for item in estimate.breakdown] == [
        "Pages scraped",
        "Posts analysed",
        "Comparative AI analysis (x3)",
        "Report generation",
    ]
    assert estimate.total_cost == round_credits(sum(item.subtotal for item in estimate.breakdown))
    assert estimate.to_dict()["total_cost"] == 16.0


def test_compute_cost_is_deterministic():
    quantities = {"mentions": 37, "keywords": 3}
    assert len({compute_cost("mention_analysis", quantities) for _ in range(5)}) == 1


def test_catalogue_helpers():
    models = list_models()
    assert [model["id"] for model in models if model["default"]] == ["google/gemini-2.5-flash"]
    assert describe_service("marketplace") == "Marketplace extraction"
