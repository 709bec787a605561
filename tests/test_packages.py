from decimal import Decimal

import pytest

from aidispatch.services.packages import best_value_slug, get_package, list_packages, recommended_package


def test_packages_in_display_order():
    assert [p.slug for p in list_packages()] == [
        "starter-pack",
        "professional-pack",
        "enterprise-pack",
        "developer-pack",
    ]


def test_total_credits_include_bonus():
    assert get_package("starter-pack").total_credits == Decimal("25")
    assert get_package("professional-pack").total_credits == Decimal("110")
    assert get_package("enterprise-pack").total_credits == Decimal("600")
    assert get_package("developer-pack").total_credits == Decimal("55")
    assert get_package("nope") is None


def test_display_fields():
    starter = get_package("starter-pack")
    pro = get_package("professional-pack")
    assert starter.formatted_price == "$9.99"
    assert starter.formatted_credits == "25"
    assert starter.savings_percentage == 20
    assert starter.value_proposition == "Save 20%"
    assert pro.formatted_credits == "100 + 10 bonus"
    assert pro.value_proposition == "Get 10 bonus credits"
    assert get_package("enterprise-pack").savings_percentage == 60


def test_best_value_is_cheapest_per_credit():
    assert best_value_slug() == "enterprise-pack"
    public = get_package("enterprise-pack").to_public(best_value=True)
    assert public["is_best_value"] is True
    assert public["total_credits"] == "600"


@pytest.mark.parametrize(
    "usage,slug",
    [(0, "starter-pack"), (25, "starter-pack"), (40, "developer-pack"), (100, "professional-pack"), (101, "enterprise-pack")],
)
def test_recommendation_by_monthly_usage(usage, slug):
    assert recommended_package(usage).slug == slug
