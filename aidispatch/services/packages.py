"""Credit package catalog and usage-based recommendation."""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal

BASE_PRICE_PER_CREDIT = Decimal("0.50")


@dataclass(frozen=True)
class CreditPackage:
    slug: str
    name: str
    description: str
    credits: Decimal
    price: Decimal
    price_per_credit: Decimal
    bonus_credits: Decimal = Decimal("0")
    is_popular: bool = False
    sort_order: int = 0
    features: tuple[str, ...] = field(default_factory=tuple)

    @property
    def total_credits(self) -> Decimal:
        return self.credits + self.bonus_credits

    @property
    def formatted_price(self) -> str:
        return f"${self.price:,.2f}"

    @property
    def formatted_credits(self) -> str:
        if self.bonus_credits > 0:
            return f"{self.credits:,.0f} + {self.bonus_credits:,.0f} bonus"
        return f"{self.credits:,.0f}"

    @property
    def savings_percentage(self) -> int | None:
        savings = (BASE_PRICE_PER_CREDIT - self.price_per_credit) / BASE_PRICE_PER_CREDIT * 100
        if savings <= 0:
            return None
        return int(savings.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @property
    def value_proposition(self) -> str:
        if self.bonus_credits > 0:
            return f"Get {self.bonus_credits:.0f} bonus credits"
        if self.savings_percentage:
            return f"Save {self.savings_percentage}%"
        return "Best for getting started"

    def to_public(self, best_value: bool = False) -> dict:
        return {
            "slug": self.slug,
            "name": self.name,
            "description": self.description,
            "credits": str(self.credits),
            "bonus_credits": str(self.bonus_credits),
            "total_credits": str(self.total_credits),
            "price": str(self.price),
            "price_per_credit": str(self.price_per_credit),
            "formatted_price": self.formatted_price,
            "formatted_credits": self.formatted_credits,
            "savings_percentage": self.savings_percentage,
            "value_proposition": self.value_proposition,
            "is_popular": self.is_popular,
            "is_best_value": best_value,
            "features": list(self.features),
        }


_ALL_PROVIDERS = "Access to all AI providers (GPT-5, Claude 4)"

PACKAGES: tuple[CreditPackage, ...] = (
    CreditPackage(
        slug="starter-pack",
        name="Starter Pack",
        description="Perfect for trying out the service with your own projects",
        credits=Decimal("25"),
        price=Decimal("9.99"),
        price_per_credit=Decimal("0.40"),
        sort_order=1,
        features=("25 AI generation credits", _ALL_PROVIDERS, "No expiration", "Email support"),
    ),
    CreditPackage(
        slug="professional-pack",
        name="Professional Pack",
        description="Great for regular use and small teams",
        credits=Decimal("100"),
        price=Decimal("29.99"),
        price_per_credit=Decimal("0.30"),
        bonus_credits=Decimal("10"),
        is_popular=True,
        sort_order=2,
        features=(
            "100 AI generation credits",
            "10 bonus credits included",
            _ALL_PROVIDERS,
            "Priority processing",
            "No expiration",
            "Priority email support",
        ),
    ),
    CreditPackage(
        slug="enterprise-pack",
        name="Enterprise Pack",
        description="Best value for teams and heavy usage",
        credits=Decimal("500"),
        price=Decimal("99.99"),
        price_per_credit=Decimal("0.20"),
        bonus_credits=Decimal("100"),
        sort_order=3,
        features=(
            "500 AI generation credits",
            "100 bonus credits included",
            _ALL_PROVIDERS,
            "Priority processing",
            "No expiration",
            "Priority email support",
            "Usage analytics",
        ),
    ),
    CreditPackage(
        slug="developer-pack",
        name="Developer Pack",
        description="Perfect for individual developers",
        credits=Decimal("50"),
        price=Decimal("19.99"),
        price_per_credit=Decimal("0.40"),
        bonus_credits=Decimal("5"),
        sort_order=4,
        features=("50 AI generation credits", "5 bonus credits included", _ALL_PROVIDERS, "No expiration"),
    ),
)


def list_packages() -> list[CreditPackage]:
    return sorted(PACKAGES, key=lambda p: p.sort_order)


def get_package(slug: str) -> CreditPackage | None:
    return next((p for p in PACKAGES if p.slug == slug), None)


def best_value_slug() -> str:
    return min(PACKAGES, key=lambda p: p.price_per_credit).slug


def recommended_package(monthly_usage: int) -> CreditPackage:
    """Recommend by last-30-days usage count."""
    if monthly_usage <= 25:
        slug = "starter-pack"
    elif monthly_usage <= 50:
        slug = "developer-pack"
    elif monthly_usage <= 100:
        slug = "professional-pack"
    else:
        slug = "enterprise-pack"
    return get_package(slug)
