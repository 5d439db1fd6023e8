"""Price table, usage costs and role limits.

This is read-only reference data. The engine only ever queries it through
PriceCatalog, so a deployment can swap the default tables for ones loaded
from another source without touching the ledger.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from creditledger.utils import as_utc, utcnow


# -- Package types --
STARTER = "starter"
STANDARD = "standard"
PREMIUM = "premium"
ENTERPRISE = "enterprise"

# -- Usage types --
JOB_APPLICATION = "job_application"
PROFILE_BOOST = "profile_boost"
PREMIUM_JOB_UNLOCK = "premium_job_unlock"
DIRECT_MESSAGE = "direct_message"
FEATURED_LISTING = "featured_listing"
MARKETPLACE_APPLICATION = "marketplace_application"

# -- Roles --
ROLE_CLIENT = "client"
ROLE_TRADIE = "tradie"
ROLE_ENTERPRISE = "enterprise"


@dataclass(frozen=True)
class CreditPackage:
    type: str
    name: str
    credits_amount: int
    bonus_credits: int
    price: Decimal
    savings: Decimal = Decimal("0")
    validity_days: Optional[int] = None

    @property
    def total_credits(self):
        return self.credits_amount + self.bonus_credits


@dataclass(frozen=True)
class UsageCost:
    type: str
    name: str
    credits_required: int
    max_per_day: int
    max_per_month: int
    enabled: bool = True


@dataclass(frozen=True)
class RoleLimits:
    max_daily_purchase: Decimal
    max_monthly_purchase: Decimal
    max_credit_balance: int
    min_credit_balance: int
    low_balance_threshold: int
    critical_balance_threshold: int
    max_transactions_per_day: int
    max_transactions_per_month: int
    cooldown_minutes: int


@dataclass(frozen=True)
class DiscountThreshold:
    minimum_amount: Decimal
    discount_percentage: int
    description: str


@dataclass(frozen=True)
class BulkTier:
    min_credits: int
    max_credits: int
    price_per_credit: Decimal


@dataclass(frozen=True)
class PromotionalOffer:
    code: str
    discount_percentage: int
    valid_from: datetime
    valid_until: datetime
    max_uses: int
    current_uses: int = 0
    applicable_packages: tuple = ()
    active: bool = True
    description: str = ""

    def is_usable(self, package_type, now=None):
        now = now or utcnow()
        if not self.active:
            return False
        if not (as_utc(self.valid_from) <= now <= as_utc(self.valid_until)):
            return False
        if self.current_uses >= self.max_uses:
            return False
        if self.applicable_packages and package_type not in self.applicable_packages:
            return False
        return True


DEFAULT_PACKAGES = {
    STARTER: CreditPackage(
        type=STARTER,
        name="Starter Pack",
        credits_amount=10,
        bonus_credits=0,
        price=Decimal("9.99"),
    ),
    STANDARD: CreditPackage(
        type=STANDARD,
        name="Standard Pack",
        credits_amount=25,
        bonus_credits=5,
        price=Decimal("19.99"),
        savings=Decimal("4.99"),
    ),
    PREMIUM: CreditPackage(
        type=PREMIUM,
        name="Premium Pack",
        credits_amount=50,
        bonus_credits=15,
        price=Decimal("34.99"),
        savings=Decimal("14.99"),
    ),
    ENTERPRISE: CreditPackage(
        type=ENTERPRISE,
        name="Enterprise Pack",
        credits_amount=100,
        bonus_credits=30,
        price=Decimal("59.99"),
        savings=Decimal("29.99"),
        validity_days=90,
    ),
}

DEFAULT_USAGE_COSTS = {
    JOB_APPLICATION: UsageCost(JOB_APPLICATION, "Job Application", 1, 20, 100),
    PROFILE_BOOST: UsageCost(PROFILE_BOOST, "Profile Boost", 5, 3, 30),
    PREMIUM_JOB_UNLOCK: UsageCost(PREMIUM_JOB_UNLOCK, "Premium Job Unlock", 3, 10, 50),
    DIRECT_MESSAGE: UsageCost(DIRECT_MESSAGE, "Direct Message", 2, 15, 75),
    FEATURED_LISTING: UsageCost(FEATURED_LISTING, "Featured Listing", 10, 1, 5),
    MARKETPLACE_APPLICATION: UsageCost(
        MARKETPLACE_APPLICATION, "Marketplace Application", 2, 15, 75
    ),
}

DEFAULT_LIMITS = RoleLimits(
    max_daily_purchase=Decimal("200.00"),
    max_monthly_purchase=Decimal("1000.00"),
    max_credit_balance=500,
    min_credit_balance=0,
    low_balance_threshold=10,
    critical_balance_threshold=3,
    max_transactions_per_day=50,
    max_transactions_per_month=200,
    cooldown_minutes=5,
)

DEFAULT_ROLE_LIMITS = {
    ROLE_CLIENT: RoleLimits(
        max_daily_purchase=Decimal("100.00"),
        max_monthly_purchase=Decimal("500.00"),
        max_credit_balance=200,
        min_credit_balance=0,
        low_balance_threshold=5,
        critical_balance_threshold=2,
        max_transactions_per_day=20,
        max_transactions_per_month=100,
        cooldown_minutes=10,
    ),
    ROLE_TRADIE: DEFAULT_LIMITS,
    ROLE_ENTERPRISE: RoleLimits(
        max_daily_purchase=Decimal("500.00"),
        max_monthly_purchase=Decimal("2500.00"),
        max_credit_balance=1000,
        min_credit_balance=0,
        low_balance_threshold=25,
        critical_balance_threshold=10,
        max_transactions_per_day=100,
        max_transactions_per_month=500,
        cooldown_minutes=2,
    ),
}

DEFAULT_DISCOUNT_THRESHOLDS = (
    DiscountThreshold(Decimal("50.00"), 5, "5% off orders over $50"),
    DiscountThreshold(Decimal("100.00"), 10, "10% off orders over $100"),
    DiscountThreshold(Decimal("200.00"), 15, "15% off orders over $200"),
)

LIST_PRICE_PER_CREDIT = Decimal("0.99")

DEFAULT_BULK_TIERS = (
    BulkTier(1, 10, Decimal("0.99")),
    BulkTier(11, 30, Decimal("0.89")),
    BulkTier(31, 65, Decimal("0.79")),
    BulkTier(66, 130, Decimal("0.69")),
)

# (minimum purchased credits, bonus percentage), highest first
BULK_BONUS_STEPS = ((100, 30), (50, 20), (25, 15), (10, 10))


@dataclass
class PriceCatalog:
    packages: dict = field(default_factory=lambda: dict(DEFAULT_PACKAGES))
    usage_costs: dict = field(default_factory=lambda: dict(DEFAULT_USAGE_COSTS))
    role_limits: dict = field(default_factory=lambda: dict(DEFAULT_ROLE_LIMITS))
    default_limits: RoleLimits = DEFAULT_LIMITS
    discount_thresholds: tuple = DEFAULT_DISCOUNT_THRESHOLDS
    bulk_tiers: tuple = DEFAULT_BULK_TIERS
    promotions: dict = field(default_factory=dict)

    def get_package(self, package_type):
        return self.packages.get(package_type)

    def get_usage_cost(self, usage_type):
        return self.usage_costs.get(usage_type)

    def get_limits_for_role(self, role):
        return self.role_limits.get(role, self.default_limits)

    def find_promotion(self, code):
        if not code:
            return None
        return self.promotions.get(code.upper())

    def add_promotion(self, offer):
        self.promotions[offer.code.upper()] = offer

    def package_for_credits(self, credits):
        """Smallest package whose total credits cover ``credits``."""
        candidates = sorted(self.packages.values(), key=lambda p: p.total_credits)
        for package in candidates:
            if package.total_credits >= credits:
                return package
        return candidates[-1] if candidates else None
