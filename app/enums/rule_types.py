from enum import Enum


class PricingRuleType(str, Enum):
    percentage = "percentage"
    fixed_amount = "fixed_amount"
    bulk = "bulk"
    tiered = "tiered"


class DiscountRuleType(str, Enum):
    percentage = "percentage"
    fixed_amount = "fixed_amount"
    buy_x_get_y = "buy_x_get_y"


class IneligibleReason(str, Enum):
    usage_limit_reached = "usage_limit_reached"
    conditions_not_met = "conditions_not_met"


class ReviewStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class AttemptStatus(str, Enum):
    finalized = "finalized"
    cancelled = "cancelled"


class RiskLevel(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
