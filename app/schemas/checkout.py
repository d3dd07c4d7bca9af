from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from app.enums.rule_types import IneligibleReason, ReviewStatus, RiskLevel
from app.services.checkout.types import (
    AppliedDiscount,
    CartLine,
    FinalizedOrder,
    IneligibleRule,
    PricedLine,
    ResolvedOrderPreview,
)


class CartLineSchema(BaseModel):
    product_id: str
    # positivity is checked by the engine so it surfaces as a 400, not a 422
    quantity: int


class PreviewRequest(BaseModel):
    customer_id: Optional[str] = None
    items: List[CartLineSchema] = []
    coupon_code: Optional[str] = None


class PricedLineSchema(BaseModel):
    product_id: str
    category_id: Optional[str] = None
    quantity: int
    catalog_unit_price: Decimal
    unit_price: Decimal
    line_total: Decimal
    pricing_rule_id: Optional[int] = None


class AppliedDiscountSchema(BaseModel):
    rule_id: int
    amount: Decimal
    coupon_code: Optional[str] = None


class IneligibleRuleSchema(BaseModel):
    rule_id: int
    reason: IneligibleReason
    coupon_code: Optional[str] = None


class OrderPreviewSchema(BaseModel):
    customer_id: Optional[str] = None
    coupon_code: Optional[str] = None
    items: List[CartLineSchema]
    lines: List[PricedLineSchema]
    catalog_subtotal: Decimal
    subtotal: Decimal
    discount_total: Decimal
    applied_discounts: List[AppliedDiscountSchema] = []
    ineligible_rules: List[IneligibleRuleSchema] = []
    tax_amount: Decimal
    total: Decimal
    resolved_at: datetime

    @classmethod
    def from_domain(cls, preview: ResolvedOrderPreview) -> "OrderPreviewSchema":
        return cls(
            customer_id=preview.customer_id,
            coupon_code=preview.coupon_code,
            items=[CartLineSchema(product_id=c.product_id, quantity=c.quantity) for c in preview.cart],
            lines=[PricedLineSchema(**vars(line)) for line in preview.lines],
            catalog_subtotal=preview.catalog_subtotal,
            subtotal=preview.subtotal,
            discount_total=preview.discount_total,
            applied_discounts=[AppliedDiscountSchema(**vars(d)) for d in preview.applied_discounts],
            ineligible_rules=[IneligibleRuleSchema(**vars(r)) for r in preview.ineligible_rules],
            tax_amount=preview.tax_amount,
            total=preview.total,
            resolved_at=preview.resolved_at,
        )

    def to_domain(self) -> ResolvedOrderPreview:
        return ResolvedOrderPreview(
            customer_id=self.customer_id,
            coupon_code=self.coupon_code,
            cart=tuple(CartLine(c.product_id, c.quantity) for c in self.items),
            lines=tuple(PricedLine(**line.model_dump()) for line in self.lines),
            catalog_subtotal=self.catalog_subtotal,
            subtotal=self.subtotal,
            discount_total=self.discount_total,
            applied_discounts=tuple(AppliedDiscount(**d.model_dump()) for d in self.applied_discounts),
            ineligible_rules=tuple(IneligibleRule(**r.model_dump()) for r in self.ineligible_rules),
            tax_amount=self.tax_amount,
            total=self.total,
            resolved_at=self.resolved_at,
        )


class FinalizeRequest(BaseModel):
    attempt_id: str = Field(..., min_length=1)
    preview: OrderPreviewSchema
    shipping_address_mismatch: bool = False
    contact_mismatch: bool = False


class FinalizedOrderSchema(BaseModel):
    attempt_id: str
    preview: OrderPreviewSchema
    risk_score: int
    risk_level: RiskLevel
    flags: List[str] = []
    review_status: ReviewStatus = ReviewStatus.pending
    finalized_at: datetime

    @classmethod
    def from_domain(cls, order: FinalizedOrder) -> "FinalizedOrderSchema":
        return cls(
            attempt_id=order.attempt_id,
            preview=OrderPreviewSchema.from_domain(order.preview),
            risk_score=order.risk_score,
            risk_level=order.risk_level,
            flags=list(order.flags),
            review_status=order.review_status,
            finalized_at=order.finalized_at,
        )

    def to_domain(self) -> FinalizedOrder:
        return FinalizedOrder(
            attempt_id=self.attempt_id,
            preview=self.preview.to_domain(),
            risk_score=self.risk_score,
            risk_level=self.risk_level,
            flags=tuple(self.flags),
            finalized_at=self.finalized_at,
            review_status=self.review_status,
        )


class CancelResponse(BaseModel):
    attempt_id: str
    released_rule_ids: List[int] = []


class ConflictResponse(BaseModel):
    detail: str
    failed_rule_id: Optional[int] = None
    repriced: Optional[OrderPreviewSchema] = None
