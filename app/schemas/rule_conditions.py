"""
Typed rule conditions.

Rules store their conditions as a flat JSON object, e.g.::

    {"min_order_value": 50, "category_ids": ["shoes"], "min_quantity": 2}

(camelCase keys such as ``minOrderValue`` are accepted too). The object is
validated once when the rule is loaded and turned into a list of predicates,
one variant per predicate kind, plus the type-specific payload (price tiers,
buy-x-get-y quantities).
"""
import json
from decimal import Decimal
from typing import Annotated, Any, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class MinOrderValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["min_order_value"] = "min_order_value"
    amount: Decimal


class ProductIn(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["product_ids"] = "product_ids"
    product_ids: Tuple[str, ...]


class CategoryIn(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["category_ids"] = "category_ids"
    category_ids: Tuple[str, ...]


class CustomerIn(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["customer_ids"] = "customer_ids"
    customer_ids: Tuple[str, ...]


class InSegment(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["customer_segment_id"] = "customer_segment_id"
    segment_id: str


class MinQuantity(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["min_quantity"] = "min_quantity"
    quantity: int


Condition = Annotated[
    Union[MinOrderValue, ProductIn, CategoryIn, CustomerIn, InSegment, MinQuantity],
    Field(discriminator="kind"),
]


class PriceTier(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    min_quantity: int = Field(ge=1)
    value: Decimal = Field(ge=0)


class BuyXGetY(BaseModel):
    model_config = ConfigDict(frozen=True)

    buy_quantity: int = Field(ge=1)
    get_quantity: int = Field(ge=1)


class RuleConditions(BaseModel):
    """Parsed, immutable form of a rule's conditions."""

    model_config = ConfigDict(frozen=True)

    predicates: Tuple[Condition, ...] = ()
    tiers: Tuple[PriceTier, ...] = ()
    buy_x_get_y: Optional[BuyXGetY] = None

    @property
    def min_quantity(self) -> Optional[int]:
        for predicate in self.predicates:
            if isinstance(predicate, MinQuantity):
                return predicate.quantity
        return None


class StoredConditions(BaseModel):
    """Flat shape of the ``conditions`` JSON column."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    min_order_value: Optional[Decimal] = Field(default=None, ge=0)
    product_ids: List[str] = []
    category_ids: List[str] = []
    customer_ids: List[str] = []
    customer_segment_id: Optional[str] = None
    min_quantity: Optional[int] = Field(default=None, ge=1)
    tiers: List[PriceTier] = []
    buy_quantity: Optional[int] = Field(default=None, ge=1)
    get_quantity: Optional[int] = Field(default=None, ge=1)

    @field_validator("product_ids", "category_ids", "customer_ids", mode="before")
    @classmethod
    def _ids_as_strings(cls, value):
        if value is None:
            return []
        return [str(v) for v in value]

    @field_validator("customer_segment_id", mode="before")
    @classmethod
    def _segment_as_string(cls, value):
        return None if value in (None, "") else str(value)

    def to_rule_conditions(self) -> RuleConditions:
        predicates: List[Any] = []
        if self.min_order_value is not None:
            predicates.append(MinOrderValue(amount=self.min_order_value))
        if self.product_ids:
            predicates.append(ProductIn(product_ids=tuple(self.product_ids)))
        if self.category_ids:
            predicates.append(CategoryIn(category_ids=tuple(self.category_ids)))
        if self.customer_ids:
            predicates.append(CustomerIn(customer_ids=tuple(self.customer_ids)))
        if self.customer_segment_id is not None:
            predicates.append(InSegment(segment_id=self.customer_segment_id))
        if self.min_quantity is not None:
            predicates.append(MinQuantity(quantity=self.min_quantity))

        buy_x_get_y = None
        if self.buy_quantity is not None or self.get_quantity is not None:
            buy_x_get_y = BuyXGetY(
                buy_quantity=self.buy_quantity or 1,
                get_quantity=self.get_quantity or 1,
            )

        return RuleConditions(
            predicates=tuple(predicates),
            tiers=tuple(sorted(self.tiers, key=lambda t: t.min_quantity)),
            buy_x_get_y=buy_x_get_y,
        )


def parse_conditions(raw) -> RuleConditions:
    """
    Parse a stored conditions value (dict, JSON string or None).
    Raises pydantic.ValidationError / ValueError on malformed input.
    """
    if raw is None or raw == "":
        return RuleConditions()
    if isinstance(raw, str):
        raw = json.loads(raw)
    return StoredConditions.model_validate(raw).to_rule_conditions()
