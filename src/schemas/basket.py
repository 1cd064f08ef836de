"""Basket Pydantic schemas: the immutable snapshot the checkout engine prices."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.core.money import format_minor_units


class CourseRef(BaseModel):
    """The course a basket line refers to."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str = Field(description="Course identifier")
    name: str = Field(description="Course name")
    type: str | None = Field(default=None, description="Course type, e.g. StudioCourse or OnlineCourse")

    @property
    def display_name(self) -> str:
        """Course name shortened to 30 characters for compact display."""
        if len(self.name) <= 30:
            return self.name
        return f"{self.name[:27]}..."


class BasketItem(BaseModel):
    """A single purchasable line: a course, a session, or a taster class.

    ``total_price`` must equal ``price - discount_value - promo_code_discount_value``
    and can never be negative. It is computed when omitted; a supplied value that
    disagrees is rejected. ``pay_later_value`` cannot exceed ``total_price``.
    """

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str = Field(description="Basket line identifier")
    course: CourseRef = Field(description="Course being booked")
    price: int = Field(ge=0, description="Unit price in minor units")
    discount_value: int | None = Field(default=None, ge=0, description="Line discount in minor units")
    promo_code_discount_value: int | None = Field(
        default=None, ge=0, description="Promo code discount in minor units"
    )
    total_price: int = Field(description="Price after line discounts, in minor units")
    pay_later_value: int = Field(default=0, ge=0, description="Portion of the line deferred (deposit bookings)")
    is_taster: bool = Field(default=False, description="Whether the line is a taster class")
    session_id: str | None = Field(default=None, description="Session booked, for single-session bookings")
    added_at: datetime | None = Field(default=None, description="When the line was added")

    @model_validator(mode="before")
    @classmethod
    def fill_total_price(cls, data: Any) -> Any:
        """Compute ``total_price`` when the caller did not supply one."""
        if isinstance(data, dict) and data.get("total_price") is None:
            data = dict(data)
            data["total_price"] = (
                (data.get("price") or 0)
                - (data.get("discount_value") or 0)
                - (data.get("promo_code_discount_value") or 0)
            )
        return data

    @model_validator(mode="after")
    def check_total_price(self) -> "BasketItem":
        """Reject lines whose total disagrees with their price and discounts."""
        expected = self.price - self.total_discount
        if expected < 0:
            raise ValueError(
                f"Basket item {self.id}: discounts ({self.total_discount}) exceed price ({self.price})"
            )
        if self.total_price != expected:
            raise ValueError(
                f"Basket item {self.id}: total_price {self.total_price} does not match expected {expected}"
            )
        if self.pay_later_value > self.total_price:
            raise ValueError(
                f"Basket item {self.id}: pay_later_value {self.pay_later_value} exceeds total_price {self.total_price}"
            )
        return self

    @property
    def has_discount(self) -> bool:
        """Check if the line has any discount applied."""
        return (self.discount_value or 0) > 0 or (self.promo_code_discount_value or 0) > 0

    @property
    def total_discount(self) -> int:
        """Combined line and promo code discount."""
        return (self.discount_value or 0) + (self.promo_code_discount_value or 0)

    @property
    def item_type_display(self) -> str:
        """Human-readable line type."""
        if self.is_taster:
            return "Taster Class"
        if self.course.type == "OnlineCourse":
            return "Online Course"
        if self.course.type == "StudioCourse":
            return "Studio Course"
        return "Course"

    @property
    def formatted_price(self) -> str:
        return format_minor_units(self.price)

    @property
    def formatted_total_price(self) -> str:
        return format_minor_units(self.total_price)


class CreditItem(BaseModel):
    """Account credit that can reduce the amount charged now."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str = Field(description="Credit identifier")
    description: str = Field(description="Credit description")
    value: int = Field(ge=0, description="Credit value in minor units")
    code: str | None = Field(default=None, description="Credit code")
    valid_until: datetime | None = Field(default=None, description="Credit expiry")


class FeeItem(BaseModel):
    """Extra charge such as a registration fee."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str = Field(description="Fee identifier")
    description: str = Field(description="Fee description")
    value: int = Field(ge=0, description="Fee value in minor units")
    optional: bool = Field(default=False, description="Whether the user may decline the fee")


class Basket(BaseModel):
    """Basket aggregate: ordered lines, credits, fees and computed totals.

    The aggregate fields are outputs of ``src.services.pricing.price_basket``.
    A basket received from the basket subsystem is re-priced before checkout.
    """

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str = Field(description="Basket identifier")
    items: tuple[BasketItem, ...] = Field(default=(), description="Basket lines in display order")
    credit_items: tuple[CreditItem, ...] = Field(default=(), description="Account credits available")
    fee_items: tuple[FeeItem, ...] = Field(default=(), description="Fees applied to the basket")
    discount_value: int = Field(default=0, ge=0, description="Basket-level discount not tied to a line")

    discount_total: int = Field(default=0, ge=0, description="Line discounts plus basket discount")
    promo_code_discount_value: int = Field(default=0, ge=0, description="Sum of promo code discounts")
    credit_total: int = Field(default=0, ge=0, description="Credit actually applied")
    fee_total: int = Field(default=0, ge=0, description="Sum of fees")
    sub_total: int = Field(default=0, ge=0, description="Sum of line prices")
    tax: int = Field(default=0, ge=0, description="Tax on the taxable amount")
    total: int = Field(default=0, ge=0, description="Amount owed for the basket")
    charge_total: int = Field(default=0, ge=0, description="Amount charged to the payment method now")
    pay_later: int = Field(default=0, ge=0, description="Amount deferred, e.g. deposit balances")

    session_id: str | None = Field(default=None, description="Anonymous session owning the basket")
    user_id: str | None = Field(default=None, description="Authenticated user owning the basket")
    created_at: datetime | None = Field(default=None, description="Creation timestamp")
    updated_at: datetime | None = Field(default=None, description="Last update timestamp")
    expires_at: datetime | None = Field(default=None, description="Expiry timestamp")

    @property
    def is_empty(self) -> bool:
        return not self.items

    @property
    def item_count(self) -> int:
        return len(self.items)

    @property
    def has_discounts(self) -> bool:
        return self.discount_total > 0 or self.promo_code_discount_value > 0

    @property
    def has_credits(self) -> bool:
        return self.credit_total > 0

    @property
    def has_pay_later(self) -> bool:
        return self.pay_later > 0

    @property
    def taster_items(self) -> list[BasketItem]:
        return [item for item in self.items if item.is_taster]

    @property
    def course_items(self) -> list[BasketItem]:
        return [item for item in self.items if not item.is_taster]

    @property
    def total_savings(self) -> int:
        """Discounts, promo codes and credits combined."""
        return self.discount_total + self.promo_code_discount_value + self.credit_total

    @property
    def formatted_sub_total(self) -> str:
        return format_minor_units(self.sub_total)

    @property
    def formatted_total(self) -> str:
        return format_minor_units(self.total)

    @property
    def formatted_charge_total(self) -> str:
        return format_minor_units(self.charge_total)

    @property
    def formatted_pay_later(self) -> str:
        return format_minor_units(self.pay_later)

    @property
    def formatted_savings(self) -> str:
        return format_minor_units(self.total_savings)
