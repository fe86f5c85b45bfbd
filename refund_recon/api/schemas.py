from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from refund_recon.domain.money import AmountSelection, QuantitySelection, Selection
from refund_recon.domain.requests import RefundOptions

MAX_SELECTION_QUANTITY = 100
MAX_SELECTION_AMOUNT_CENTS = 1_000_000
MAX_RESTOCKING_FEE_CENTS = 3000
MAX_REFUND_SHIPPING_CENTS = 15000

RefundReasonIn = Literal["requested_by_customer", "duplicate", "fraudulent", "other"]


class _ApiModel(BaseModel):
    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)


class QuantitySelectionIn(_ApiModel):
    type: Literal["quantity"]
    item_id: str = Field(min_length=1)
    quantity: int = Field(gt=0, le=MAX_SELECTION_QUANTITY)

    def to_selection(self) -> Selection:
        return QuantitySelection(item_id=self.item_id, quantity=self.quantity)


class AmountSelectionIn(_ApiModel):
    type: Literal["amount"]
    item_id: str = Field(min_length=1)
    amount_cents: int = Field(gt=0, le=MAX_SELECTION_AMOUNT_CENTS)

    def to_selection(self) -> Selection:
        return AmountSelection(item_id=self.item_id, amount_cents=self.amount_cents)


SelectionIn = Annotated[Union[QuantitySelectionIn, AmountSelectionIn], Field(discriminator="type")]


class RefundCreateIn(_ApiModel):
    order_id: str = Field(min_length=1)
    selections: list[SelectionIn] = Field(default_factory=list)
    reason: RefundReasonIn | None = None
    restocking_fee_cents: int = Field(default=0, ge=0, le=MAX_RESTOCKING_FEE_CENTS)
    refund_shipping_cents: int = Field(default=0, ge=0, le=MAX_REFUND_SHIPPING_CENTS)
    notes: str | None = Field(default=None, max_length=1000)
    idempotency_key: str | None = Field(default=None, min_length=8, max_length=128)

    @model_validator(mode="after")
    def _selections_or_shipping(self) -> "RefundCreateIn":
        if not self.selections and self.refund_shipping_cents <= 0:
            raise ValueError("At least one selection required")
        return self

    def to_selections(self) -> list[Selection]:
        return [sel.to_selection() for sel in self.selections]

    def to_options(self) -> RefundOptions:
        return RefundOptions(
            reason=self.reason,
            restocking_fee_cents=self.restocking_fee_cents,
            refund_shipping_cents=self.refund_shipping_cents,
            notes=self.notes,
            idempotency_key=self.idempotency_key.strip() if self.idempotency_key else None,
        )


class RefundPreviewIn(_ApiModel):
    order_id: str = Field(min_length=1)
    quantities_by_item_id: dict[str, int] = Field(default_factory=dict)
    amount_cents_by_item_id: dict[str, int] = Field(default_factory=dict)
    # Major-unit strings as typed into the form, e.g. {"item-1": "12.50"}.
    amounts_by_item_id: dict[str, str] = Field(default_factory=dict)
    reason: RefundReasonIn | None = None
    restocking_fee_cents: int = Field(default=0, ge=0, le=MAX_RESTOCKING_FEE_CENTS)
    refund_shipping_cents: int = Field(default=0, ge=0, le=MAX_REFUND_SHIPPING_CENTS)
    include_pending: bool = True

    def to_options(self) -> RefundOptions:
        return RefundOptions(
            reason=self.reason,
            restocking_fee_cents=self.restocking_fee_cents,
            refund_shipping_cents=self.refund_shipping_cents,
        )


class RecomputeIn(_ApiModel):
    order_id: str = Field(min_length=1)
    include_pending: bool = False
