"""Typed context carried on a Payment.

A payment either points at a persisted order or carries the snapshot of a
temporary checkout that has not been written as an order yet. The snapshot
is what the materializer turns into a permanent order once the capture
webhook confirms the money.
"""
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class GuestContact(BaseModel):
    name: str = ""
    email: str = ""
    phone: str = ""


class SnapshotItem(BaseModel):
    service_id: str
    quantity: int = Field(default=1, ge=1)


class TemporaryOrderContext(BaseModel):
    kind: Literal["temporary"] = "temporary"
    temp_order_id: str
    items: List[SnapshotItem]
    currency: str
    guest: GuestContact = GuestContact()
    notes: str = ""
    description: str = ""


class PermanentOrderContext(BaseModel):
    kind: Literal["permanent"] = "permanent"
    order_id: str
    # set when the order was materialized from a temporary checkout
    temp_order_id: Optional[str] = None


PaymentContext = Annotated[
    Union[TemporaryOrderContext, PermanentOrderContext],
    Field(discriminator="kind"),
]

_adapter = TypeAdapter(PaymentContext)


def parse_context(raw: Optional[dict]):
    if not raw:
        return None
    return _adapter.validate_python(raw)


def dump_context(ctx) -> dict:
    return ctx.model_dump()
