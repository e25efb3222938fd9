"""
Pydantic models for ledger orders.

Wire names are camelCase (``createdAt``, ``ownerIdentity``) because the
browser client and any hand-written scripts around the sheet already
use them; Python code uses the snake_case attribute names.  Dump with
``by_alias=True`` when rendering a response.
"""

from typing import Any, List

from pydantic import BaseModel, Field, field_validator

from salon_ledger_api.app.core.timeutil import parse_amount

NOTE_MAX_LENGTH = 500
CATEGORY_MAX_LENGTH = 100


class OrderCreate(BaseModel):
    """Fields a caller may supply when creating an order.

    Ownership is deliberately absent: the owner is always the verified
    caller.
    """

    category: str = Field(..., min_length=1, max_length=CATEGORY_MAX_LENGTH, examples=["Cắt tóc"])
    amount: int = Field(0, ge=0, examples=[100000])
    note: str = Field("", max_length=NOTE_MAX_LENGTH)

    @field_validator("category", mode="before")
    @classmethod
    def strip_category(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @field_validator("amount", mode="before")
    @classmethod
    def normalise_amount(cls, v: Any) -> int:
        return parse_amount(v)

    @field_validator("note", mode="before")
    @classmethod
    def strip_note(cls, v: Any) -> str:
        if v is None:
            return ""
        return str(v).strip()


class OrderRead(BaseModel):
    """An order as stored and returned by the API."""

    id: str
    created_at: str = Field(..., alias="createdAt")
    owner_identity: str = Field(..., alias="ownerIdentity")
    owner_display_name: str = Field("", alias="ownerDisplayName")
    category: str
    amount: int
    note: str = ""

    model_config = {
        "populate_by_name": True,
    }


class ServiceStats(BaseModel):
    name: str
    count: int = 0
    revenue: int = 0


class OrderStats(BaseModel):
    """Per-caller revenue summary for the current day, week and month.

    ``services`` breaks the month down by category, highest revenue
    first.
    """

    today_count: int = Field(0, alias="todayCount")
    today_revenue: int = Field(0, alias="todayRevenue")
    week_count: int = Field(0, alias="weekCount")
    week_revenue: int = Field(0, alias="weekRevenue")
    month_revenue: int = Field(0, alias="monthRevenue")
    total_orders: int = Field(0, alias="totalOrders", description="Orders in the current month")
    services: List[ServiceStats] = Field(default_factory=list)

    model_config = {
        "populate_by_name": True,
    }
