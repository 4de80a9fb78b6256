"""
Source record models: users, products, transactions and bids.

These mirror the read contracts of the marketplace application that owns
the data. The engine never writes them back; ``import-records`` is the only
writer, used to seed a local database.

All models are frozen. Validation here is what makes a record "malformed"
for the aggregation layer: a record that fails these validators fails the
fact-gathering of the entities it belongs to, and nothing else.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from marketplace_intel.utils.time_utils import ensure_utc

BidStatus = Literal["pending", "accepted", "rejected", "withdrawn"]
VALID_BID_STATUSES: frozenset[str] = frozenset({"pending", "accepted", "rejected", "withdrawn"})


class User(BaseModel):
    """A marketplace account that can buy, sell, or both.

    Attributes:
        user_id: Stable identifier from the marketplace application.
        display_name: Company or contact name, for reports only.
        location: Free-text region string (e.g. ``"Portland, OR, US"``).
        can_buy: Whether the account may purchase.
        can_sell: Whether the account may list products.
        is_active: Inactive accounts are never offered matches.
    """

    model_config = ConfigDict(frozen=True)

    user_id: str
    display_name: Optional[str] = None
    location: Optional[str] = None
    can_buy: bool = True
    can_sell: bool = False
    is_active: bool = True


class Product(BaseModel):
    """A listing offered by a seller."""

    model_config = ConfigDict(frozen=True)

    product_id: str
    seller_id: str
    category_name: Optional[str] = None
    unit_price: Optional[float] = None
    quantity_available: Optional[float] = None
    is_active: bool = True
    listed_at: Optional[datetime] = None

    @field_validator("unit_price", "quantity_available")
    @classmethod
    def validate_non_negative(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v < 0:
            raise ValueError(f"must be non-negative, got {v}.")
        return v

    @field_validator("listed_at")
    @classmethod
    def validate_listed_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None


class Transaction(BaseModel):
    """A completed purchase, optionally with a recorded delivery outcome.

    The three outcome fields are recorded after delivery; a transaction
    with any of them set is "outcome-recorded" and counts toward the
    seller scorecard.
    """

    model_config = ConfigDict(frozen=True)

    transaction_id: str
    buyer_id: str
    seller_id: str
    product_id: Optional[str] = None
    category_name: str
    quantity: float
    unit_price: Optional[float] = None
    transaction_date: datetime
    delivered_quantity: Optional[float] = None
    delivered_on_time: Optional[bool] = None
    quality_as_expected: Optional[bool] = None

    @field_validator("transaction_date")
    @classmethod
    def validate_date_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_validator("quantity")
    @classmethod
    def validate_quantity(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"quantity must be positive, got {v}.")
        return v

    @field_validator("unit_price", "delivered_quantity")
    @classmethod
    def validate_non_negative(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v < 0:
            raise ValueError(f"must be non-negative, got {v}.")
        return v

    @model_validator(mode="after")
    def validate_parties(self) -> "Transaction":
        if self.buyer_id == self.seller_id:
            raise ValueError("buyer_id and seller_id must differ.")
        if not self.category_name.strip():
            raise ValueError("category_name must be non-empty.")
        return self

    @property
    def has_outcome(self) -> bool:
        return (
            self.delivered_quantity is not None
            or self.delivered_on_time is not None
            or self.quality_as_expected is not None
        )

    @property
    def total_value(self) -> Optional[float]:
        if self.unit_price is None:
            return None
        return self.unit_price * self.quantity


class Bid(BaseModel):
    """A buyer's offer on a product listing."""

    model_config = ConfigDict(frozen=True)

    bid_id: str
    buyer_id: str
    product_id: str
    status: BidStatus = "pending"
    quantity: Optional[float] = None
    unit_price: Optional[float] = None
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def validate_created_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)
