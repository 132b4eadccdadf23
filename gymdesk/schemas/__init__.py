"""Pydantic schemas for the gym backend's subscription, payment and reward payloads."""

from __future__ import annotations
from datetime import date, datetime
from enum import Enum
from pydantic import BaseModel, Field, field_serializer, field_validator, model_validator

from gymdesk.exceptions import PolicyViolation
from gymdesk.services.money import parse_amount


# ── Enums ──────────────────────────────────────────────────

class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    PENDING_PAYMENT = "pending_payment"
    CANCELED = "canceled"
    SCHEDULED = "scheduled"


class PaymentMethod(str, Enum):
    CASH = "cash"
    QR = "qr"
    TRANSFER = "transfer"
    CARD = "card"


class PaymentIntent(str, Enum):
    PARTIAL = "partial"
    FULL = "full"


class RewardStatus(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    EXPIRED = "expired"


def _amount(value):
    try:
        return parse_amount(value)
    except PolicyViolation as e:
        raise ValueError(e.message) from e


# ── Plan ───────────────────────────────────────────────────

class Plan(BaseModel):
    id: str
    name: str
    price: int
    duration_days: int = Field(..., gt=0)
    description: str | None = None
    is_active: bool = True

    @field_validator("price", mode="before")
    @classmethod
    def _parse_price(cls, v):
        return _amount(v)


# ── Subscription Schemas ───────────────────────────────────

class Subscription(BaseModel):
    id: str
    client_id: str
    plan_id: str
    start_date: date
    end_date: date
    status: SubscriptionStatus
    cancellation_date: datetime | None = None
    cancellation_reason: str | None = None
    final_price: int | None = None
    created_at: datetime
    updated_at: datetime
    meta_info: dict = Field(default_factory=dict)
    provisional: bool = Field(default=False, exclude=True)

    class Config:
        frozen = True

    @field_validator("final_price", mode="before")
    @classmethod
    def _parse_final_price(cls, v):
        return None if v is None else _amount(v)

    @model_validator(mode="after")
    def _check_invariants(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        is_canceled = self.status == SubscriptionStatus.CANCELED
        if is_canceled != (self.cancellation_date is not None):
            raise ValueError("cancellation_date is set if and only if status is canceled")
        return self


class SubscriptionCreate(BaseModel):
    plan_id: str
    start_date: date


class SubscriptionRenew(BaseModel):
    plan_id: str | None = None  # backend reuses the current plan when omitted
    discount_percentage: str | None = None


class SubscriptionCancel(BaseModel):
    cancellation_reason: str | None = None


# ── Payment Schemas ────────────────────────────────────────

class Payment(BaseModel):
    id: str
    subscription_id: str
    amount: int = Field(..., gt=0)
    payment_method: PaymentMethod
    payment_date: datetime
    meta_info: dict = Field(default_factory=dict)
    provisional: bool = Field(default=False, exclude=True)

    class Config:
        frozen = True

    @field_validator("amount", mode="before")
    @classmethod
    def _parse_amount(cls, v):
        return _amount(v)

    @field_serializer("amount")
    def _amount_to_wire(self, amount: int) -> str:
        return str(amount)


class PaymentCreate(BaseModel):
    amount: int = Field(..., gt=0)
    payment_method: PaymentMethod

    @field_validator("amount", mode="before")
    @classmethod
    def _parse_amount(cls, v):
        return _amount(v)

    @field_serializer("amount")
    def _amount_to_wire(self, amount: int) -> str:
        return str(amount)


class PaymentStats(BaseModel):
    subscription_id: str | None = None
    total_payments: int = 0
    total_amount_paid: int = 0
    remaining_debt: int = Field(default=0, ge=0)
    last_payment_date: datetime | None = None

    @field_validator("total_amount_paid", "remaining_debt", mode="before")
    @classmethod
    def _parse_amounts(cls, v):
        return _amount(v)

    @field_serializer("total_amount_paid", "remaining_debt")
    def _amounts_to_wire(self, amount: int) -> str:
        return str(amount)

    @property
    def price(self) -> int:
        return self.total_amount_paid + self.remaining_debt


class PaymentReceipt(BaseModel):
    """Backend answer to a payment: the stored payment plus the subscription's new state."""
    payment: Payment
    remaining_debt: int | None = None
    subscription_status: SubscriptionStatus

    @field_validator("remaining_debt", mode="before")
    @classmethod
    def _parse_debt(cls, v):
        return None if v is None else _amount(v)


# ── Reward Schemas ─────────────────────────────────────────

class Reward(BaseModel):
    id: str
    client_id: str
    subscription_id: str | None = None
    discount_percentage: str | float | int | None = None  # backend sends decimals as strings
    status: RewardStatus = RewardStatus.PENDING
    eligible_date: date | None = None
    expires_at: datetime | None = None
    applied_at: datetime | None = None
    applied_subscription_id: str | None = None


class RewardApply(BaseModel):
    subscription_id: str
    discount_percentage: str
