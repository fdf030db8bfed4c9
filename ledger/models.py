from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator


class OrderStatus(str, Enum):
    NEW = "NEW"
    PROCESSING = "PROCESSING"
    INVALID = "INVALID"
    PROCESSED = "PROCESSED"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.INVALID, OrderStatus.PROCESSED)


UNRESOLVED_STATUSES = (OrderStatus.NEW, OrderStatus.PROCESSING)


class CreateOrderResult(str, Enum):
    ACCEPTED = "ACCEPTED"
    ALREADY_OWNED = "ALREADY_OWNED"


def luhn_valid(number: str) -> bool:
    """Return True if ``number`` is a non-empty digit string passing the Luhn checksum."""
    if not number or not number.isdigit():
        return False
    total = 0
    parity = len(number) % 2
    for i, ch in enumerate(number):
        digit = int(ch)
        if i % 2 == parity:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


class User(BaseModel):
    id: int
    login: str
    password_hash: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Order(BaseModel):
    number: str
    user_id: int
    status: OrderStatus = OrderStatus.NEW
    accrual: Optional[Decimal] = None
    uploaded_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def is_resolved(self) -> bool:
        return self.status.is_terminal


class Withdrawal(BaseModel):
    order: str
    user_id: int
    amount: Decimal
    processed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Balance(BaseModel):
    current: Decimal = Decimal("0")
    withdrawn: Decimal = Decimal("0")


class CredentialsRequest(BaseModel):
    login: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)

    model_config = ConfigDict(json_schema_extra={
        "example": {"login": "alice", "password": "s3cret"}
    })


class WithdrawRequest(BaseModel):
    order: str = Field(..., description="Luhn-valid order number the points are spent on")
    sum: Decimal = Field(..., gt=0)

    model_config = ConfigDict(json_schema_extra={
        "example": {"order": "2377225624", "sum": 751}
    })

    @field_validator("order")
    @classmethod
    def _order_is_luhn_valid(cls, value: str) -> str:
        value = value.strip()
        if not luhn_valid(value):
            raise ValueError("order number fails the Luhn check")
        return value


class OrderResponse(BaseModel):
    number: str
    status: OrderStatus
    accrual: Optional[float] = None
    uploaded_at: datetime

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        return cls(
            number=order.number,
            status=order.status,
            accrual=float(order.accrual) if order.accrual is not None else None,
            uploaded_at=order.uploaded_at,
        )


class BalanceResponse(BaseModel):
    current: float
    withdrawn: float

    @classmethod
    def from_balance(cls, balance: Balance) -> "BalanceResponse":
        return cls(current=float(balance.current), withdrawn=float(balance.withdrawn))


class WithdrawalResponse(BaseModel):
    order: str
    sum: float
    processed_at: datetime

    @classmethod
    def from_withdrawal(cls, withdrawal: Withdrawal) -> "WithdrawalResponse":
        return cls(
            order=withdrawal.order,
            sum=float(withdrawal.amount),
            processed_at=withdrawal.processed_at,
        )
