"""
Loyalty Points Ledger

This module provides:
- Users, orders and withdrawals with a derived points balance
- Order intake with global order-number ownership
- Withdrawals authorized atomically against the current balance (no overdraft)
- In-memory and PostgreSQL storage behind one async contract
"""

from .models import (
    OrderStatus,
    CreateOrderResult,
    User,
    Order,
    Withdrawal,
    Balance,
    luhn_valid,
)
from .service import LedgerService
from .storage import InMemoryStorage, LedgerStorage

__all__ = [
    "OrderStatus",
    "CreateOrderResult",
    "User",
    "Order",
    "Withdrawal",
    "Balance",
    "luhn_valid",
    "LedgerService",
    "InMemoryStorage",
    "LedgerStorage",
]
