"""
Ledger storage contract and the in-memory implementation.

The in-memory store keeps plain dicts, like the rows a relational store
would hold, and serializes withdrawals per user with an asyncio.Lock.
"""

import asyncio
import itertools
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Protocol

from loguru import logger

from .errors import (
    InsufficientFundsError,
    OrderAlreadyOwnedError,
    OrderConflictError,
    OrderNotFoundError,
    UserAlreadyExistsError,
    UserNotFoundError,
    WithdrawalExistsError,
)
from .models import (
    UNRESOLVED_STATUSES,
    Balance,
    Order,
    OrderStatus,
    User,
    Withdrawal,
)


class LedgerStorage(Protocol):
    async def create_user(self, login: str, password_hash: str) -> User: ...

    async def get_user_by_login(self, login: str) -> User: ...

    async def create_order(self, number: str, user_id: int) -> Order: ...

    async def get_orders(self, user_id: int) -> list[Order]: ...

    async def get_unresolved_orders(self) -> list[Order]: ...

    async def update_order(
        self, number: str, status: OrderStatus, accrual: Optional[Decimal] = None
    ) -> Order: ...

    async def get_balance(self, user_id: int) -> Balance: ...

    async def withdraw(self, user_id: int, order: str, amount: Decimal) -> Withdrawal: ...

    async def get_withdrawals(self, user_id: int) -> list[Withdrawal]: ...

    async def close(self) -> None: ...


def check_terminal(status: OrderStatus) -> None:
    if not status.is_terminal:
        raise ValueError(f"Orders can only be moved to a terminal status, got {status.value}")


class InMemoryStorage:
    def __init__(self):
        self.users: dict[str, dict] = {}
        self.orders: dict[str, dict] = {}
        self.withdrawals: dict[tuple[int, str], dict] = {}
        self._user_ids = itertools.count(1)
        self._sequence = itertools.count()
        self._withdraw_locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def create_user(self, login: str, password_hash: str) -> User:
        if login in self.users:
            raise UserAlreadyExistsError(f"User {login!r} already exists")
        user_data = {
            "id": next(self._user_ids),
            "login": login,
            "password_hash": password_hash,
            "created_at": datetime.now(timezone.utc),
        }
        self.users[login] = user_data
        return User(**user_data)

    async def get_user_by_login(self, login: str) -> User:
        user_data = self.users.get(login)
        if not user_data:
            raise UserNotFoundError(f"User {login!r} not found")
        return User(**user_data)

    async def create_order(self, number: str, user_id: int) -> Order:
        existing = self.orders.get(number)
        if existing:
            if existing["user_id"] == user_id:
                raise OrderAlreadyOwnedError(f"Order {number} already uploaded by this user")
            raise OrderConflictError(f"Order {number} already uploaded by another user")

        order_data = {
            "number": number,
            "user_id": user_id,
            "status": OrderStatus.NEW,
            "accrual": None,
            "uploaded_at": datetime.now(timezone.utc),
            "seq": next(self._sequence),
        }
        self.orders[number] = order_data
        return _order(order_data)

    async def get_orders(self, user_id: int) -> list[Order]:
        rows = [o for o in self.orders.values() if o["user_id"] == user_id]
        rows.sort(key=lambda o: (o["uploaded_at"], o["seq"]), reverse=True)
        return [_order(o) for o in rows]

    async def get_unresolved_orders(self) -> list[Order]:
        return [
            _order(o) for o in self.orders.values()
            if o["status"] in UNRESOLVED_STATUSES
        ]

    async def update_order(
        self, number: str, status: OrderStatus, accrual: Optional[Decimal] = None
    ) -> Order:
        check_terminal(status)
        order_data = self.orders.get(number)
        if not order_data:
            raise OrderNotFoundError(f"Order {number} not found")

        if order_data["status"] in UNRESOLVED_STATUSES:
            order_data["status"] = status
            if status == OrderStatus.PROCESSED:
                order_data["accrual"] = accrual if accrual is not None else Decimal("0")
        elif order_data["status"] != status:
            logger.warning(
                "Ignoring {} for order {}: already resolved as {}",
                status.value, number, order_data["status"].value,
            )
        return _order(order_data)

    async def get_balance(self, user_id: int) -> Balance:
        return self._compute_balance(user_id)

    async def withdraw(self, user_id: int, order: str, amount: Decimal) -> Withdrawal:
        if amount <= 0:
            raise ValueError("Withdrawal amount must be positive")

        async with self._withdraw_locks[user_id]:
            balance = self._compute_balance(user_id)
            if amount > balance.current:
                raise InsufficientFundsError(
                    f"Requested {amount}, available {balance.current}"
                )
            key = (user_id, order)
            if key in self.withdrawals:
                raise WithdrawalExistsError(f"Withdrawal for order {order} already exists")

            withdrawal_data = {
                "order": order,
                "user_id": user_id,
                "amount": amount,
                "processed_at": datetime.now(timezone.utc),
                "seq": next(self._sequence),
            }
            self.withdrawals[key] = withdrawal_data
        return _withdrawal(withdrawal_data)

    async def get_withdrawals(self, user_id: int) -> list[Withdrawal]:
        rows = [w for w in self.withdrawals.values() if w["user_id"] == user_id]
        rows.sort(key=lambda w: (w["processed_at"], w["seq"]), reverse=True)
        return [_withdrawal(w) for w in rows]

    async def close(self) -> None:
        pass

    def _compute_balance(self, user_id: int) -> Balance:
        accrued = sum(
            (o["accrual"] for o in self.orders.values()
             if o["user_id"] == user_id and o["status"] == OrderStatus.PROCESSED),
            Decimal("0"),
        )
        withdrawn = sum(
            (w["amount"] for w in self.withdrawals.values() if w["user_id"] == user_id),
            Decimal("0"),
        )
        return Balance(current=accrued - withdrawn, withdrawn=withdrawn)


def _order(data: dict) -> Order:
    return Order(**{k: v for k, v in data.items() if k != "seq"})


def _withdrawal(data: dict) -> Withdrawal:
    return Withdrawal(**{k: v for k, v in data.items() if k != "seq"})
