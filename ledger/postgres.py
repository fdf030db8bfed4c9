"""
PostgreSQL-backed ledger storage.
Uses asyncpg for async Postgres access.

Withdrawals take a transaction-scoped advisory lock keyed by user id, so
two withdrawals for the same user never interleave while withdrawals of
different users run in parallel.
"""

from contextlib import asynccontextmanager
from decimal import Decimal
from importlib import resources
from typing import Any, Optional

import asyncpg
from loguru import logger

from .errors import (
    InsufficientFundsError,
    OrderAlreadyOwnedError,
    OrderConflictError,
    OrderNotFoundError,
    StorageError,
    UserAlreadyExistsError,
    UserNotFoundError,
    WithdrawalExistsError,
)
from .models import Balance, Order, OrderStatus, User, Withdrawal
from .storage import check_terminal


# First key of the two-key advisory lock; keeps withdrawal locks apart
# from any other advisory locks taken on the same database.
WITHDRAW_LOCK_NAMESPACE = 7301

ORDER_COLUMNS = "order_number, user_id, status::text AS status, accrual, uploaded_at"


class PostgresStorage:
    def __init__(self, pool: Any):
        self._pool = pool

    @classmethod
    async def connect(cls, dsn: str, min_size: int = 2, max_size: int = 10) -> "PostgresStorage":
        """Create the connection pool and make sure the schema exists."""
        logger.info("Connecting to database")
        try:
            pool = await asyncpg.create_pool(dsn, min_size=min_size, max_size=max_size)
        except (asyncpg.PostgresError, OSError) as exc:
            raise StorageError(f"failed to create connection pool: {exc}") from exc
        storage = cls(pool)
        await storage.apply_schema()
        logger.debug("Database connection established")
        return storage

    async def apply_schema(self) -> None:
        schema = resources.files(__package__).joinpath("schema.sql").read_text()
        async with self._connection() as conn:
            await conn.execute(schema)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def _connection(self):
        if self._pool is None:
            raise StorageError("Database pool is closed")
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise StorageError(str(exc)) from exc

    # --- Users ---

    async def create_user(self, login: str, password_hash: str) -> User:
        logger.debug("Creating user {}", login)
        async with self._connection() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO users (login, password_hash)
                    VALUES ($1, $2)
                    RETURNING id, login, password_hash, created_at
                    """,
                    login,
                    password_hash,
                )
            except asyncpg.UniqueViolationError:
                raise UserAlreadyExistsError(f"User {login!r} already exists")
        return User(**dict(row))

    async def get_user_by_login(self, login: str) -> User:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                "SELECT id, login, password_hash, created_at FROM users WHERE login = $1",
                login,
            )
        if row is None:
            raise UserNotFoundError(f"User {login!r} not found")
        return User(**dict(row))

    # --- Orders ---

    async def create_order(self, number: str, user_id: int) -> Order:
        logger.debug("Creating order {} for user {}", number, user_id)
        async with self._connection() as conn:
            try:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO orders (order_number, user_id)
                    VALUES ($1, $2)
                    RETURNING {ORDER_COLUMNS}
                    """,
                    number,
                    user_id,
                )
            except asyncpg.UniqueViolationError:
                owner = await conn.fetchval(
                    "SELECT user_id FROM orders WHERE order_number = $1", number
                )
                if owner == user_id:
                    raise OrderAlreadyOwnedError(f"Order {number} already uploaded by this user")
                raise OrderConflictError(f"Order {number} already uploaded by another user")
        return _order(row)

    async def get_orders(self, user_id: int) -> list[Order]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {ORDER_COLUMNS}
                FROM orders
                WHERE user_id = $1
                ORDER BY uploaded_at DESC
                """,
                user_id,
            )
        return [_order(row) for row in rows]

    async def get_unresolved_orders(self) -> list[Order]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {ORDER_COLUMNS}
                FROM orders
                WHERE status IN ('NEW', 'PROCESSING')
                ORDER BY uploaded_at
                """
            )
        return [_order(row) for row in rows]

    async def update_order(
        self, number: str, status: OrderStatus, accrual: Optional[Decimal] = None
    ) -> Order:
        """
        Move an unresolved order to a terminal status.
        Idempotent: an order that is already resolved is returned unchanged.
        """
        check_terminal(status)
        if status == OrderStatus.PROCESSED and accrual is None:
            accrual = Decimal("0")
        if status == OrderStatus.INVALID:
            accrual = None

        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE orders
                SET status = $2::order_status, accrual = $3
                WHERE order_number = $1
                  AND status IN ('NEW', 'PROCESSING')
                RETURNING {ORDER_COLUMNS}
                """,
                number,
                status.value,
                accrual,
            )
            if row is None:
                row = await conn.fetchrow(
                    f"SELECT {ORDER_COLUMNS} FROM orders WHERE order_number = $1",
                    number,
                )
        if row is None:
            raise OrderNotFoundError(f"Order {number} not found")
        return _order(row)

    # --- Balance and withdrawals ---

    async def get_balance(self, user_id: int) -> Balance:
        async with self._connection() as conn:
            return await _load_balance(conn, user_id)

    async def withdraw(self, user_id: int, order: str, amount: Decimal) -> Withdrawal:
        if amount <= 0:
            raise ValueError("Withdrawal amount must be positive")

        logger.debug("Withdrawing {} for order {} (user {})", amount, order, user_id)
        async with self._connection() as conn:
            async with conn.transaction():
                await conn.execute(
                    "SELECT pg_advisory_xact_lock($1, $2)",
                    WITHDRAW_LOCK_NAMESPACE,
                    user_id,
                )
                balance = await _load_balance(conn, user_id)
                if amount > balance.current:
                    raise InsufficientFundsError(
                        f"Requested {amount}, available {balance.current}"
                    )
                try:
                    row = await conn.fetchrow(
                        """
                        INSERT INTO withdrawals (user_id, order_number, amount)
                        VALUES ($1, $2, $3)
                        RETURNING order_number, user_id, amount, processed_at
                        """,
                        user_id,
                        order,
                        amount,
                    )
                except asyncpg.UniqueViolationError:
                    raise WithdrawalExistsError(f"Withdrawal for order {order} already exists")
        return _withdrawal(row)

    async def get_withdrawals(self, user_id: int) -> list[Withdrawal]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT order_number, user_id, amount, processed_at
                FROM withdrawals
                WHERE user_id = $1
                ORDER BY processed_at DESC
                """,
                user_id,
            )
        return [_withdrawal(row) for row in rows]


async def _load_balance(conn: Any, user_id: int) -> Balance:
    # One statement, one snapshot.
    row = await conn.fetchrow(
        """
        SELECT
            COALESCE((SELECT SUM(accrual) FROM orders
                      WHERE user_id = $1 AND status = 'PROCESSED'), 0) AS accrued,
            COALESCE((SELECT SUM(amount) FROM withdrawals
                      WHERE user_id = $1), 0) AS withdrawn
        """,
        user_id,
    )
    withdrawn = Decimal(row["withdrawn"])
    return Balance(current=Decimal(row["accrued"]) - withdrawn, withdrawn=withdrawn)


def _order(row: Any) -> Order:
    return Order(
        number=row["order_number"],
        user_id=row["user_id"],
        status=OrderStatus(row["status"]),
        accrual=row["accrual"],
        uploaded_at=row["uploaded_at"],
    )


def _withdrawal(row: Any) -> Withdrawal:
    return Withdrawal(
        order=row["order_number"],
        user_id=row["user_id"],
        amount=row["amount"],
        processed_at=row["processed_at"],
    )
