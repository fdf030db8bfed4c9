from decimal import Decimal
from typing import Optional

from loguru import logger

from .auth import hash_password, verify_password
from .errors import (
    LedgerServiceError,
    UserAlreadyExistsError,
    UserNotFoundError,
    InvalidCredentialsError,
    OrderConflictError,
    OrderAlreadyOwnedError,
    OrderNotFoundError,
    InsufficientFundsError,
    WithdrawalExistsError,
    StorageError,
)
from .models import (
    Balance,
    CreateOrderResult,
    Order,
    User,
    Withdrawal,
)
from .storage import InMemoryStorage, LedgerStorage

__all__ = [
    "LedgerService",
    "LedgerServiceError",
    "UserAlreadyExistsError",
    "UserNotFoundError",
    "InvalidCredentialsError",
    "OrderConflictError",
    "OrderAlreadyOwnedError",
    "OrderNotFoundError",
    "InsufficientFundsError",
    "WithdrawalExistsError",
    "StorageError",
]


class LedgerService:
    """Order intake, balance reads and withdrawals for request handlers."""

    def __init__(self, storage: Optional[LedgerStorage] = None):
        self.storage = storage or InMemoryStorage()

    async def register(self, login: str, password: str) -> User:
        try:
            user = await self.storage.create_user(login, hash_password(password))
        except StorageError:
            logger.exception("Failed to create user {}", login)
            raise
        logger.info("Registered user {} (id={})", login, user.id)
        return user

    async def authenticate(self, login: str, password: str) -> User:
        try:
            user = await self.storage.get_user_by_login(login)
        except UserNotFoundError:
            raise InvalidCredentialsError("Invalid login or password")
        except StorageError:
            logger.exception("Failed to load user {}", login)
            raise
        if not verify_password(password, user.password_hash):
            raise InvalidCredentialsError("Invalid login or password")
        return user

    async def create_order(self, number: str, user_id: int) -> CreateOrderResult:
        """
        Register an order number for a user.

        Re-uploading one's own order is a no-op (ALREADY_OWNED); a number
        owned by someone else raises OrderConflictError.
        """
        try:
            await self.storage.create_order(number, user_id)
        except OrderAlreadyOwnedError:
            logger.debug("Order {} already uploaded by user {}", number, user_id)
            return CreateOrderResult.ALREADY_OWNED
        except OrderConflictError:
            logger.info("Order {} rejected for user {}: owned by another user", number, user_id)
            raise
        except StorageError:
            logger.exception("Failed to create order {}", number)
            raise
        logger.debug("Order {} accepted for user {}", number, user_id)
        return CreateOrderResult.ACCEPTED

    async def get_orders(self, user_id: int) -> list[Order]:
        return await self._read(self.storage.get_orders, user_id, what="orders")

    async def get_balance(self, user_id: int) -> Balance:
        return await self._read(self.storage.get_balance, user_id, what="balance")

    async def withdraw(self, user_id: int, order: str, amount: Decimal) -> Withdrawal:
        try:
            withdrawal = await self.storage.withdraw(user_id, order, amount)
        except InsufficientFundsError as e:
            logger.info("Withdrawal {} by user {} refused: {}", order, user_id, e)
            raise
        except WithdrawalExistsError:
            logger.info("Withdrawal {} by user {} already exists", order, user_id)
            raise
        except StorageError:
            logger.exception("Withdrawal {} by user {} failed", order, user_id)
            raise
        logger.info("User {} withdrew {} for order {}", user_id, amount, order)
        return withdrawal

    async def get_withdrawals(self, user_id: int) -> list[Withdrawal]:
        return await self._read(self.storage.get_withdrawals, user_id, what="withdrawals")

    async def _read(self, fetch, user_id: int, what: str):
        try:
            return await fetch(user_id)
        except StorageError:
            logger.exception("Failed to load {} for user {}", what, user_id)
            raise
