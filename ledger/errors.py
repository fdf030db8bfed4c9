class LedgerServiceError(Exception):
    pass


class UserAlreadyExistsError(LedgerServiceError):
    pass


class UserNotFoundError(LedgerServiceError):
    pass


class InvalidCredentialsError(LedgerServiceError):
    pass


class OrderConflictError(LedgerServiceError):
    """Order number is already owned by a different user."""


class OrderAlreadyOwnedError(LedgerServiceError):
    """Order number was already uploaded by the same user."""


class OrderNotFoundError(LedgerServiceError):
    pass


class InsufficientFundsError(LedgerServiceError):
    pass


class WithdrawalExistsError(LedgerServiceError):
    pass


class StorageError(LedgerServiceError):
    """Storage or transaction failure; nothing was committed."""
