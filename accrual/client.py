"""
HTTP client for the external accrual authority.

One call per order: GET /api/orders/{number}. Every non-answer is raised
as an AccrualError subclass; all of them are transient from the point of
view of the reconciliation poller.
"""

from decimal import Decimal
from enum import Enum
from typing import Optional

import httpx
from loguru import logger
from pydantic import BaseModel, ValidationError

from ledger.models import OrderStatus


class AccrualStatus(str, Enum):
    REGISTERED = "REGISTERED"
    PROCESSING = "PROCESSING"
    INVALID = "INVALID"
    PROCESSED = "PROCESSED"


class AccrualResult(BaseModel):
    order: str
    status: AccrualStatus
    accrual: Optional[Decimal] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (AccrualStatus.PROCESSED, AccrualStatus.INVALID)

    @property
    def order_status(self) -> OrderStatus:
        if self.status == AccrualStatus.REGISTERED:
            return OrderStatus.NEW
        return OrderStatus(self.status.value)


class AccrualError(Exception):
    pass


class OrderNotRegisteredError(AccrualError):
    pass


class RateLimitedError(AccrualError):
    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class AccrualServerError(AccrualError):
    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class AccrualTransportError(AccrualError):
    pass


class AccrualTimeoutError(AccrualTransportError):
    pass


class AccrualResponseError(AccrualError):
    pass


def parse_retry_after(value: Optional[str]) -> Optional[int]:
    """Parse a Retry-After header given in whole seconds."""
    if value is None:
        return None
    value = value.strip()
    if not value.isdigit():
        return None
    return int(value)


class AccrualClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "AccrualClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def fetch(self, number: str) -> AccrualResult:
        try:
            response = await self._http.get(f"/api/orders/{number}")
        except httpx.TimeoutException as e:
            raise AccrualTimeoutError(f"request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise AccrualTransportError(f"http request failed: {e}") from e

        return self._classify(number, response)

    def _classify(self, number: str, response: httpx.Response) -> AccrualResult:
        code = response.status_code
        if code == httpx.codes.TOO_MANY_REQUESTS:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            if retry_after is None:
                raise RateLimitedError("429 without valid Retry-After")
            raise RateLimitedError(f"too many requests, retry-after={retry_after}", retry_after)
        if code == httpx.codes.NO_CONTENT:
            raise OrderNotRegisteredError("order not registered in accrual system")
        if code >= 500:
            raise AccrualServerError(f"accrual service returned {code}", code)
        if code != httpx.codes.OK:
            raise AccrualResponseError(f"unexpected status {code}")

        try:
            result = AccrualResult.model_validate_json(response.content)
        except ValidationError as e:
            raise AccrualResponseError(f"malformed response body: {e}") from e
        if result.order != number:
            raise AccrualResponseError(
                f"response is for order {result.order!r}, expected {number!r}"
            )
        logger.debug("Accrual for {}: {} {}", number, result.status.value, result.accrual)
        return result
