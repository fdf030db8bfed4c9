"""
Reconciliation poller.

On a fixed interval, reads every NEW/PROCESSING order from the ledger,
asks the accrual authority about each one (bounded concurrency, one
shared deadline per pass) and writes terminal outcomes back. Failures
are logged and left for the next tick; nothing is raised to callers.

Shutdown stops the timer and waits for the pass in flight. Lookups are
not cancelled, so shutdown can take up to one accrual timeout.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol

from loguru import logger

from ledger.errors import LedgerServiceError
from ledger.models import Order
from ledger.storage import LedgerStorage

from .client import AccrualError, AccrualResult, AccrualTimeoutError, RateLimitedError


class AccrualLookup(Protocol):
    async def fetch(self, number: str) -> AccrualResult: ...


class PollerState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"


class OrderDeferredError(AccrualError):
    """Lookup skipped because the authority asked us to back off."""


@dataclass
class PollerConfig:
    timeout: float = 10.0
    workers: int = 10
    tick_skew: float = 0.12

    @property
    def interval(self) -> float:
        return self.timeout + self.tick_skew


@dataclass
class PassReport:
    orders_seen: int = 0
    updated: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    errors: list[tuple[str, Exception]] = field(default_factory=list)
    aborted: bool = False


class ReconciliationPoller:
    def __init__(
        self,
        storage: LedgerStorage,
        client: AccrualLookup,
        config: Optional[PollerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.storage = storage
        self.client = client
        self.config = config or PollerConfig()
        self.state = PollerState.IDLE
        # Instant (on ``clock``) before which no lookup may be sent.
        self.resume_at: float = 0.0
        self._clock = clock
        self._sleep = sleep
        self._stopping = asyncio.Event()
        self._timer: Optional[asyncio.Task] = None
        self._current_pass: Optional[asyncio.Task] = None

    # --- lifecycle ---

    def start(self) -> None:
        if self._timer is not None:
            raise RuntimeError("Poller already started")
        self._stopping.clear()
        self._timer = asyncio.create_task(self._run_timer(), name="accrual-poller")
        logger.info("Accrual poller started (interval {:.2f}s)", self.config.interval)

    async def stop(self) -> None:
        self._stopping.set()
        if self._timer is not None:
            await self._timer
            self._timer = None
        if self._current_pass is not None:
            await asyncio.gather(self._current_pass, return_exceptions=True)
            self._current_pass = None
        logger.info("Accrual poller stopped")

    async def _run_timer(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.config.interval)
            except asyncio.TimeoutError:
                pass
            else:
                break
            if self.state == PollerState.RUNNING:
                logger.warning("Previous reconciliation pass still running, skipping tick")
                continue
            self._current_pass = asyncio.create_task(self.tick())

    # --- passes ---

    async def tick(self) -> Optional[PassReport]:
        """Run one reconciliation pass unless one is already in flight."""
        if self.state == PollerState.RUNNING:
            logger.debug("Reconciliation pass already running, tick skipped")
            return None
        self.state = PollerState.RUNNING
        try:
            report = await self.run_pass()
        except Exception:
            logger.exception("Reconciliation pass failed")
            return PassReport(aborted=True)
        finally:
            self.state = PollerState.IDLE
        self._log_report(report)
        return report

    async def run_pass(self) -> PassReport:
        report = PassReport()
        try:
            orders = await self.storage.get_unresolved_orders()
        except LedgerServiceError as e:
            logger.error("Failed to load unresolved orders: {}", e)
            report.errors.append(("*", e))
            return report

        report.orders_seen = len(orders)
        if not orders:
            return report

        if not await self._wait_for_rate_limit():
            report.aborted = True
            return report

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.timeout
        semaphore = asyncio.Semaphore(self.config.workers)

        results = await asyncio.gather(
            *(self._bounded(self._reconcile(order, semaphore), deadline) for order in orders),
            return_exceptions=True,
        )
        for order, outcome in zip(orders, results):
            self._record(report, order.number, outcome)
        return report

    async def _bounded(self, unit: Awaitable, deadline: float):
        remaining = deadline - asyncio.get_running_loop().time()
        try:
            return await asyncio.wait_for(unit, timeout=max(remaining, 0))
        except asyncio.TimeoutError:
            raise AccrualTimeoutError("pass deadline exceeded")

    async def _reconcile(self, order: Order, semaphore: asyncio.Semaphore) -> Optional[Order]:
        async with semaphore:
            if self._clock() < self.resume_at:
                raise OrderDeferredError("rate limited, lookup deferred")
            try:
                result = await self.client.fetch(order.number)
            except RateLimitedError as e:
                if e.retry_after is not None:
                    self._note_retry_after(e.retry_after)
                raise

        if not result.is_terminal:
            return None
        return await self.storage.update_order(order.number, result.order_status, result.accrual)

    def _record(self, report: PassReport, number: str, outcome) -> None:
        if isinstance(outcome, OrderDeferredError):
            report.deferred.append(number)
        elif isinstance(outcome, (AccrualError, LedgerServiceError)):
            report.errors.append((number, outcome))
        elif isinstance(outcome, BaseException):
            # Unexpected failures stay contained in the pass as well.
            logger.opt(exception=outcome).error("Unexpected error reconciling order {}", number)
            report.errors.append((number, outcome))
        elif outcome is None:
            report.pending.append(number)
        else:
            report.updated.append(number)
            logger.debug("Order {} resolved as {}", number, outcome.status.value)

    # --- rate limiting ---

    def _note_retry_after(self, seconds: int) -> None:
        resume_at = self._clock() + seconds
        if resume_at > self.resume_at:
            self.resume_at = resume_at
        logger.warning("Accrual authority asked to retry after {}s", seconds)

    async def _wait_for_rate_limit(self) -> bool:
        """Sleep out a pending Retry-After. Returns False if shutdown interrupted it."""
        delay = self.resume_at - self._clock()
        if delay <= 0:
            return True
        logger.info("Respecting Retry-After: sleeping {:.1f} seconds", delay)
        if self._sleep is not None:
            await self._sleep(delay)
            return True
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        logger.info("Shutdown requested during Retry-After sleep, pass abandoned")
        return False

    def _log_report(self, report: PassReport) -> None:
        if not report.orders_seen:
            return
        for number, error in report.errors:
            logger.warning("Order {}: {}", number, error)
        logger.info(
            "Reconciliation pass: {} orders, {} updated, {} pending, {} deferred, {} errors",
            report.orders_seen,
            len(report.updated),
            len(report.pending),
            len(report.deferred),
            len(report.errors),
        )
