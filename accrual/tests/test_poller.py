"""
Unit Tests for the Reconciliation Poller

Tests cover:
1. Terminal outcomes written back to the ledger
2. Pending and failed lookups leave orders unresolved
3. Bounded concurrency and the shared per-pass deadline
4. Single-flight passes
5. Retry-After handling
6. Timer lifecycle and shutdown
"""

import asyncio
from decimal import Decimal

import pytest

from accrual.client import (
    AccrualResult,
    AccrualServerError,
    AccrualStatus,
    AccrualTimeoutError,
    OrderNotRegisteredError,
    RateLimitedError,
)
from accrual.poller import PollerConfig, PollerState, ReconciliationPoller
from ledger.errors import StorageError
from ledger.models import OrderStatus
from ledger.storage import InMemoryStorage


USER_A = 1
USER_B = 2
ORDER_1 = "79927398713"
ORDER_2 = "49927398716"
ORDER_3 = "2377225624"


class FakeAccrual:
    """Scripted accrual authority: ``answers`` maps order number to a result or an exception."""

    def __init__(self, answers=None, default=None, delay: float = 0.0):
        self.answers = answers or {}
        self.default = default
        self.delay = delay
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0

    async def fetch(self, number: str) -> AccrualResult:
        self.calls.append(number)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            answer = self.answers.get(number, self.default)
            if isinstance(answer, Exception):
                raise answer
            if isinstance(answer, AccrualStatus):
                return AccrualResult(order=number, status=answer)
            return AccrualResult(order=number, status=AccrualStatus.PROCESSED, accrual=Decimal(answer))
        finally:
            self.active -= 1


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


async def seed(storage: InMemoryStorage, *numbers: str, user_id: int = USER_A) -> None:
    for number in numbers:
        await storage.create_order(number, user_id)


class TestReconciliation:
    def test_processed_order_credits_balance(self):
        """Test a PROCESSED answer resolves the order and credits the owner."""

        async def scenario():
            storage = InMemoryStorage()
            await seed(storage, ORDER_1)
            poller = ReconciliationPoller(storage, FakeAccrual({ORDER_1: "500"}))

            report = await poller.tick()

            [order] = await storage.get_orders(USER_A)
            balance = await storage.get_balance(USER_A)
            return report, order, balance

        report, order, balance = asyncio.run(scenario())

        assert report.updated == [ORDER_1]
        assert order.status == OrderStatus.PROCESSED
        assert order.accrual == Decimal("500")
        assert balance.current == Decimal("500")
        assert balance.withdrawn == Decimal("0")

    def test_invalid_order_resolves_without_accrual(self):
        async def scenario():
            storage = InMemoryStorage()
            await seed(storage, ORDER_1)
            poller = ReconciliationPoller(storage, FakeAccrual({ORDER_1: AccrualStatus.INVALID}))
            await poller.tick()
            return await storage.get_orders(USER_A), await storage.get_balance(USER_A)

        [order], balance = asyncio.run(scenario())

        assert order.status == OrderStatus.INVALID
        assert order.accrual is None
        assert balance.current == Decimal("0")

    def test_pending_and_failed_lookups_leave_orders_unresolved(self):
        """Test non-terminal answers and transient errors are retried on the next tick."""

        async def scenario():
            storage = InMemoryStorage()
            await seed(storage, ORDER_1, ORDER_2, ORDER_3)
            client = FakeAccrual({
                ORDER_1: AccrualStatus.PROCESSING,
                ORDER_2: OrderNotRegisteredError("unknown"),
                ORDER_3: AccrualServerError("boom", 500),
            })
            poller = ReconciliationPoller(storage, client)
            report = await poller.tick()
            return report, await storage.get_unresolved_orders()

        report, unresolved = asyncio.run(scenario())

        assert report.orders_seen == 3
        assert report.updated == []
        assert report.pending == [ORDER_1]
        assert sorted(n for n, _ in report.errors) == sorted([ORDER_2, ORDER_3])
        assert {o.number for o in unresolved} == {ORDER_1, ORDER_2, ORDER_3}
        assert all(o.status == OrderStatus.NEW for o in unresolved)

    def test_resolved_orders_are_not_polled_again(self):
        async def scenario():
            storage = InMemoryStorage()
            await seed(storage, ORDER_1)
            await seed(storage, ORDER_2, user_id=USER_B)
            client = FakeAccrual({ORDER_1: "10", ORDER_2: AccrualStatus.REGISTERED})
            poller = ReconciliationPoller(storage, client)
            await poller.tick()
            client.calls.clear()
            await poller.tick()
            return client.calls

        assert asyncio.run(scenario()) == [ORDER_2]

    def test_empty_queue_makes_no_requests(self):
        async def scenario():
            client = FakeAccrual(default="1")
            report = await ReconciliationPoller(InMemoryStorage(), client).tick()
            return report, client.calls

        report, calls = asyncio.run(scenario())

        assert report.orders_seen == 0
        assert calls == []

    def test_storage_failure_is_contained(self):
        """Test a failing unresolved-orders read is reported, not raised."""

        class BrokenStorage(InMemoryStorage):
            async def get_unresolved_orders(self):
                raise StorageError("database unavailable")

        async def scenario():
            return await ReconciliationPoller(BrokenStorage(), FakeAccrual()).tick()

        report = asyncio.run(scenario())

        assert report.errors[0][0] == "*"
        assert isinstance(report.errors[0][1], StorageError)

    def test_unexpected_client_error_is_contained(self):
        async def scenario():
            storage = InMemoryStorage()
            await seed(storage, ORDER_1, ORDER_2)
            client = FakeAccrual({ORDER_1: RuntimeError("bug"), ORDER_2: "5"})
            poller = ReconciliationPoller(storage, client)
            report = await poller.tick()
            return report, poller.state

        report, state = asyncio.run(scenario())

        assert report.updated == [ORDER_2]
        assert [n for n, _ in report.errors] == [ORDER_1]
        assert isinstance(report.errors[0][1], RuntimeError)
        assert state == PollerState.IDLE

    def test_unexpected_pass_failure_aborts_tick(self):
        class ExplodingStorage(InMemoryStorage):
            async def get_unresolved_orders(self):
                raise RuntimeError("bug")

        async def scenario():
            poller = ReconciliationPoller(ExplodingStorage(), FakeAccrual())
            return await poller.tick(), poller.state

        report, state = asyncio.run(scenario())

        assert report.aborted
        assert state == PollerState.IDLE


class TestConcurrency:
    def test_worker_limit_caps_in_flight_lookups(self):
        async def scenario():
            storage = InMemoryStorage()
            numbers = [f"order-{i}" for i in range(8)]
            await seed(storage, *numbers)
            client = FakeAccrual(default=AccrualStatus.PROCESSING, delay=0.01)
            poller = ReconciliationPoller(storage, client, PollerConfig(timeout=5.0, workers=2))
            report = await poller.tick()
            return report, client

        report, client = asyncio.run(scenario())

        assert len(client.calls) == 8
        assert client.max_active == 2
        assert len(report.pending) == 8

    def test_shared_deadline_times_out_slow_lookups(self):
        """Test lookups still running at the pass deadline are abandoned as transient."""

        async def scenario():
            storage = InMemoryStorage()
            await seed(storage, ORDER_1, ORDER_2)
            client = FakeAccrual(default="100", delay=1.0)
            poller = ReconciliationPoller(storage, client, PollerConfig(timeout=0.05, workers=2))
            report = await poller.tick()
            return report, await storage.get_unresolved_orders()

        report, unresolved = asyncio.run(scenario())

        assert report.updated == []
        assert len(report.errors) == 2
        assert all(isinstance(e, AccrualTimeoutError) for _, e in report.errors)
        assert {o.number for o in unresolved} == {ORDER_1, ORDER_2}

    def test_single_flight(self):
        """Test a tick while a pass is running is skipped."""

        class GatedAccrual(FakeAccrual):
            def __init__(self):
                super().__init__(default="1")
                self.gate = asyncio.Event()

            async def fetch(self, number):
                await self.gate.wait()
                return await super().fetch(number)

        async def scenario():
            storage = InMemoryStorage()
            await seed(storage, ORDER_1)
            client = GatedAccrual()
            poller = ReconciliationPoller(storage, client)

            first = asyncio.create_task(poller.tick())
            await asyncio.sleep(0)
            running_state = poller.state
            skipped = await poller.tick()
            client.gate.set()
            report = await first
            return running_state, skipped, report, client.calls

        running_state, skipped, report, calls = asyncio.run(scenario())

        assert running_state == PollerState.RUNNING
        assert skipped is None
        assert report.updated == [ORDER_1]
        assert calls == [ORDER_1]


class TestRateLimiting:
    def test_retry_after_defers_remaining_lookups(self):
        """Test no lookups are sent between a 429 and the Retry-After instant."""

        async def scenario():
            storage = InMemoryStorage()
            await seed(storage, ORDER_1, ORDER_2, ORDER_3)
            clock = FakeClock()
            client = FakeAccrual(default=RateLimitedError("slow down", 30))
            poller = ReconciliationPoller(
                storage, client, PollerConfig(workers=1), clock=clock, sleep=clock.sleep
            )

            first = await poller.tick()
            calls_after_first = list(client.calls)
            resume_at = poller.resume_at

            client.default = "7"
            second = await poller.tick()
            return first, calls_after_first, resume_at, second, clock, client

        first, calls_after_first, resume_at, second, clock, client = asyncio.run(scenario())

        assert len(calls_after_first) == 1
        assert len(first.errors) == 1
        assert isinstance(first.errors[0][1], RateLimitedError)
        assert len(first.deferred) == 2
        assert resume_at == 1030.0

        assert clock.sleeps == [30.0]
        assert len(second.updated) == 3
        assert len(client.calls) == 4

    def test_rate_limit_without_retry_after_does_not_defer(self):
        async def scenario():
            storage = InMemoryStorage()
            await seed(storage, ORDER_1, ORDER_2)
            clock = FakeClock()
            client = FakeAccrual(default=RateLimitedError("429 without valid Retry-After"))
            poller = ReconciliationPoller(
                storage, client, PollerConfig(workers=1), clock=clock, sleep=clock.sleep
            )
            report = await poller.tick()
            return report, poller.resume_at, client.calls

        report, resume_at, calls = asyncio.run(scenario())

        assert resume_at == 0.0
        assert report.deferred == []
        assert len(calls) == 2

    def test_later_retry_after_wins(self):
        async def scenario():
            storage = InMemoryStorage()
            await seed(storage, ORDER_1, ORDER_2)
            clock = FakeClock()
            client = FakeAccrual({
                ORDER_1: RateLimitedError("slow down", 60),
                ORDER_2: RateLimitedError("slow down", 5),
            }, delay=0.01)
            poller = ReconciliationPoller(
                storage, client, PollerConfig(workers=2), clock=clock, sleep=clock.sleep
            )
            await poller.tick()
            return poller.resume_at

        assert asyncio.run(scenario()) == 1060.0

    def test_stop_interrupts_retry_after_sleep(self):
        async def scenario():
            storage = InMemoryStorage()
            await seed(storage, ORDER_1)
            client = FakeAccrual(default="1")
            loop = asyncio.get_running_loop()
            poller = ReconciliationPoller(storage, client, clock=loop.time)
            poller.resume_at = loop.time() + 30

            pending = asyncio.create_task(poller.tick())
            await asyncio.sleep(0.01)
            await asyncio.wait_for(poller.stop(), timeout=1.0)
            report = await asyncio.wait_for(pending, timeout=1.0)
            return report, client.calls

        report, calls = asyncio.run(scenario())

        assert report.aborted
        assert calls == []


class TestLifecycle:
    def test_timer_resolves_orders_until_stopped(self):
        async def scenario():
            storage = InMemoryStorage()
            await seed(storage, ORDER_1)
            poller = ReconciliationPoller(
                storage, FakeAccrual({ORDER_1: "42"}), PollerConfig(timeout=0.02, tick_skew=0.0)
            )
            poller.start()
            for _ in range(100):
                if not await storage.get_unresolved_orders():
                    break
                await asyncio.sleep(0.01)
            await poller.stop()
            return await storage.get_balance(USER_A), poller.state

        balance, state = asyncio.run(scenario())

        assert balance.current == Decimal("42")
        assert state == PollerState.IDLE

    def test_stop_without_start(self):
        async def scenario():
            await ReconciliationPoller(InMemoryStorage(), FakeAccrual()).stop()

        asyncio.run(scenario())

    def test_interval_includes_skew(self):
        assert PollerConfig(timeout=10.0, tick_skew=0.12).interval == pytest.approx(10.12)
