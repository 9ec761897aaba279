# Storefront test suite - shared fixtures
#
# This module provides:
# - An ephemeral SQLite database per test (file-backed so sessions can interleave)
# - An in-memory job transport standing in for RabbitMQ
# - An in-memory Redis double
# - Fake Midtrans / Plisio HTTP endpoints behind httpx.MockTransport
# - Seed data and polling helpers

import asyncio
import fnmatch
import heapq
import itertools
import json
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import httpx
import pytest

from storefront.cache import Cache
from storefront.config import Settings
from storefront.database import Database
from storefront.job_queue import JobQueue, JobState
from services.payment_service.models import Product, User, UserAddress
from services.payment_service.runtime import PaymentRuntime


# =============================================================================
# JOB TRANSPORT
# =============================================================================

class InMemoryJobTransport:
    """Priority delivery of job ids with delays and redelivery on callback errors."""

    def __init__(self):
        self.fail_publish = False
        self.published: List[Dict[str, Any]] = []
        self._heaps: Dict[str, list] = {}
        self._signals: Dict[str, asyncio.Event] = {}
        self._dispatchers: Dict[str, asyncio.Task] = {}
        self._tasks: set = set()
        self._seq = itertools.count()

    def _push(self, queue_name: str, job_id: str, priority: int, redelivered: bool):
        heap = self._heaps.setdefault(queue_name, [])
        heapq.heappush(heap, (-priority, next(self._seq), job_id, redelivered))
        self._signals.setdefault(queue_name, asyncio.Event()).set()

    async def publish_job(self, queue_name: str, job_id: str, priority: int = 0, delay_ms: int = 0):
        if self.fail_publish:
            raise ConnectionError("broker unreachable")
        self.published.append({"queue": queue_name, "job_id": job_id, "priority": priority, "delay_ms": delay_ms})
        if delay_ms:
            asyncio.get_running_loop().call_later(
                delay_ms / 1000, self._push, queue_name, job_id, priority, False
            )
        else:
            self._push(queue_name, job_id, priority, False)

    def redeliver(self, queue_name: str, job_id: str, priority: int = 0):
        """Simulate the broker handing a message back after a consumer died."""
        self._push(queue_name, job_id, priority, True)

    async def consume_jobs(self, queue_name: str, callback: Callable[[str, bool], Awaitable[None]], prefetch: int):
        self._heaps.setdefault(queue_name, [])
        self._signals.setdefault(queue_name, asyncio.Event())
        self._dispatchers[queue_name] = asyncio.create_task(self._dispatch(queue_name, callback, prefetch))

    async def _dispatch(self, queue_name: str, callback, prefetch: int):
        slots = asyncio.Semaphore(prefetch)
        heap = self._heaps[queue_name]
        signal = self._signals[queue_name]
        while True:
            await slots.acquire()
            while not heap:
                signal.clear()
                await signal.wait()
            _, _, job_id, redelivered = heapq.heappop(heap)
            task = asyncio.create_task(self._deliver(queue_name, callback, job_id, redelivered, slots))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _deliver(self, queue_name: str, callback, job_id: str, redelivered: bool, slots: asyncio.Semaphore):
        try:
            await callback(job_id, redelivered)
        except Exception:
            self._push(queue_name, job_id, 0, True)
        finally:
            slots.release()

    async def stop_consuming(self, queue_name: str):
        dispatcher = self._dispatchers.pop(queue_name, None)
        if dispatcher:
            dispatcher.cancel()
            try:
                await dispatcher
            except asyncio.CancelledError:
                pass


# =============================================================================
# REDIS
# =============================================================================

class FakeRedis:
    """Subset of redis.asyncio.Redis used by the cache."""

    def __init__(self):
        self.store: Dict[str, str] = {}
        self.ttls: Dict[str, Optional[int]] = {}
        self.closed = False

    async def ping(self):
        return True

    async def get(self, key: str):
        return self.store.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None):
        self.store[key] = value
        self.ttls[key] = ex
        return True

    async def scan_iter(self, match: str = "*", count: int = 10):
        for key in list(self.store):
            if fnmatch.fnmatchcase(key, match):
                yield key

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    async def aclose(self):
        self.closed = True


# =============================================================================
# GATEWAYS
# =============================================================================

class FakeGateways:
    """Programmable Midtrans and Plisio endpoints."""

    def __init__(self):
        self.midtrans_status = "pending"
        self.plisio_status = "new"
        self.fail_charges = 0  # number of upcoming charge/invoice calls that return 500
        self.charges: List[Dict[str, Any]] = []
        self.status_calls: List[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.url.host == "midtrans.test":
            if path.endswith("/charge"):
                return self._charge(json.loads(request.content), "midtrans")
            if path.endswith("/status"):
                order_id = path.split("/")[-2]
                self.status_calls.append(order_id)
                return httpx.Response(200, json=self.midtrans_body(order_id, self.midtrans_status, "200"))
        if request.url.host == "plisio.test":
            if path.endswith("/invoices/new"):
                return self._charge(dict(request.url.params), "plisio")
            if path.endswith("/operations"):
                self.status_calls.append(request.url.params["txn_id"])
                return httpx.Response(
                    200,
                    json={"status": "success", "data": {"operations": [
                        {"txn_id": request.url.params["txn_id"], "status": self.plisio_status, "paid_at": 1700000000}
                    ]}},
                )
        return httpx.Response(404, json={"message": "unknown endpoint"})

    def _charge(self, body: Dict[str, Any], gateway: str) -> httpx.Response:
        if self.fail_charges:
            self.fail_charges -= 1
            return httpx.Response(500, text="gateway outage")
        self.charges.append({"gateway": gateway, "body": body})
        if gateway == "midtrans":
            order_id = body["transaction_details"]["order_id"]
            return httpx.Response(201, json=self.midtrans_body(order_id, self.midtrans_status, "201"))
        order_id = body["order_number"]
        return httpx.Response(200, json={"status": "success", "data": {
            "txn_id": f"plisio-{order_id}",
            "invoice_url": f"https://plisio.test/invoice/{order_id}",
            "status": self.plisio_status,
        }})

    @staticmethod
    def midtrans_body(order_id: str, status: str, status_code: str) -> Dict[str, Any]:
        return {
            "status_code": status_code,
            "transaction_id": f"mid-{order_id}",
            "order_id": order_id,
            "gross_amount": "150000.00",
            "transaction_status": status,
            "fraud_status": "accept",
            "va_numbers": [{"bank": "bca", "va_number": "12345678901"}],
            "expiry_time": "2030-01-01 12:00:00",
        }


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url_override=f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}",
        midtrans_server_key="SB-Mid-server-test",
        midtrans_base_url="https://midtrans.test/v2",
        plisio_api_key="plisio-api-key",
        plisio_secret_key="plisio-secret",
        plisio_base_url="https://plisio.test/api/v1",
        backend_url="https://api.shop.test",
        frontend_url="https://shop.test",
        payment_backoff_ms=10,
        otp_backoff_ms=10,
    )


@pytest.fixture
def transport() -> InMemoryJobTransport:
    return InMemoryJobTransport()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def gateways() -> FakeGateways:
    return FakeGateways()


@pytest.fixture
async def database(settings):
    db = Database(settings.database_url)
    await db.create_tables()
    yield db
    await db.close()


@pytest.fixture
async def runtime(settings, transport, fake_redis, gateways):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(gateways.handler))
    rt = PaymentRuntime(
        settings,
        transport=transport,
        cache=Cache(client=fake_redis),
        http_client=http_client,
        background_tasks=False,
    )
    await rt.start()
    yield rt
    await rt.stop()
    await http_client.aclose()


@pytest.fixture
async def seed(runtime):
    """A user with an address and three products."""
    async with runtime.database.session_factory() as session:
        session.add(User(id="user-1", username="alice", email="alice@example.com"))
        session.add(User(id="user-2", username="bob", email=None))
        session.add(UserAddress(id="addr-1", user_id="user-1", address_line="Jl. Sudirman 1", city="Jakarta"))
        session.add(UserAddress(id="addr-2", user_id="user-2", address_line="Jl. Thamrin 2", city="Jakarta"))
        session.add(Product(id="prod-a", name="Keyboard", price=100000, stock=5, reserved_stock=0))
        session.add(Product(id="prod-b", name="Mouse", price=50000, stock=10, reserved_stock=0))
        session.add(Product(id="prod-c", name="Monitor", price=900000, stock=1, reserved_stock=0))
        await session.commit()
    return runtime


# =============================================================================
# HELPERS
# =============================================================================

def checkout_body(**overrides) -> Dict[str, Any]:
    body = {
        "product_id": "prod-a",
        "address_id": "addr-1",
        "origin": "501",
        "destination": "114",
        "weight": 1000,
        "courier": "jne",
        "service": "REG",
        "product_price": 100000,
        "shipping_cost": 20000,
        "admin_fee": 30000,
        "total_amount": 150000,
        "payment_method": "bank_transfer",
        "bank": "bca",
    }
    body.update(overrides)
    return body


async def wait_for_state(queue: JobQueue, job_id: str, states: Iterable[JobState], timeout: float = 5.0):
    """Poll a job until it reaches one of ``states``."""
    states = set(states)
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        status = await queue.get_status(job_id)
        if status is not None and status.state in states:
            return status
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"Job {job_id} did not reach {states}, last status: {status}")
        await asyncio.sleep(0.02)


async def product_counters(runtime: PaymentRuntime, product_id: str):
    async with runtime.database.session_factory() as session:
        product = await session.get(Product, product_id)
        return product.stock, product.reserved_stock


async def eventually(predicate: Callable[[], Any], timeout: float = 5.0):
    """Wait until ``predicate()`` (sync or async) is truthy."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        outcome = predicate()
        if asyncio.iscoroutine(outcome):
            outcome = await outcome
        if outcome:
            return outcome
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.02)


def midtrans_notification(runtime: PaymentRuntime, order_id: str, transaction_status: str = "settlement",
                          status_code: str = "200", **extra) -> Dict[str, Any]:
    """A correctly signed Midtrans HTTP notification."""
    body = {
        "order_id": order_id,
        "status_code": status_code,
        "gross_amount": "150000.00",
        "transaction_status": transaction_status,
        "transaction_id": f"mid-{order_id}",
        "fraud_status": "accept",
        "settlement_time": "2024-05-01 10:00:00",
        **extra,
    }
    body["signature_key"] = runtime.midtrans.signature_for(order_id, status_code, "150000.00")
    return body


def plisio_callback(runtime: PaymentRuntime, order_id: str, status: str = "completed") -> Dict[str, Any]:
    """A correctly hashed Plisio invoice callback."""
    body = {
        "txn_id": f"plisio-{order_id}",
        "order_number": order_id,
        "status": status,
        "amount": "0.00032",
        "currency": "BTC",
        "expire_utc": 1893456000,
    }
    body["verify_hash"] = runtime.plisio.signature_for(body)
    return body
