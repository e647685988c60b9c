import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from funnel.config import Settings
from funnel.database import create_tables
from funnel.runtime import FunnelRuntime
from funnel.schemas.payment import PaymentEvent

WEBHOOK_URL = "http://workflow.test/webhook/funnel"


class FakeClock:
    def __init__(self, start=None):
        self.current = start or datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.current

    def advance(self, seconds):
        self.current = self.current + timedelta(seconds=seconds)


class InstantSleep:
    """Records requested delays and returns on the next loop iteration."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


class HeldSleep:
    """Records requested delays and blocks until released."""

    def __init__(self):
        self.delays = []
        self._events = []

    async def __call__(self, delay):
        self.delays.append(delay)
        event = asyncio.Event()
        self._events.append(event)
        await event.wait()

    def release_all(self):
        for event in self._events:
            event.set()


class WorkflowEngine:
    """Stands in for the workflow engine behind an httpx.MockTransport."""

    def __init__(self, statuses=None):
        self.statuses = list(statuses or [])
        self.received = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.received.append(json.loads(request.content))
        status = self.statuses.pop(0) if self.statuses else 200
        return httpx.Response(status, json={"ok": status < 400})

    @property
    def transport(self):
        return httpx.MockTransport(self.handler)

    @property
    def event_types(self):
        return [event["eventType"] for event in self.received]


class SlowWorkflowEngine(WorkflowEngine):
    """Workflow engine that holds every request until ``release()``."""

    def __init__(self, statuses=None):
        super().__init__(statuses)
        self.started = asyncio.Event()
        self._released = asyncio.Event()

    async def slow_handler(self, request: httpx.Request) -> httpx.Response:
        self.started.set()
        await self._released.wait()
        return self.handler(request)

    def release(self):
        self._released.set()

    def hold(self):
        self.started.clear()
        self._released.clear()

    @property
    def transport(self):
        return httpx.MockTransport(self.slow_handler)


async def settle(scheduler, rounds=20, kind=None):
    """Wait for running attempts and armed timers (and the timers they arm) to finish.

    With ``kind``, timers of other kinds are left alone, e.g. a held payment timeout.
    """
    for _ in range(rounds):
        tasks = list(scheduler._inflight.values()) + [
            task
            for event_id, task in scheduler._timers.items()
            if kind is None or scheduler._timer_kinds.get(event_id) == kind
        ]
        if not tasks:
            return
        await asyncio.gather(*tasks, return_exceptions=True)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        workflow_webhook_url=WEBHOOK_URL,
        channels=["GABY01", "GABY02", "GABY03"],
        default_channel="GABY01",
        admin_token=None,
    )


@pytest.fixture
def workflow():
    return WorkflowEngine()


@pytest.fixture
def make_runtime(session_factory, settings, clock, workflow):
    def _make(sleep_func=None, now_func=None, workflow_engine=None):
        target = workflow_engine or workflow
        return FunnelRuntime.build(
            session_factory,
            settings,
            transport=target.transport,
            sleep_func=sleep_func or InstantSleep(),
            now_func=now_func or clock,
        )

    return _make


@pytest.fixture
def payment_event():
    def _event(order_code="ORD-1", status="pending", phone="5511987654321", **overrides):
        data = {
            "order_code": order_code,
            "status": status,
            "product": "FAB",
            "phone": phone,
            "customer_name": "Maria Silva",
            "amount": 97.0,
            "payment_link_ref": "https://pay.test/pix/abc",
        }
        data.update(overrides)
        return PaymentEvent(**data)

    return _event
