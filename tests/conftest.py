"""Shared fixtures and sample workflows."""

from __future__ import annotations

import asyncio
from typing import List, Optional

import pytest
from prometheus_client import CollectorRegistry
from pydantic import BaseModel

import sagaflow.persistence as persistence
from sagaflow import (
    Failure,
    Success,
    Workflow,
    WorkflowContext,
    WorkflowEngine,
    WorkflowEventPublisher,
    WorkflowMetrics,
    create_step,
)
from sagaflow.locks import InMemoryLockStore
from sagaflow.persistence import InMemoryWorkflowRepository
from sagaflow.transports import InMemoryBroadcastChannel, InMemoryDurableSink


class OrderInput(BaseModel):
    order_id: str
    amount: int = 10


class OrderResult(BaseModel):
    order_id: str
    status: str


class EchoWorkflow(Workflow[OrderInput, OrderResult]):
    name = "order.echo"

    def __init__(self) -> None:
        self.calls = 0

    async def execute(self, input: OrderInput, context: WorkflowContext):
        self.calls += 1
        return Success(OrderResult(order_id=input.order_id, status="ok"))


class SlowWorkflow(Workflow[OrderInput, OrderResult]):
    name = "order.slow"

    def __init__(self, delay: float = 0.5) -> None:
        self.delay = delay
        self.calls = 0

    async def execute(self, input: OrderInput, context: WorkflowContext):
        self.calls += 1
        await asyncio.sleep(self.delay)
        return Success(OrderResult(order_id=input.order_id, status="slow"))


class ReserveAndChargeWorkflow(Workflow[OrderInput, OrderResult]):
    """Reserve stock, then charge the card; the charge can be told to fail."""

    name = "order.create"
    total_steps = 2

    def __init__(self, fail_charge: bool = True, fail_release: bool = False) -> None:
        self.fail_charge = fail_charge
        self.fail_release = fail_release
        self.compensated: List[str] = []

        async def reserve(input: OrderInput, context: WorkflowContext) -> str:
            return f"reservation-{input.order_id}"

        async def release(input, output, compensation_data, context) -> None:
            if self.fail_release:
                raise RuntimeError("stock service down")
            self.compensated.append(output)

        async def charge(input: OrderInput, context: WorkflowContext) -> str:
            if self.fail_charge:
                raise ValueError("card declined")
            return "charge-1"

        self.reserve = create_step("reserve-stock", reserve, release)
        self.charge = create_step("charge-card", charge)

    async def execute(self, input: OrderInput, context: WorkflowContext):
        reservation = await self.reserve(input, context)
        try:
            await self.charge(input, context)
        except ValueError as e:
            return Failure(e)
        return Success(OrderResult(order_id=input.order_id, status=reservation))


class FlakyWorkflow(Workflow[OrderInput, OrderResult]):
    """Fails the first ``failures`` calls, then succeeds."""

    name = "order.flaky"

    def __init__(self, failures: int = 1) -> None:
        self.failures = failures
        self.calls = 0

    async def execute(self, input: OrderInput, context: WorkflowContext):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("payment gateway unavailable")
        return Success(OrderResult(order_id=input.order_id, status="recovered"))


def make_engine(
    repository: Optional[InMemoryWorkflowRepository] = None,
    lock_store=None,
    durable_sink: Optional[InMemoryDurableSink] = None,
    broadcast_channel: Optional[InMemoryBroadcastChannel] = None,
    metrics: Optional[WorkflowMetrics] = None,
) -> WorkflowEngine:
    repository = repository if repository is not None else InMemoryWorkflowRepository()
    publisher = WorkflowEventPublisher(
        durable_sink=durable_sink if durable_sink is not None else InMemoryDurableSink(),
        broadcast_channel=broadcast_channel if broadcast_channel is not None else InMemoryBroadcastChannel(),
        repository=repository,
    )
    return WorkflowEngine(
        repository=repository,
        lock_store=lock_store if lock_store is not None else InMemoryLockStore(),
        event_publisher=publisher,
        metrics=metrics if metrics is not None else WorkflowMetrics(CollectorRegistry()),
    )


@pytest.fixture
def engine() -> WorkflowEngine:
    return make_engine()


@pytest.fixture(autouse=True)
def _reset_repository_singleton(monkeypatch):
    monkeypatch.setattr(persistence, "_repository_instance", None)
    for var in (
        "SAGAFLOW_CONFIG",
        "SAGAFLOW_DATABASE_URL",
        "DATABASE_URL",
        "SAGAFLOW_LOCK_BACKEND",
        "SAGAFLOW_EVENTS_BACKEND",
    ):
        monkeypatch.delenv(var, raising=False)
