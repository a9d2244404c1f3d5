"""Retry, pause, resume and cancel of existing executions."""

import asyncio

import pytest
from conftest import EchoWorkflow, FlakyWorkflow, OrderInput, OrderResult, SlowWorkflow

from sagaflow import (
    ExecutionNotFoundError,
    Failure,
    IllegalExecutionStateError,
    Success,
    WorkflowOptions,
)
from sagaflow.persistence import WorkflowExecutionStatus


@pytest.mark.asyncio
async def test_retry_reruns_failed_execution_and_mirrors_result(engine):
    workflow = FlakyWorkflow(failures=1)
    engine.register_workflow(workflow, OrderInput, OrderResult)

    first = await engine.execute("order.flaky", OrderInput(order_id="r-1"), OrderInput, OrderResult)
    assert isinstance(first, Failure)

    page = await engine.get_workflow_executions("order.flaky")
    origin = page.items[0]
    assert origin.status == WorkflowExecutionStatus.COMPENSATED
    assert origin.can_retry()

    result = await engine.retry_execution(origin.id)

    assert isinstance(result, Success)
    assert result.data.status == "recovered"
    assert workflow.calls == 2

    origin = await engine.get_execution(origin.id)
    assert origin.status == WorkflowExecutionStatus.COMPLETED
    assert origin.retry_count == 1

    children = await engine.find_child_executions(origin.id)
    assert len(children) == 1
    assert children[0].status == WorkflowExecutionStatus.COMPLETED
    assert children[0].parent_execution_id == origin.id


@pytest.mark.asyncio
async def test_retry_failure_is_mirrored_to_origin(engine):
    engine.register_workflow(FlakyWorkflow(failures=5), OrderInput, OrderResult)
    await engine.execute("order.flaky", OrderInput(order_id="r-2"), OrderInput, OrderResult)
    origin = (await engine.get_workflow_executions("order.flaky")).items[0]

    result = await engine.retry_execution(origin.id)

    assert isinstance(result, Failure)
    origin = await engine.get_execution(origin.id)
    assert origin.status == WorkflowExecutionStatus.FAILED
    assert origin.error_type == "ConnectionError"
    assert origin.retry_count == 1


@pytest.mark.asyncio
async def test_retry_requires_budget(engine):
    engine.register_workflow(FlakyWorkflow(failures=5), OrderInput, OrderResult)
    await engine.execute(
        "order.flaky",
        OrderInput(order_id="r-3"),
        OrderInput,
        OrderResult,
        options=WorkflowOptions(max_retries=0),
    )
    origin = (await engine.get_workflow_executions("order.flaky")).items[0]

    with pytest.raises(IllegalExecutionStateError):
        await engine.retry_execution(origin.id)


@pytest.mark.asyncio
async def test_completed_execution_cannot_be_retried(engine):
    engine.register_workflow(EchoWorkflow(), OrderInput, OrderResult)
    await engine.execute("order.echo", OrderInput(order_id="r-4"), OrderInput, OrderResult)
    execution = (await engine.get_workflow_executions("order.echo")).items[0]

    with pytest.raises(IllegalExecutionStateError):
        await engine.retry_execution(execution.id)


@pytest.mark.asyncio
async def test_unknown_execution_raises(engine):
    with pytest.raises(ExecutionNotFoundError):
        await engine.retry_execution("does-not-exist")
    with pytest.raises(ExecutionNotFoundError):
        await engine.get_execution("does-not-exist")


@pytest.mark.asyncio
async def test_pause_and_resume(engine):
    workflow = EchoWorkflow()
    engine.register_workflow(workflow, OrderInput, OrderResult)
    execution = await engine.service.create_execution(
        workflow_name="order.echo", input_data=OrderInput(order_id="p-1")
    )

    paused = await engine.pause_execution(execution.id)
    assert paused.status == WorkflowExecutionStatus.PAUSED

    with pytest.raises(IllegalExecutionStateError):
        await engine.pause_execution(execution.id)

    result = await engine.resume_execution(execution.id)
    assert isinstance(result, Success)
    assert result.data.order_id == "p-1"
    assert workflow.calls == 1

    resumed = await engine.get_execution(execution.id)
    assert resumed.status == WorkflowExecutionStatus.COMPLETED

    with pytest.raises(IllegalExecutionStateError):
        await engine.resume_execution(execution.id)


@pytest.mark.asyncio
async def test_cancel_only_non_terminal(engine):
    execution = await engine.service.create_execution(workflow_name="order.echo", input_data=None)

    cancelled = await engine.cancel_execution(execution.id)
    assert cancelled.status == WorkflowExecutionStatus.CANCELLED
    assert cancelled.completed_at is not None

    with pytest.raises(IllegalExecutionStateError):
        await engine.cancel_execution(execution.id)


@pytest.mark.asyncio
async def test_cancelled_execution_keeps_status_when_run_finishes(engine):
    engine.register_workflow(SlowWorkflow(delay=0.2), OrderInput, OrderResult)

    task = asyncio.create_task(
        engine.execute("order.slow", OrderInput(order_id="c-1"), OrderInput, OrderResult)
    )
    await asyncio.sleep(0.05)
    execution = (await engine.get_workflow_executions("order.slow")).items[0]
    await engine.cancel_execution(execution.id)

    result = await task

    # The body is not interrupted, but the record stays cancelled.
    assert isinstance(result, Success)
    execution = await engine.get_execution(execution.id)
    assert execution.status == WorkflowExecutionStatus.CANCELLED


@pytest.mark.asyncio
async def test_statistics_count_per_status(engine):
    from datetime import timedelta

    from sagaflow.persistence.models import utcnow

    engine.register_workflow(FlakyWorkflow(failures=1), OrderInput, OrderResult)
    await engine.execute("order.flaky", OrderInput(order_id="s-1"), OrderInput, OrderResult)
    await engine.execute("order.flaky", OrderInput(order_id="s-2"), OrderInput, OrderResult)

    stats = await engine.get_workflow_statistics("order.flaky", utcnow() - timedelta(hours=1))
    counts = {s.status: s.count for s in stats}
    assert counts == {
        WorkflowExecutionStatus.COMPENSATED: 1,
        WorkflowExecutionStatus.COMPLETED: 1,
    }
