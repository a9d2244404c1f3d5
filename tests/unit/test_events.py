"""Event envelopes and the dual-sink publisher."""

import pytest

from sagaflow import Success, Workflow, WorkflowContext, WorkflowEventPublisher, create_step
from sagaflow.events import (
    StepProgressEvent,
    WorkflowFailedEvent,
    WorkflowStartedEvent,
    parse_event,
    to_envelope,
)
from sagaflow.persistence import (
    InMemoryWorkflowRepository,
    OptimisticLockError,
    StepEventStatus,
    WorkflowStepEvent,
)
from sagaflow.transports import InMemoryBroadcastChannel, InMemoryDurableSink
from sagaflow.transports.base import DurableSink

from conftest import make_engine


class FailingSink(DurableSink):
    async def publish(self, topic, partition_key, envelope):
        raise ConnectionError("broker down")


def test_envelope_uses_camel_case_and_round_trips():
    event = WorkflowFailedEvent(
        execution_id="e-1",
        workflow_name="wf",
        error="boom",
        error_type="RuntimeError",
        duration_ms=12,
    )

    envelope = to_envelope(event)

    assert envelope["eventType"] == "WORKFLOW_FAILED"
    assert envelope["executionId"] == "e-1"
    assert envelope["errorType"] == "RuntimeError"
    assert envelope["status"] == "FAILED"
    assert "correlationId" not in envelope
    assert parse_event(envelope) == event


def test_progress_percent():
    event = StepProgressEvent(
        execution_id="e-1",
        workflow_name="wf",
        step_name="import",
        step_index=0,
        progress_current=3,
        progress_total=4,
    )
    assert to_envelope(event)["progressPercent"] == 75
    empty = event.model_copy(update={"progress_total": 0})
    assert empty.progress_percent == 0


@pytest.mark.asyncio
async def test_sink_failure_is_swallowed_and_broadcast_still_sent():
    channel = InMemoryBroadcastChannel()
    publisher = WorkflowEventPublisher(durable_sink=FailingSink(), broadcast_channel=channel)

    await publisher.publish(WorkflowStartedEvent(execution_id="e-1", workflow_name="wf"))

    assert [e["eventType"] for e in channel.history["/topic/workflows"]] == ["WORKFLOW_STARTED"]


@pytest.mark.asyncio
async def test_durable_sink_is_keyed_by_execution_id():
    sink = InMemoryDurableSink()
    publisher = WorkflowEventPublisher(durable_sink=sink, durable_topic="audit")

    await publisher.publish_workflow_started("e-9", "wf", {"a": 1}, correlation_id="c-1")

    key, envelope = sink.records["audit"][0]
    assert key == "e-9"
    assert envelope["input"] == '{"a":1}'
    assert envelope["correlationId"] == "c-1"


@pytest.mark.asyncio
async def test_progress_is_broadcast_only():
    sink = InMemoryDurableSink()
    channel = InMemoryBroadcastChannel()
    engine = make_engine(durable_sink=sink, broadcast_channel=channel)

    class ImportWorkflow(Workflow[dict, dict]):
        name = "import"
        total_steps = 1

        async def execute(self, input, context: WorkflowContext):
            async def load(rows, ctx: WorkflowContext):
                for i in range(1, 3):
                    await ctx.report_progress(i, 2, f"row {i}")
                return {"rows": 2}

            return Success(await create_step("load", load)(input, context))

    result = await engine.execute_workflow(ImportWorkflow(), {"file": "a.csv"})

    assert isinstance(result, Success)
    durable_types = [e["eventType"] for e in sink.envelopes("workflow-events")]
    assert "STEP_PROGRESS" not in durable_types
    assert durable_types == [
        "WORKFLOW_STARTED",
        "STEP_STARTED",
        "STEP_COMPLETED",
        "WORKFLOW_COMPLETED",
    ]
    progress = [e for e in channel.history["/topic/workflows"] if e["eventType"] == "STEP_PROGRESS"]
    assert [(p["progressCurrent"], p["progressPercent"]) for p in progress] == [(1, 50), (2, 100)]
    assert progress[0]["stepName"] == "load"
    assert progress[0]["progressMessage"] == "row 1"


@pytest.mark.asyncio
async def test_progress_outside_a_step_is_ignored():
    channel = InMemoryBroadcastChannel()
    context = WorkflowContext()
    context.execution_id = "e-1"
    context.event_publisher = WorkflowEventPublisher(broadcast_channel=channel)

    await context.report_progress(1, 2)

    assert channel.history == {}


@pytest.mark.asyncio
async def test_duplicate_step_start_reuses_row():
    repo = InMemoryWorkflowRepository()
    publisher = WorkflowEventPublisher(repository=repo)

    for _ in range(2):
        await publisher.publish_step_started("e-1", "wf", "charge", 0, 2, {"amount": 1})
    await publisher.publish_step_completed("e-1", "wf", "charge", 0, 2, {"ok": True}, 15)
    # A repeated completion is a no-op.
    await publisher.publish_step_completed("e-1", "wf", "charge", 0, 2, {"ok": True}, 15)

    rows = await repo.list_step_events("e-1")
    assert len(rows) == 1
    assert rows[0].status == StepEventStatus.COMPLETED
    assert rows[0].duration_ms == 15
    assert rows[0].version == 1


@pytest.mark.asyncio
async def test_first_terminal_status_wins_across_publishers():
    repo = InMemoryWorkflowRepository()
    first = WorkflowEventPublisher(repository=repo)
    second = WorkflowEventPublisher(repository=repo)

    await first.publish_step_started("e-2", "wf", "ship", 0, 1, None)
    await second.publish_step_started("e-2", "wf", "ship", 0, 1, None)

    await first.publish_step_completed("e-2", "wf", "ship", 0, 1, "tracking-1", 5)
    await second.publish_step_failed("e-2", "wf", "ship", 0, 1, RuntimeError("late"), 9)

    row = await repo.get_step_event("e-2", 0)
    assert row.status == StepEventStatus.COMPLETED
    assert row.output_data == '"tracking-1"'
    assert row.error_message is None


@pytest.mark.asyncio
async def test_stale_version_is_rejected():
    repo = InMemoryWorkflowRepository()
    await repo.insert_step_event(
        WorkflowStepEvent(execution_id="e-3", workflow_name="wf", step_name="s", step_index=0)
    )
    a = await repo.get_step_event("e-3", 0)
    b = await repo.get_step_event("e-3", 0)

    a.mark_completed(None, 1)
    await repo.update_step_event(a)
    assert a.version == 1

    b.mark_failed("boom", "RuntimeError", 2)
    with pytest.raises(OptimisticLockError):
        await repo.update_step_event(b)


@pytest.mark.asyncio
async def test_completion_without_started_row_is_dropped():
    repo = InMemoryWorkflowRepository()
    publisher = WorkflowEventPublisher(repository=repo)

    await publisher.publish_step_completed("e-4", "wf", "s", 0, None, None, 1)

    assert await repo.list_step_events("e-4") == []
