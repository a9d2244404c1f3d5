"""Repository contract shared by the in-memory and SQLite backends."""

from datetime import timedelta

import pytest

import sagaflow.persistence as persistence
from sagaflow.persistence import (
    DuplicateRecordError,
    InMemoryWorkflowRepository,
    OptimisticLockError,
    SQLiteWorkflowRepository,
    StepEventStatus,
    WorkflowExecution,
    WorkflowExecutionStatus,
    WorkflowStepEvent,
    get_repository,
)
from sagaflow.persistence.models import utcnow


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "inmemory":
        yield InMemoryWorkflowRepository()
    else:
        repository = SQLiteWorkflowRepository(tmp_path / "workflows.db")
        yield repository
        repository.close()


def _execution(**kwargs) -> WorkflowExecution:
    kwargs.setdefault("workflow_name", "order.create")
    return WorkflowExecution(**kwargs)


@pytest.mark.asyncio
async def test_execution_crud(repo):
    execution = _execution(input_data='{"id": 1}', correlation_id="c-1", timeout_seconds=30)
    await repo.insert_execution(execution)

    loaded = await repo.get_execution(execution.id)
    assert loaded == execution

    loaded.mark_failed(RuntimeError("boom"))
    await repo.update_execution(loaded)

    reloaded = await repo.get_execution(execution.id)
    assert reloaded.status == WorkflowExecutionStatus.FAILED
    assert reloaded.error_message == "boom"
    assert reloaded.error_type == "RuntimeError"
    assert reloaded.completed_at is not None
    assert await repo.get_execution("missing") is None


@pytest.mark.asyncio
async def test_duplicate_idempotency_key_is_rejected(repo):
    await repo.insert_execution(_execution(idempotency_key="k-1"))
    # Same key on another workflow is allowed.
    await repo.insert_execution(_execution(workflow_name="order.refund", idempotency_key="k-1"))

    with pytest.raises(DuplicateRecordError):
        await repo.insert_execution(_execution(idempotency_key="k-1"))

    found = await repo.find_by_idempotency_key("k-1", "order.refund")
    assert found.workflow_name == "order.refund"


@pytest.mark.asyncio
async def test_pagination_newest_first(repo):
    base = utcnow() - timedelta(minutes=10)
    ids = []
    for i in range(5):
        execution = _execution(created_at=base + timedelta(minutes=i))
        ids.append(execution.id)
        await repo.insert_execution(execution)
    await repo.insert_execution(_execution(workflow_name="other"))

    page = await repo.find_executions_by_workflow("order.create", page=0, size=2)
    assert page.total == 5
    assert page.total_pages == 3
    assert [e.id for e in page.items] == [ids[4], ids[3]]

    last = await repo.find_executions_by_workflow("order.create", page=2, size=2)
    assert [e.id for e in last.items] == [ids[0]]


@pytest.mark.asyncio
async def test_status_correlation_and_children(repo):
    now = utcnow()
    old = _execution(created_at=now - timedelta(hours=2))
    parent = _execution(correlation_id="c-9", created_at=now - timedelta(seconds=2))
    child = _execution(
        parent_execution_id=parent.id, correlation_id="c-9", created_at=now - timedelta(seconds=1)
    )
    for execution in (old, parent, child):
        await repo.insert_execution(execution)

    running = await repo.find_executions_by_status(WorkflowExecutionStatus.RUNNING)
    assert {e.id for e in running} == {old.id, parent.id, child.id}

    recent = await repo.find_executions_by_status(
        WorkflowExecutionStatus.RUNNING, since=utcnow() - timedelta(hours=1)
    )
    assert {e.id for e in recent} == {parent.id, child.id}

    correlated = await repo.find_executions_by_correlation_id("c-9")
    assert [e.id for e in correlated] == [parent.id, child.id]

    children = await repo.find_child_executions(parent.id)
    assert [e.id for e in children] == [child.id]


@pytest.mark.asyncio
async def test_count_by_status(repo):
    done = _execution()
    done.mark_completed("{}")
    for execution in (done, _execution(), _execution()):
        await repo.insert_execution(execution)

    stats = await repo.count_executions_by_status("order.create", utcnow() - timedelta(hours=1))
    counts = {s.status: s.count for s in stats}
    assert counts == {
        WorkflowExecutionStatus.COMPLETED: 1,
        WorkflowExecutionStatus.RUNNING: 2,
    }


@pytest.mark.asyncio
async def test_idempotency_claim_save_and_insert(repo):
    async with repo.idempotency_claim("k-2", "order.create") as claim:
        assert claim.existing is None
        await claim.insert(_execution(idempotency_key="k-2"))

    async with repo.idempotency_claim("k-2", "order.create") as claim:
        existing = claim.existing
        assert existing is not None
        existing.increment_retry()
        await claim.save(existing)

    stored = await repo.find_by_idempotency_key("k-2", "order.create")
    assert stored.retry_count == 1


@pytest.mark.asyncio
async def test_step_events(repo):
    for index, name in enumerate(["reserve", "charge", "ship"]):
        await repo.insert_step_event(
            WorkflowStepEvent(
                execution_id="e-1",
                workflow_name="order.create",
                step_name=name,
                step_index=index,
                total_steps=3,
            )
        )

    with pytest.raises(DuplicateRecordError):
        await repo.insert_step_event(
            WorkflowStepEvent(execution_id="e-1", workflow_name="order.create", step_name="x", step_index=1)
        )

    row = await repo.get_step_event("e-1", 1)
    row.mark_completed('"ok"', 20)
    await repo.update_step_event(row)
    assert row.version == 1

    stale = await repo.get_step_event("e-1", 1)
    stale.version = 0
    with pytest.raises(OptimisticLockError):
        await repo.update_step_event(stale)

    rows = await repo.list_step_events("e-1")
    assert [r.step_name for r in rows] == ["reserve", "charge", "ship"]
    assert rows[1].status == StepEventStatus.COMPLETED
    assert rows[1].output_data == '"ok"'


@pytest.mark.asyncio
async def test_find_stale_running_steps(repo):
    stuck = WorkflowStepEvent(
        execution_id="e-2",
        workflow_name="wf",
        step_name="stuck",
        step_index=0,
        started_at=utcnow() - timedelta(hours=1),
    )
    fresh = WorkflowStepEvent(execution_id="e-2", workflow_name="wf", step_name="fresh", step_index=1)
    done = WorkflowStepEvent(
        execution_id="e-2",
        workflow_name="wf",
        step_name="done",
        step_index=2,
        started_at=utcnow() - timedelta(hours=1),
        status=StepEventStatus.COMPLETED,
    )
    for event in (stuck, fresh, done):
        await repo.insert_step_event(event)

    stale = await repo.find_stale_running_steps(utcnow() - timedelta(minutes=30))
    assert [s.step_name for s in stale] == ["stuck"]


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    assert isinstance(get_repository(), InMemoryWorkflowRepository)
    # The first repository is reused for argument-less calls.
    assert get_repository() is persistence._repository_instance

    repo = get_repository(f"sqlite://{tmp_path / 'factory.db'}")
    assert isinstance(repo, SQLiteWorkflowRepository)
    repo.close()

    monkeypatch.setattr(persistence, "_repository_instance", None)
    monkeypatch.setenv("SAGAFLOW_DATABASE_URL", f"sqlite://{tmp_path / 'env.db'}")
    repo = get_repository()
    assert isinstance(repo, SQLiteWorkflowRepository)
    assert repo.db_path.endswith("env.db")
    repo.close()

    with pytest.raises(ValueError):
        get_repository("mysql://localhost/db")
