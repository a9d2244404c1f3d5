"""Example that watches workflow events on Redis while a workflow reports progress.

Requires a local Redis server. Run with::

    SAGAFLOW_EVENTS_BACKEND=redis python guides/event_stream_example.py
"""

import asyncio

from sagaflow import Success, Workflow, WorkflowContext, WorkflowEngine, create_step
from sagaflow.config import load_config


async def import_rows(rows, context: WorkflowContext):
    for i, row in enumerate(rows, start=1):
        await asyncio.sleep(0.1)
        await context.report_progress(i, len(rows), f"imported {row}")
    return len(rows)


class ImportWorkflow(Workflow[list, int]):
    name = "catalog.import"
    total_steps = 1

    load = create_step("import-rows", import_rows)

    async def execute(self, input, context):
        return Success(await self.load(input, context))


async def watch(engine: WorkflowEngine):
    channel = engine.event_publisher.broadcast_channel
    async for event in channel.subscribe(engine.event_publisher.broadcast_topic, lifespan=5.0):
        percent = event.get("progressPercent")
        suffix = f" {percent}%" if percent is not None else ""
        print(f"{event['eventType']} {event.get('stepName', '')}{suffix}")


async def main():
    engine = WorkflowEngine.from_config(load_config())
    watcher = asyncio.create_task(watch(engine))
    await asyncio.sleep(0.5)

    result = await engine.execute_workflow(ImportWorkflow(), ["a", "b", "c", "d"])
    print(f"Result: {result}")
    await watcher


if __name__ == "__main__":
    asyncio.run(main())
