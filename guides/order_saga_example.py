"""Example showing a two-step order saga that compensates when the charge fails."""

import asyncio
import logging

from pydantic import BaseModel

from sagaflow import (
    Failure,
    StepResponse,
    Success,
    Workflow,
    WorkflowContext,
    WorkflowEngine,
    WorkflowOptions,
    create_step,
)


class CreateOrder(BaseModel):
    order_id: str
    sku: str
    amount: int


class OrderCreated(BaseModel):
    order_id: str
    reservation_id: str
    charge_id: str


class CardDeclined(Exception):
    pass


async def reserve_stock(order: CreateOrder, context: WorkflowContext):
    reservation_id = f"res-{order.sku}"
    print(f"Reserved {order.sku} as {reservation_id}")
    return StepResponse.of(reservation_id, compensation_data={"sku": order.sku})


async def release_stock(order, reservation_id, compensation_data, context):
    print(f"Released reservation {reservation_id} for {compensation_data['sku']}")


async def charge_card(order: CreateOrder, context: WorkflowContext):
    if order.amount > 100:
        raise CardDeclined(f"insufficient funds for {order.amount}")
    return f"ch-{order.order_id}"


class CreateOrderWorkflow(Workflow[CreateOrder, OrderCreated]):
    name = "order.create"
    total_steps = 2

    reserve = create_step("reserve-stock", reserve_stock, release_stock)
    charge = create_step("charge-card", charge_card)

    async def execute(self, input: CreateOrder, context: WorkflowContext):
        reservation_id = await self.reserve(input, context)
        try:
            charge_id = await self.charge(input, context)
        except CardDeclined as e:
            return Failure(e)
        return Success(
            OrderCreated(order_id=input.order_id, reservation_id=reservation_id, charge_id=charge_id)
        )


async def main():
    logging.basicConfig(level=logging.INFO)
    engine = WorkflowEngine()
    engine.register_workflow(CreateOrderWorkflow(), CreateOrder, OrderCreated)

    for order in (
        CreateOrder(order_id="o-1", sku="book", amount=20),
        CreateOrder(order_id="o-2", sku="piano", amount=5000),
    ):
        result = await engine.execute(
            "order.create",
            order,
            CreateOrder,
            OrderCreated,
            options=WorkflowOptions(lock_key=f"order:{order.order_id}"),
        )
        print(f"{order.order_id}: {result}")

    page = await engine.get_workflow_executions("order.create")
    for execution in page.items:
        print(f"{execution.id} {execution.status.value}")
        for step in await engine.get_step_events(execution.id):
            print(f"  [{step.step_index}] {step.step_name}: {step.status.value}")


if __name__ == "__main__":
    asyncio.run(main())
