"""Example adding an audit step and a tenant customizer to a workflow without subclassing it."""

import asyncio

from sagaflow import (
    BEFORE_ALL,
    AfterStep,
    ExtensibleWorkflow,
    ExtensionRegistry,
    WorkflowContext,
    WorkflowCustomizer,
    WorkflowEngine,
    WorkflowStepProvider,
    create_step,
)


class RefundWorkflow(ExtensibleWorkflow[dict, dict]):
    name = "order.refund"

    async def do_execute(self, input, context):
        async def refund():
            return {"refunded": input["amount"]}

        return await self.execute_step("refund", input, context, refund)


class TenantCustomizer(WorkflowCustomizer[dict, dict]):
    workflow_name = "order.refund"

    async def before_execute(self, input, context: WorkflowContext):
        context.add_metadata("tenant", input.get("tenant", "default"))

    async def after_execute(self, input, result, context):
        return {**result, "tenant": context.get_metadata("tenant")}


class AuditProvider(WorkflowStepProvider):
    workflow_name = "order.refund"
    position = BEFORE_ALL

    def get_step(self):
        async def audit(input, context):
            print(f"audit: refund requested {input}")

        return create_step("audit", audit)


class ReceiptProvider(WorkflowStepProvider):
    workflow_name = "order.refund"
    position = AfterStep("refund")

    def get_step(self):
        async def receipt(output, context):
            print(f"receipt: {output}")

        return create_step("receipt", receipt)


async def main():
    registry = ExtensionRegistry(
        customizers=[TenantCustomizer()],
        step_providers=[AuditProvider(), ReceiptProvider()],
    )
    engine = WorkflowEngine()
    engine.register_workflow(RefundWorkflow(extensions=registry), dict, dict)

    result = await engine.execute("order.refund", {"amount": 12, "tenant": "acme"}, dict, dict)
    print(result)


if __name__ == "__main__":
    asyncio.run(main())
