"""Hooks and extra steps injected into a named workflow without subclassing it."""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Iterable,
    NamedTuple,
    Optional,
    Tuple,
    TypeVar,
    Union,
)

from .context import WorkflowContext
from .result import Failure, Success, WorkflowResult
from .steps import WorkflowStep
from .workflow import Workflow

logger = logging.getLogger(__name__)

I = TypeVar("I")
O = TypeVar("O")
T = TypeVar("T")


@dataclass(frozen=True)
class BeforeAll:
    pass


@dataclass(frozen=True)
class AfterAll:
    pass


@dataclass(frozen=True)
class BeforeStep:
    step_name: str


@dataclass(frozen=True)
class AfterStep:
    step_name: str


StepPosition = Union[BeforeAll, AfterAll, BeforeStep, AfterStep]

BEFORE_ALL = BeforeAll()
AFTER_ALL = AfterAll()


class WorkflowCustomizer(Generic[I, O]):
    """Lifecycle hooks for the workflow named ``workflow_name``.

    Customizers run in ascending ``order``. Override only the hooks you need.
    """

    workflow_name: str
    order: int = 0

    async def before_execute(self, input: I, context: WorkflowContext) -> None:
        pass

    async def after_execute(self, input: I, result: O, context: WorkflowContext) -> O:
        """Return the result, optionally rewritten, for the next customizer."""
        return result

    async def on_error(self, input: I, error: Exception, context: WorkflowContext) -> None:
        pass


class WorkflowStepProvider(metaclass=abc.ABCMeta):
    """Supplies an extra step for ``workflow_name`` at ``position``."""

    workflow_name: str
    position: StepPosition = BEFORE_ALL
    order: int = 0

    @abc.abstractmethod
    def get_step(self) -> WorkflowStep[Any, Any]:
        raise NotImplementedError

    def is_enabled(self) -> bool:
        return True


class WorkflowExtensions(NamedTuple):
    customizers: Tuple[WorkflowCustomizer[Any, Any], ...] = ()
    step_providers: Tuple[WorkflowStepProvider, ...] = ()

    def providers_at(self, position: StepPosition) -> Tuple[WorkflowStepProvider, ...]:
        return tuple(p for p in self.step_providers if p.position == position)


class ExtensionRegistry:
    """Customizers and step providers, grouped by workflow name.

    Build it once at startup. Lookups return immutable tuples sorted by
    ``order``; providers are filtered by ``is_enabled()`` when first looked up.
    """

    def __init__(
        self,
        customizers: Iterable[WorkflowCustomizer[Any, Any]] = (),
        step_providers: Iterable[WorkflowStepProvider] = (),
    ) -> None:
        self._customizers = tuple(customizers)
        self._step_providers = tuple(step_providers)
        self._cache: Dict[str, WorkflowExtensions] = {}

    def for_workflow(self, workflow_name: str) -> WorkflowExtensions:
        extensions = self._cache.get(workflow_name)
        if extensions is None:
            extensions = WorkflowExtensions(
                customizers=tuple(
                    sorted(
                        (c for c in self._customizers if c.workflow_name == workflow_name),
                        key=lambda c: c.order,
                    )
                ),
                step_providers=tuple(
                    sorted(
                        (
                            p
                            for p in self._step_providers
                            if p.workflow_name == workflow_name and p.is_enabled()
                        ),
                        key=lambda p: p.order,
                    )
                ),
            )
            self._cache[workflow_name] = extensions
        return extensions


class ExtensibleWorkflow(Workflow[I, O]):
    """Workflow template that applies registered customizers and step providers.

    Subclasses implement :meth:`do_execute` and must not override
    :meth:`execute`. The template runs, in order:

    1. ``before_execute`` of every customizer
    2. ``BeforeAll`` steps, with the workflow input
    3. ``do_execute``
    4. ``AfterAll`` steps, with the output
    5. ``after_execute`` of every customizer, each receiving the previous result

    Any exception turns into ``Failure`` after every ``on_error`` hook ran;
    errors raised by the hooks themselves are logged and dropped. Wrap named
    sub-steps of ``do_execute`` in :meth:`execute_step` to let
    ``BeforeStep``/``AfterStep`` providers run around them.

    Example::

        class CreateOrderWorkflow(ExtensibleWorkflow[CreateOrderInput, Order]):
            name = "order.create"

            async def do_execute(self, input, context):
                order = await self.execute_step(
                    "reserve-stock", input, context, lambda: reserve(input, context)
                )
                return order
    """

    def __init__(
        self,
        extensions: Optional[ExtensionRegistry] = None,
        customizers: Iterable[WorkflowCustomizer[Any, Any]] = (),
        step_providers: Iterable[WorkflowStepProvider] = (),
    ) -> None:
        self._registry = extensions or ExtensionRegistry(customizers, step_providers)

    @property
    def extensions(self) -> WorkflowExtensions:
        return self._registry.for_workflow(self.name)

    async def execute(self, input: I, context: WorkflowContext) -> WorkflowResult[O]:
        extensions = self.extensions
        logger.debug(
            f"Executing extensible workflow: {self.name} with {len(extensions.customizers)} "
            f"customizers and {len(extensions.step_providers)} step providers"
        )

        try:
            for customizer in extensions.customizers:
                logger.debug(f"Running before_execute hook: {type(customizer).__name__}")
                await customizer.before_execute(input, context)

            await self._run_provided_steps(extensions.providers_at(BEFORE_ALL), input, context, "BEFORE_ALL")

            result = await self.do_execute(input, context)

            await self._run_provided_steps(extensions.providers_at(AFTER_ALL), result, context, "AFTER_ALL")

            for customizer in extensions.customizers:
                logger.debug(f"Running after_execute hook: {type(customizer).__name__}")
                result = await customizer.after_execute(input, result, context)

            return Success(result)

        except Exception as e:
            logger.error(f"Workflow {self.name} failed: {e}", exc_info=True)
            for customizer in extensions.customizers:
                try:
                    await customizer.on_error(input, e, context)
                except Exception:
                    logger.error(f"Error in on_error hook: {type(customizer).__name__}", exc_info=True)
            return Failure(e)

    async def execute_step(
        self,
        step_name: str,
        input: Any,
        context: WorkflowContext,
        step_logic: Callable[[], Awaitable[T]],
    ) -> T:
        """Run ``step_logic`` between the providers registered around ``step_name``."""
        extensions = self.extensions
        await self._run_provided_steps(
            extensions.providers_at(BeforeStep(step_name)), input, context, f"BEFORE_STEP({step_name})"
        )
        result = await step_logic()
        await self._run_provided_steps(
            extensions.providers_at(AfterStep(step_name)), result, context, f"AFTER_STEP({step_name})"
        )
        return result

    @abc.abstractmethod
    async def do_execute(self, input: I, context: WorkflowContext) -> O:
        """Core workflow logic; return the output or raise."""
        raise NotImplementedError

    async def _run_provided_steps(
        self,
        providers: Tuple[WorkflowStepProvider, ...],
        step_input: Any,
        context: WorkflowContext,
        label: str,
    ) -> None:
        for provider in providers:
            step = provider.get_step()
            logger.debug(f"Running {label} step: {step.name}")
            await step.invoke(step_input, context)
