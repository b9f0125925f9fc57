# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Ordered asynchronous startup for services that need post-build work.

Services opt in by implementing ``AsyncInitializable`` (or deriving from
``AsyncInitializableService``). After the container is built the
orchestrator:

1. Collects every singleton registration whose instance is initializable,
   constructing it through the container. Instances reachable through
   several aliases are initialized once.
2. Orders them: a service never runs before the services it declares in
   ``depends_on``; among the services whose dependencies are satisfied the
   highest ``initialization_priority`` goes first, ties keeping discovery
   order.
3. Awaits each ``initialize_async(container)`` in turn. The first failure
   stops the sequence and propagates unchanged.

A run can be narrowed to selected steps (``container.initialize_async(T)``
or ``initialize_all_async(Interface)``); their dependencies run first and
steps that already ran are never repeated.

State machine:
    PLANNED -> ORDERED -> EXECUTING -> COMPLETED
                                   \\-> FAILED
    (a narrowed run that leaves steps pending returns to ORDERED)

Example:
    class Database(AsyncInitializableService):
        initialization_priority = 100

        async def initialize_async(self, provider):
            await self.connect()

    class Cache(AsyncInitializableService):
        depends_on = (Database,)

        async def initialize_async(self, provider):
            await self.warm()

    plan = container.get_initialization_order()   # Database, Cache
    await container.initialize_all_async()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

from keystone.core.descriptors import ServiceDescriptor, ServiceLifetime
from keystone.core.errors import CircularDependencyError, InitializationStateError, type_name
from keystone.core.graph import build_init_graph
from keystone.core.protocols import implements

logger = logging.getLogger(__name__)


@runtime_checkable
class AsyncInitializable(Protocol):
    """Capability for services that finish their setup asynchronously.

    Optional attributes read by the orchestrator:
        initialization_priority: Higher runs earlier among ready services (default 0)
        depends_on: Service types that must be initialized first (default None)
    """

    async def initialize_async(self, provider: Any) -> None:
        """Perform startup work; ``provider`` is the built container."""
        ...


class AsyncInitializableService:
    """Convenience base with the default priority and no dependencies."""

    initialization_priority: int = 0
    depends_on: Optional[Iterable[type]] = None

    async def initialize_async(self, provider: Any) -> None:
        return None


class StartupAction(AsyncInitializableService):
    """Wraps an ``async def action(provider)`` so it runs with the startup sequence."""

    def __init__(
        self,
        action: Callable[[Any], Awaitable[None]],
        priority: int = 0,
        name: Optional[str] = None,
    ):
        self.action = action
        self.initialization_priority = priority
        self.name = name or getattr(action, "__qualname__", repr(action))

    async def initialize_async(self, provider: Any) -> None:
        await self.action(provider)

    def __repr__(self) -> str:
        return f"StartupAction({self.name}, priority={self.initialization_priority})"


class InitializationState(Enum):
    """Lifecycle of one orchestrator."""

    PLANNED = "planned"
    ORDERED = "ordered"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class InitializationStep:
    """One entry of the initialization plan."""

    service_type: Any
    priority: int
    order: int
    depends_on: Tuple[Any, ...] = ()
    instance: Any = field(default=None, repr=False, compare=False)
    # orders of the earlier steps this one waits for
    requires: Tuple[int, ...] = field(default=(), repr=False, compare=False)

    def describe(self) -> str:
        deps = ""
        if self.depends_on:
            deps = f", depends on {', '.join(type_name(d) for d in self.depends_on)}"
        return f"{self.order}. {type_name(self.service_type)} (priority {self.priority}{deps})"


@dataclass(frozen=True)
class InitializationPlan:
    """Ordered steps, computed once and reused for execution."""

    steps: Tuple[InitializationStep, ...] = ()

    @property
    def service_types(self) -> List[Any]:
        return [step.service_type for step in self.steps]

    def describe(self) -> List[str]:
        return [step.describe() for step in self.steps]

    def __iter__(self) -> Iterator[InitializationStep]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def __getitem__(self, index: int) -> InitializationStep:
        return self.steps[index]


class InitializationHost(Protocol):
    """What the orchestrator needs from the container."""

    @property
    def descriptors(self) -> Sequence[ServiceDescriptor[Any]]: ...

    @property
    def startup_actions(self) -> Sequence[StartupAction]: ...

    def resolve_descriptor(self, descriptor: ServiceDescriptor[Any]) -> Any: ...


@dataclass(eq=False)
class _Node:
    service_type: Any
    instance: Any
    priority: int
    depends_on: Tuple[Any, ...]
    index: int
    aliases: List[Any] = field(default_factory=list)

    @property
    def match_types(self) -> List[Any]:
        return [self.service_type, type(self.instance), *self.aliases]


def is_initializable_descriptor(descriptor: ServiceDescriptor[Any]) -> bool:
    """Whether a registration can produce an initializable instance."""
    if descriptor.instance is not None:
        return isinstance(descriptor.instance, AsyncInitializable)
    if descriptor.implementation_type is not None:
        return implements(descriptor.implementation_type, AsyncInitializable)
    return isinstance(descriptor.service_type, type) and implements(
        descriptor.service_type, AsyncInitializable
    )


class AsyncInitializationOrchestrator:
    """Plans and runs the startup sequence for one built container."""

    def __init__(self, host: InitializationHost, log_plan: bool = True):
        self._host = host
        self._log_plan = log_plan
        self._state = InitializationState.PLANNED
        self._plan: Optional[InitializationPlan] = None
        self._completed: List[InitializationStep] = []

    @property
    def state(self) -> InitializationState:
        return self._state

    @property
    def completed_steps(self) -> List[InitializationStep]:
        return list(self._completed)

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    def _collect(self) -> List[_Node]:
        descriptors = list(self._host.descriptors)
        nodes: List[_Node] = []
        seen: Dict[int, _Node] = {}

        for descriptor in descriptors:
            if descriptor.is_alias or descriptor.is_keyed:
                continue
            if not is_initializable_descriptor(descriptor):
                continue
            if descriptor.lifetime is not ServiceLifetime.SINGLETON:
                logger.warning(
                    f"Skipping initialization of {type_name(descriptor.service_type)}: "
                    f"only singletons are initialized ({descriptor.lifetime.value})"
                )
                continue

            instance = self._host.resolve_descriptor(descriptor)
            if not isinstance(instance, AsyncInitializable):
                continue
            if id(instance) in seen:
                continue
            node = self._make_node(descriptor.service_type, instance, len(nodes))
            seen[id(instance)] = node
            nodes.append(node)

        for action in self._host.startup_actions:
            if id(action) not in seen:
                node = self._make_node(StartupAction, action, len(nodes))
                seen[id(action)] = node
                nodes.append(node)

        for descriptor in descriptors:
            if descriptor.is_alias:
                for node in nodes:
                    if descriptor.alias_of in (node.service_type, type(node.instance)):
                        node.aliases.append(descriptor.service_type)
        return nodes

    @staticmethod
    def _make_node(service_type: Any, instance: Any, index: int) -> _Node:
        priority = getattr(instance, "initialization_priority", 0) or 0
        depends_on = tuple(getattr(instance, "depends_on", None) or ())
        return _Node(
            service_type=service_type,
            instance=instance,
            priority=int(priority),
            depends_on=depends_on,
            index=index,
        )

    def _dependency_nodes(self, nodes: List[_Node]) -> Dict[int, List[_Node]]:
        by_type: Dict[Any, List[_Node]] = {}
        for node in nodes:
            for t in node.match_types:
                matches = by_type.setdefault(t, [])
                if node not in matches:
                    matches.append(node)

        resolved: Dict[int, List[_Node]] = {}
        for node in nodes:
            deps: List[_Node] = []
            for dep_type in node.depends_on:
                matches = by_type.get(dep_type)
                if not matches:
                    logger.warning(
                        f"{type_name(node.service_type)} depends on {type_name(dep_type)}, "
                        "which is not an initializable service; ignoring"
                    )
                    continue
                deps.extend(m for m in matches if m not in deps)
            resolved[node.index] = deps
        return resolved

    def _order(self, nodes: List[_Node]) -> List[InitializationStep]:
        deps = self._dependency_nodes(nodes)
        ordered: List[InitializationStep] = []
        done: Dict[int, int] = {}
        remaining = list(nodes)

        while remaining:
            ready = [n for n in remaining if all(d.index in done for d in deps[n.index])]
            if not ready:
                graph = build_init_graph([(n, deps[n.index]) for n in remaining])
                cycle = graph.find_cycle() or remaining
                raise CircularDependencyError(
                    [n.service_type for n in cycle], graph="initialization"
                )
            # max() keeps the first of equal priorities, i.e. discovery order
            chosen = max(ready, key=lambda n: n.priority)
            remaining.remove(chosen)
            done[chosen.index] = len(ordered) + 1
            ordered.append(
                InitializationStep(
                    service_type=chosen.service_type,
                    priority=chosen.priority,
                    order=len(ordered) + 1,
                    depends_on=chosen.depends_on,
                    instance=chosen.instance,
                    requires=tuple(done[d.index] for d in deps[chosen.index]),
                )
            )
        return ordered

    def plan(self) -> InitializationPlan:
        """Compute (once) and return the ordered initialization plan.

        Raises:
            CircularDependencyError: If ``depends_on`` declarations form a cycle
        """
        if self._plan is not None:
            return self._plan

        plan = InitializationPlan(tuple(self._order(self._collect())))
        self._plan = plan
        self._state = InitializationState.ORDERED

        if self._log_plan:
            if plan.steps:
                logger.info(
                    f"Initialization plan ({len(plan)} steps):\n  " + "\n  ".join(plan.describe())
                )
            else:
                logger.info("Initialization plan is empty")
        return plan

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def _pending(
        self, plan: InitializationPlan, select: Optional[Callable[[InitializationStep], bool]]
    ) -> List[InitializationStep]:
        """Selected steps plus everything they transitively require, in plan order."""
        if select is None:
            wanted = {step.order for step in plan}
        else:
            wanted = set()
            stack = [step.order for step in plan if select(step)]
            while stack:
                order = stack.pop()
                if order not in wanted:
                    wanted.add(order)
                    stack.extend(plan[order - 1].requires)
        done = {step.order for step in self._completed}
        return [step for step in plan if step.order in wanted and step.order not in done]

    async def execute(
        self, select: Optional[Callable[[InitializationStep], bool]] = None
    ) -> None:
        """Run steps in plan order, stopping at the first failure.

        With ``select``, only the matching steps run, preceded by the steps
        they depend on. Steps that already ran are skipped, so a targeted run
        followed by a full run initializes every service exactly once.

        Raises:
            InitializationStateError: If already executing or previously failed
            Exception: The failing step's own exception, unwrapped
        """
        if self._state is InitializationState.COMPLETED:
            return
        if self._state in (InitializationState.EXECUTING, InitializationState.FAILED):
            raise InitializationStateError(
                f"Cannot run initialization while it is {self._state.value}",
                state=self._state.value,
            )

        plan = self.plan()
        steps = self._pending(plan, select)
        self._state = InitializationState.EXECUTING

        for step in steps:
            logger.debug(f"Initializing {step.describe()}")
            try:
                await step.instance.initialize_async(self._host)
            except BaseException as e:
                self._state = InitializationState.FAILED
                logger.error(
                    f"Initialization of {type_name(step.service_type)} failed at step "
                    f"{step.order}/{len(plan)}: {e}"
                )
                raise
            self._completed.append(step)

        if len(self._completed) == len(plan):
            self._state = InitializationState.COMPLETED
        else:
            self._state = InitializationState.ORDERED
        logger.info(f"Initialized {len(steps)} services ({len(self._completed)}/{len(plan)} done)")


__all__ = [
    "AsyncInitializable",
    "AsyncInitializableService",
    "AsyncInitializationOrchestrator",
    "InitializationHost",
    "InitializationPlan",
    "InitializationState",
    "InitializationStep",
    "StartupAction",
    "is_initializable_descriptor",
]
