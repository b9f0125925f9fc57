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

"""Dependency graphs over service types.

Two graphs share the same shape, an edge ``A -> B`` meaning "A needs B
first":

- the construction graph, derived from constructor parameter types of each
  implementation type (plus ``alias -> canonical`` edges), used by the
  validator;
- the initialization graph, derived from the ``depends_on`` declarations of
  async-initializable services, used by the startup orchestrator.
"""

from __future__ import annotations

import inspect
import logging
import sys
import types
import typing
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from keystone.core.descriptors import ServiceDescriptor
from keystone.core.errors import CircularDependencyError, type_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConstructorParameter:
    """One injectable parameter of an implementation's ``__init__``."""

    name: str
    annotation: Any
    has_default: bool

    @property
    def service_type(self) -> Any:
        return unwrap_optional(self.annotation)


def unwrap_optional(annotation: Any) -> Any:
    """``Optional[X]`` / ``X | None`` -> ``X``; anything else unchanged."""
    origin = typing.get_origin(annotation)
    if origin is typing.Union or (
        hasattr(types, "UnionType") and origin is getattr(types, "UnionType")
    ):
        args = [a for a in typing.get_args(annotation) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return annotation


def _resolve_hints_one_by_one(
    init: Any, cls: type, signature: inspect.Signature
) -> Dict[str, Any]:
    """Resolve each annotation on its own; unresolvable ones stay raw."""
    globalns = getattr(init, "__globals__", None)
    if globalns is None:
        module = sys.modules.get(cls.__module__)
        globalns = vars(module) if module is not None else {}
    localns = dict(vars(cls))

    hints: Dict[str, Any] = {}
    for name, param in signature.parameters.items():
        if param.annotation is inspect.Parameter.empty:
            continue

        def holder() -> None: ...

        holder.__annotations__ = {name: param.annotation}
        try:
            hints[name] = typing.get_type_hints(holder, globalns, localns)[name]
        except Exception as e:
            logger.debug(f"Leaving annotation of {type_name(cls)}.{name} unresolved: {e}")
    return hints


def constructor_parameters(implementation: Any) -> List[ConstructorParameter]:
    """Inspect the parameters of an implementation's constructor.

    ``self``, ``*args`` and ``**kwargs`` are skipped. Annotations are resolved
    with ``typing.get_type_hints`` so string annotations work. If one of them
    cannot be resolved (say a ``TYPE_CHECKING``-only import) the others are
    still resolved one at a time and only that parameter keeps its raw string. Unannotated parameters
    come back with ``inspect.Parameter.empty``.
    """
    cls = typing.get_origin(implementation) or implementation
    init = getattr(cls, "__init__", None)
    if init is None or init is object.__init__:
        return []

    try:
        signature = inspect.signature(init)
    except (TypeError, ValueError):
        return []

    try:
        hints = typing.get_type_hints(init)
    except Exception as e:
        logger.debug(f"Could not resolve type hints for {type_name(cls)}: {e}")
        hints = _resolve_hints_one_by_one(init, cls, signature)

    params: List[ConstructorParameter] = []
    for index, (name, param) in enumerate(signature.parameters.items()):
        if index == 0 and name in ("self", "cls"):
            continue
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        annotation = hints.get(name, param.annotation)
        params.append(
            ConstructorParameter(
                name=name,
                annotation=annotation,
                has_default=param.default is not inspect.Parameter.empty,
            )
        )
    return params


class DependencyGraph:
    """Insertion-ordered adjacency structure keyed by type identity."""

    def __init__(self, name: str = "construction") -> None:
        self.name = name
        self._adjacency: Dict[Any, List[Any]] = {}

    def add_node(self, node: Any) -> None:
        self._adjacency.setdefault(node, [])

    def add_edge(self, source: Any, target: Any) -> None:
        self.add_node(source)
        self.add_node(target)
        if target not in self._adjacency[source]:
            self._adjacency[source].append(target)

    def nodes(self) -> List[Any]:
        return list(self._adjacency)

    def edges(self) -> Iterator[Tuple[Any, Any]]:
        for source, targets in self._adjacency.items():
            for target in targets:
                yield source, target

    def dependencies_of(self, node: Any) -> List[Any]:
        return list(self._adjacency.get(node, ()))

    def dependents_of(self, node: Any) -> List[Any]:
        return [source for source, targets in self._adjacency.items() if node in targets]

    def subgraph(self, nodes: Iterable[Any]) -> "DependencyGraph":
        keep = set(nodes)
        sub = DependencyGraph(self.name)
        for node in self._adjacency:
            if node in keep:
                sub.add_node(node)
        for source, target in self.edges():
            if source in keep and target in keep:
                sub.add_edge(source, target)
        return sub

    def find_cycle(self) -> Optional[List[Any]]:
        """Depth-first search with a recursion stack.

        Returns the first cycle found as ``[X, ..., X]`` (the repeated node
        at both ends), or None if the graph is acyclic.
        """
        done: Set[Any] = set()
        stack: List[Any] = []
        on_stack: Set[Any] = set()

        def visit(node: Any) -> Optional[List[Any]]:
            stack.append(node)
            on_stack.add(node)
            for dependency in self._adjacency.get(node, ()):
                if dependency in on_stack:
                    start = stack.index(dependency)
                    return stack[start:] + [dependency]
                if dependency not in done:
                    cycle = visit(dependency)
                    if cycle is not None:
                        return cycle
            stack.pop()
            on_stack.discard(node)
            done.add(node)
            return None

        for node in self._adjacency:
            if node not in done:
                cycle = visit(node)
                if cycle is not None:
                    return cycle
        return None

    def topological_order(self) -> List[Any]:
        """Dependencies first; ties follow insertion order.

        Raises:
            CircularDependencyError: If the graph has a cycle
        """
        remaining = {node: len(deps) for node, deps in self._adjacency.items()}
        result: List[Any] = []
        ready = [node for node, count in remaining.items() if count == 0]
        while ready:
            node = ready.pop(0)
            result.append(node)
            for dependent in self.dependents_of(node):
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    ready.append(dependent)

        if len(result) != len(self._adjacency):
            cycle = self.find_cycle() or [n for n in self._adjacency if n not in result]
            raise CircularDependencyError(cycle, graph=self.name)
        return result

    def __contains__(self, node: object) -> bool:
        return node in self._adjacency

    def __len__(self) -> int:
        return len(self._adjacency)


def construction_dependencies(
    descriptor: ServiceDescriptor[Any], registered: Set[Any]
) -> List[Any]:
    """Registered service types a descriptor needs before it can be built."""
    if descriptor.is_alias:
        return [descriptor.alias_of]
    if descriptor.implementation_type is None:
        return []
    deps: List[Any] = []
    for param in constructor_parameters(descriptor.implementation_type):
        dep = param.service_type
        try:
            if dep in registered and dep not in deps:
                deps.append(dep)
        except TypeError:
            # unhashable annotation, cannot be a registered service
            continue
    return deps


def build_construction_graph(descriptors: Sequence[ServiceDescriptor[Any]]) -> DependencyGraph:
    """Edges from each service type to the registered types its constructor takes.

    Parameter types that are not registered are ignored; they are assumed to
    be supplied some other way (defaults, configuration primitives).
    """
    registered = {d.service_type for d in descriptors if not d.is_keyed}
    graph = DependencyGraph("construction")
    for descriptor in descriptors:
        graph.add_node(descriptor.service_type)
        for dep in construction_dependencies(descriptor, registered):
            graph.add_edge(descriptor.service_type, dep)
    logger.debug(f"Built construction graph with {len(graph)} nodes")
    return graph


def build_init_graph(nodes: Sequence[Tuple[Any, Iterable[Any]]]) -> DependencyGraph:
    """Edges from each initializable service to its declared ``depends_on`` types.

    Args:
        nodes: ``(service_type, depends_on)`` pairs in discovery order
    """
    graph = DependencyGraph("initialization")
    for service_type, depends_on in nodes:
        graph.add_node(service_type)
        for dep in depends_on or ():
            graph.add_edge(service_type, dep)
    return graph


__all__ = [
    "ConstructorParameter",
    "DependencyGraph",
    "build_construction_graph",
    "build_init_graph",
    "construction_dependencies",
    "constructor_parameters",
    "unwrap_optional",
]
