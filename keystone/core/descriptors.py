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

"""Service descriptors and the ordered descriptor store.

A descriptor says how to produce one service: which type it is registered
under, how it is built (implementation type, factory or ready instance),
how long the instance lives and, optionally, the key it is registered with.

Insertion order in the store matters: single resolution uses the last
registration, enumerable resolution returns all of them in order, and every
downstream tie-break (validation output, initialization order) follows it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar

from keystone.core.errors import ConfigurationError, type_name

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ServiceLifetime(Enum):
    """Defines how long a service instance lives.

    Values:
        SINGLETON: One instance for the entire container lifetime
        SCOPED: One instance per scope (e.g., per request)
        TRANSIENT: New instance every time it's requested
    """

    SINGLETON = "singleton"
    SCOPED = "scoped"
    TRANSIENT = "transient"

    @property
    def rank(self) -> int:
        """Width of the lifetime; wider lifetimes outlive narrower ones."""
        return _LIFETIME_RANK[self]


_LIFETIME_RANK = {
    ServiceLifetime.SINGLETON: 2,
    ServiceLifetime.SCOPED: 1,
    ServiceLifetime.TRANSIENT: 0,
}


@dataclass(frozen=True, eq=False)
class ServiceDescriptor(Generic[T]):
    """Describes how to create and manage a service.

    Exactly one of ``implementation_type``, ``factory`` or ``instance`` is
    set. Alias descriptors carry ``alias_of``: they are resolved through the
    canonical registration of that type instead of being built on their own.
    """

    service_type: Any
    implementation_type: Optional[type] = None
    factory: Optional[Callable[[Any], T]] = None
    instance: Optional[T] = None
    lifetime: ServiceLifetime = ServiceLifetime.SINGLETON
    service_key: Any = None
    alias_of: Optional[type] = None

    def __post_init__(self) -> None:
        provided = sum(
            x is not None for x in (self.implementation_type, self.factory, self.instance)
        )
        if provided != 1:
            raise ConfigurationError(
                f"Descriptor for {type_name(self.service_type)} must set exactly one of "
                f"implementation_type, factory or instance (got {provided})",
                service_type=self.service_type,
            )
        if self.instance is not None and self.lifetime is not ServiceLifetime.SINGLETON:
            raise ConfigurationError(
                f"Instance registration for {type_name(self.service_type)} must be a singleton",
                service_type=self.service_type,
            )
        if self.factory is not None and not callable(self.factory):
            raise ConfigurationError(
                f"Factory for {type_name(self.service_type)} is not callable",
                service_type=self.service_type,
            )
        if self.alias_of is not None and self.implementation_type is not self.alias_of:
            raise ConfigurationError(
                f"Alias {type_name(self.service_type)} must point at its canonical type",
                service_type=self.service_type,
                implementation_type=self.alias_of,
            )

    @property
    def is_keyed(self) -> bool:
        return self.service_key is not None

    @property
    def is_alias(self) -> bool:
        return self.alias_of is not None

    @property
    def kind(self) -> str:
        if self.implementation_type is not None:
            return "type"
        if self.factory is not None:
            return "factory"
        return "instance"

    @property
    def implementation_name(self) -> str:
        """Human-readable name of what backs this registration."""
        if self.implementation_type is not None:
            return type_name(self.implementation_type)
        if self.factory is not None:
            return f"factory:{getattr(self.factory, '__qualname__', repr(self.factory))}"
        return f"instance:{type(self.instance).__qualname__}"

    def describe(self) -> str:
        key = f" [key={self.service_key!r}]" if self.is_keyed else ""
        alias = " (alias)" if self.is_alias else ""
        return (
            f"{type_name(self.service_type)}{key} -> {self.implementation_name}"
            f" ({self.lifetime.value}){alias}"
        )


ServiceKey = Tuple[Any, Any]


class DescriptorStore:
    """Insertion-ordered collection of service descriptors.

    Lookups go through an index of ``(service_type, key)`` to positions so
    that ``find`` stays cheap for large registries; the list itself is the
    source of truth for ordering.
    """

    def __init__(self) -> None:
        self._descriptors: List[ServiceDescriptor[Any]] = []
        self._index: Dict[ServiceKey, List[int]] = {}

    def add(self, descriptor: ServiceDescriptor[Any]) -> None:
        slot = (descriptor.service_type, descriptor.service_key)
        self._index.setdefault(slot, []).append(len(self._descriptors))
        self._descriptors.append(descriptor)
        logger.debug(f"Added descriptor {descriptor.describe()}")

    def extend(self, descriptors: List[ServiceDescriptor[Any]]) -> None:
        for descriptor in descriptors:
            self.add(descriptor)

    def remove_all(self, service_type: Any, key: Any = None) -> List[ServiceDescriptor[Any]]:
        """Remove every registration of (service_type, key); returns what was removed."""
        removed = [
            d
            for d in self._descriptors
            if d.service_type == service_type and d.service_key == key
        ]
        if removed:
            self._descriptors = [d for d in self._descriptors if d not in removed]
            self._reindex()
        return removed

    def replace(self, old: ServiceDescriptor[Any], new: ServiceDescriptor[Any]) -> None:
        """Swap one registration for another in the same position."""
        for position, descriptor in enumerate(self._descriptors):
            if descriptor is old:
                self._descriptors[position] = new
                self._reindex()
                return
        raise KeyError(f"Descriptor not in store: {old.describe()}")

    def _reindex(self) -> None:
        self._index.clear()
        for position, descriptor in enumerate(self._descriptors):
            slot = (descriptor.service_type, descriptor.service_key)
            self._index.setdefault(slot, []).append(position)

    def find(self, service_type: Any, key: Any = None) -> Optional[ServiceDescriptor[Any]]:
        """Effective registration for single resolution (last one wins)."""
        positions = self._index.get((service_type, key))
        if not positions:
            return None
        return self._descriptors[positions[-1]]

    def find_all(self, service_type: Any, key: Any = None) -> List[ServiceDescriptor[Any]]:
        positions = self._index.get((service_type, key), [])
        return [self._descriptors[p] for p in positions]

    def contains(self, service_type: Any, key: Any = None) -> bool:
        return (service_type, key) in self._index

    def service_types(self) -> List[Any]:
        """Distinct unkeyed service types, in first-registration order."""
        seen: Dict[Any, None] = {}
        for descriptor in self._descriptors:
            if not descriptor.is_keyed:
                seen.setdefault(descriptor.service_type, None)
        return list(seen)

    def keyed(self) -> List[ServiceDescriptor[Any]]:
        return [d for d in self._descriptors if d.is_keyed]

    def snapshot(self) -> Tuple[ServiceDescriptor[Any], ...]:
        return tuple(self._descriptors)

    def __iter__(self) -> Iterator[ServiceDescriptor[Any]]:
        return iter(list(self._descriptors))

    def __len__(self) -> int:
        return len(self._descriptors)

    def __contains__(self, service_type: object) -> bool:
        return self.contains(service_type)


__all__ = [
    "ServiceLifetime",
    "ServiceDescriptor",
    "DescriptorStore",
]
