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

"""Lifecycle protocols and structural type checks shared by the engine."""

from __future__ import annotations

import inspect
import typing
from abc import ABC, ABCMeta
from typing import Any, Generic, Protocol, Set, runtime_checkable


@runtime_checkable
class Disposable(Protocol):
    """Protocol for services that need cleanup."""

    def dispose(self) -> None:
        """Release resources held by the service."""
        ...


@runtime_checkable
class AsyncDisposable(Protocol):
    """Protocol for services that need awaited cleanup."""

    async def dispose_async(self) -> None:
        """Release resources held by the service."""
        ...


# Never treated as service interfaces during discovery.
MARKER_BASES = frozenset({object, ABC, Protocol, Generic, Disposable, AsyncDisposable})


def is_protocol(cls: Any) -> bool:
    return isinstance(cls, type) and bool(getattr(cls, "_is_protocol", False))


def is_interface(cls: Any) -> bool:
    """True for protocol classes and abstract base classes.

    An ABC subclass only counts while it is still abstract or derives from
    ``ABC`` directly; concrete classes below an ABC are implementations.
    """
    if not isinstance(cls, type) or cls in MARKER_BASES:
        return False
    if is_protocol(cls):
        return True
    return isinstance(cls, ABCMeta) and (inspect.isabstract(cls) or ABC in cls.__bases__)


def is_open_generic(cls: Any) -> bool:
    """A generic definition that still has unbound type parameters."""
    return isinstance(cls, type) and bool(getattr(cls, "__parameters__", ()))


def generic_arity(cls: Any) -> int:
    return len(getattr(cls, "__parameters__", ()))


def protocol_members(proto: type) -> Set[str]:
    """Public callable members a structural implementation must provide."""
    members: Set[str] = set()
    for base in proto.__mro__:
        if base in MARKER_BASES or not is_protocol(base):
            continue
        for name, value in vars(base).items():
            if name.startswith("_"):
                continue
            if callable(value) or isinstance(value, (property, staticmethod, classmethod)):
                members.add(name)
    return members


def implements(concrete: type, service_type: Any) -> bool:
    """Whether ``concrete`` can stand in for ``service_type``.

    Nominal subclassing is tried first. Protocols that do not support
    ``issubclass`` (not runtime-checkable, or with data members) fall back
    to a structural check of their public methods.
    """
    concrete = typing.get_origin(concrete) or concrete
    target = typing.get_origin(service_type) or service_type
    if concrete is target:
        return True
    if not isinstance(target, type):
        return False
    if target in getattr(concrete, "__mro__", ()):
        return True
    try:
        if issubclass(concrete, target):
            return True
    except TypeError:
        pass
    if is_protocol(target):
        return all(hasattr(concrete, name) for name in protocol_members(target))
    return False


__all__ = [
    "AsyncDisposable",
    "Disposable",
    "MARKER_BASES",
    "generic_arity",
    "implements",
    "is_interface",
    "is_open_generic",
    "is_protocol",
    "protocol_members",
]
