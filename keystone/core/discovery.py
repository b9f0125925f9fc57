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

"""Registration discovery for marked service types.

Classes opt in with the ``@auto_register`` decorator, which records a
``RegistrationMarker`` in an explicit ``MarkerRegistry``. Discovery walks
one or more type collections (modules, package names, or plain iterables
of classes), consults the registry, and turns every marked class into
descriptors.

A marked class is always registered once under itself. The service types it
is exposed as (the explicit ones on the marker, or else the interfaces it
directly derives from) become aliases of that canonical registration, so a
singleton resolves to one shared instance through every one of them.

Usage:
    @auto_register(ServiceLifetime.SINGLETON, service_types=(IReader, IWriter))
    class FileStore:
        ...

    descriptors = discover("myapp.services")
"""

from __future__ import annotations

import importlib
import inspect
import logging
import pkgutil
import sys
from dataclasses import dataclass
from types import ModuleType
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
    Union,
    overload,
)

from keystone.core.descriptors import ServiceDescriptor, ServiceLifetime
from keystone.core.errors import ConfigurationError, type_name
from keystone.core.protocols import (
    generic_arity,
    implements,
    is_interface,
    is_open_generic,
    is_protocol,
)

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=type)

TypeCollection = Union[ModuleType, str, Iterable[type]]


@dataclass(frozen=True)
class RegistrationMarker:
    """Declared registration metadata for one concrete type."""

    lifetime: ServiceLifetime = ServiceLifetime.TRANSIENT
    service_types: Tuple[Any, ...] = ()


class MarkerRegistry:
    """Map from concrete type to its registration marker."""

    def __init__(self) -> None:
        self._markers: Dict[type, RegistrationMarker] = {}

    def mark(self, cls: type, marker: RegistrationMarker) -> None:
        if cls in self._markers:
            raise ConfigurationError(
                f"{type_name(cls)} is already marked for registration",
                implementation_type=cls,
            )
        check_marker(cls, marker)
        self._markers[cls] = marker

    def unmark(self, cls: type) -> None:
        self._markers.pop(cls, None)

    def get(self, cls: type) -> Optional[RegistrationMarker]:
        return self._markers.get(cls)

    def clear(self) -> None:
        self._markers.clear()

    def __contains__(self, cls: object) -> bool:
        return cls in self._markers

    def __len__(self) -> int:
        return len(self._markers)


_default_registry = MarkerRegistry()


def get_marker_registry() -> MarkerRegistry:
    """The process-wide registry used by ``@auto_register`` by default."""
    return _default_registry


def check_marker(cls: type, marker: RegistrationMarker) -> None:
    """Fail fast on markers that can never produce a working registration."""
    if not inspect.isclass(cls):
        raise ConfigurationError(f"{cls!r} is not a class and cannot be registered")
    if inspect.isabstract(cls) or is_protocol(cls):
        raise ConfigurationError(
            f"{type_name(cls)} is abstract and cannot be registered as an implementation",
            implementation_type=cls,
        )
    for service_type in marker.service_types:
        if not implements(cls, service_type):
            raise ConfigurationError(
                f"{type_name(cls)} does not implement declared service type "
                f"{type_name(service_type)}",
                service_type=service_type,
                implementation_type=cls,
            )


@overload
def auto_register(lifetime: T) -> T: ...


@overload
def auto_register(
    lifetime: ServiceLifetime = ...,
    service_types: Sequence[Any] = ...,
    registry: Optional[MarkerRegistry] = ...,
) -> Callable[[T], T]: ...


def auto_register(
    lifetime: Any = ServiceLifetime.TRANSIENT,
    service_types: Sequence[Any] = (),
    registry: Optional[MarkerRegistry] = None,
) -> Any:
    """Mark a class for automatic registration.

    Can be used bare (``@auto_register``, transient, exposed as itself and
    its direct interfaces) or with arguments.

    Args:
        lifetime: Lifetime for every registration of the class
        service_types: Explicit service types to expose the class as; each
            must be implemented by the class
        registry: Registry to record the marker in (default: process-wide)

    Raises:
        ConfigurationError: If the class does not implement a declared
            service type, is abstract, or is already marked
    """
    target = registry or _default_registry

    if inspect.isclass(lifetime):
        cls = lifetime
        target.mark(cls, RegistrationMarker())
        return cls

    marker = RegistrationMarker(lifetime=lifetime, service_types=tuple(service_types))

    def decorator(cls: T) -> T:
        target.mark(cls, marker)
        return cls

    return decorator


# =============================================================================
# Type collections
# =============================================================================


def _module_types(module: ModuleType, include_private: bool) -> List[type]:
    """Classes defined in a module, in declaration order."""
    found = []
    for name, obj in vars(module).items():
        if not inspect.isclass(obj) or obj.__module__ != module.__name__:
            continue
        if name.startswith("_") and not include_private:
            continue
        found.append(obj)
    return found


def _expand_module_name(name: str) -> List[ModuleType]:
    module = importlib.import_module(name)
    modules = [module]
    package_path = getattr(module, "__path__", None)
    if package_path:
        names = sorted(
            info.name for info in pkgutil.walk_packages(package_path, prefix=f"{name}.")
        )
        for module_name in names:
            try:
                modules.append(importlib.import_module(module_name))
            except ImportError as e:
                logger.warning(f"Error importing module {module_name}: {e}")
    return modules


def collection_types(collection: TypeCollection, include_private: bool = False) -> List[type]:
    """Enumerate the classes of one type collection.

    Args:
        collection: A module, an importable module or package name, or an
            iterable of classes (kept in the given order)
        include_private: Whether ``_underscore`` classes of modules are included
    """
    if isinstance(collection, str):
        types_: List[type] = []
        for module in _expand_module_name(collection):
            types_.extend(_module_types(module, include_private))
        return types_
    if isinstance(collection, ModuleType):
        return _module_types(collection, include_private)
    return [t for t in collection if inspect.isclass(t)]


def _caller_module() -> Optional[ModuleType]:
    frame = inspect.currentframe()
    try:
        while frame is not None:
            name = frame.f_globals.get("__name__", "")
            if not (name == "keystone" or name.startswith("keystone.")):
                return sys.modules.get(name)
            frame = frame.f_back
        return None
    finally:
        del frame


# =============================================================================
# Discovery
# =============================================================================


def exposed_service_types(cls: type, marker: RegistrationMarker) -> List[Any]:
    """Service types (other than the class itself) a marked class is exposed as."""
    if marker.service_types:
        candidates = list(marker.service_types)
    else:
        candidates = [
            base for base in cls.__bases__ if is_interface(base) and not is_open_generic(base)
        ]
    exposed: List[Any] = []
    for service_type in candidates:
        if service_type is not cls and service_type not in exposed:
            exposed.append(service_type)
    return exposed


def registrations_for(
    cls: type, lifetime: ServiceLifetime, service_types: Iterable[Any]
) -> List[ServiceDescriptor[Any]]:
    """Canonical registration for ``cls`` plus one alias per service type."""
    descriptors: List[ServiceDescriptor[Any]] = [
        ServiceDescriptor(service_type=cls, implementation_type=cls, lifetime=lifetime)
    ]
    for service_type in service_types:
        descriptors.append(
            ServiceDescriptor(
                service_type=service_type,
                implementation_type=cls,
                lifetime=lifetime,
                alias_of=cls,
            )
        )
    return descriptors


class RegistrationDiscovery:
    """Turns marked classes from type collections into descriptors."""

    def __init__(
        self,
        registry: Optional[MarkerRegistry] = None,
        include_private: bool = False,
    ):
        self._registry = registry or _default_registry
        self._include_private = include_private

    def discover(self, *collections: TypeCollection) -> List[ServiceDescriptor[Any]]:
        """Descriptors for every marked class, in collection then declaration order.

        With no collections, the calling module is scanned.
        """
        if not collections:
            caller = _caller_module()
            collections = (caller,) if caller is not None else ()

        descriptors: List[ServiceDescriptor[Any]] = []
        seen: set = set()
        for collection in collections:
            types_ = collection_types(collection, self._include_private)
            count = 0
            for cls in types_:
                marker = self._registry.get(cls)
                if marker is None or cls in seen:
                    continue
                seen.add(cls)
                check_marker(cls, marker)
                descriptors.extend(
                    registrations_for(cls, marker.lifetime, exposed_service_types(cls, marker))
                )
                count += 1
                logger.debug(f"Discovered {type_name(cls)} ({marker.lifetime.value})")
            logger.info(
                f"Discovered {count} marked types out of {len(types_)} in "
                f"{_collection_name(collection)}"
            )
        return descriptors

    def discover_implementations(
        self,
        interface: Any,
        lifetime: ServiceLifetime,
        *collections: TypeCollection,
    ) -> List[ServiceDescriptor[Any]]:
        """Register every concrete implementation of ``interface`` found.

        Markers are not required. Each implementation is registered under
        itself, with ``interface`` as an alias.
        """
        if not collections:
            caller = _caller_module()
            collections = (caller,) if caller is not None else ()

        descriptors: List[ServiceDescriptor[Any]] = []
        seen: set = set()
        for collection in collections:
            for cls in collection_types(collection, self._include_private):
                if cls is interface or cls in seen:
                    continue
                if inspect.isabstract(cls) or is_protocol(cls):
                    continue
                if not implements(cls, interface):
                    continue
                seen.add(cls)
                descriptors.extend(registrations_for(cls, lifetime, [interface]))
        logger.info(
            f"Discovered {len(seen)} implementations of {type_name(interface)}"
        )
        return descriptors


def _collection_name(collection: TypeCollection) -> str:
    if isinstance(collection, str):
        return collection
    if isinstance(collection, ModuleType):
        return collection.__name__
    return "type collection"


def discover(
    *collections: TypeCollection,
    registry: Optional[MarkerRegistry] = None,
    include_private: bool = False,
) -> List[ServiceDescriptor[Any]]:
    """Shortcut for ``RegistrationDiscovery(...).discover(*collections)``."""
    if not collections:
        caller = _caller_module()
        collections = (caller,) if caller is not None else ()
    return RegistrationDiscovery(registry, include_private).discover(*collections)


# =============================================================================
# Open generics
# =============================================================================


def validate_generic_pair(interface: Any, implementation: Any) -> None:
    """Check that an open-generic interface/implementation pair can be closed together.

    Raises:
        ConfigurationError: If either type is not an open generic, the
            arities differ, or the implementation does not implement the interface
    """
    if not is_open_generic(interface):
        raise ConfigurationError(
            f"Interface type {type_name(interface)} must be an open generic (e.g. IRepository[T])",
            service_type=interface,
            implementation_type=implementation,
        )
    if not is_open_generic(implementation):
        raise ConfigurationError(
            f"Implementation type {type_name(implementation)} must be an open generic "
            "(e.g. Repository[T])",
            service_type=interface,
            implementation_type=implementation,
        )
    if generic_arity(interface) != generic_arity(implementation):
        raise ConfigurationError(
            f"Generic argument count mismatch: {type_name(interface)} has "
            f"{generic_arity(interface)} arguments, but {type_name(implementation)} has "
            f"{generic_arity(implementation)} arguments",
            service_type=interface,
            implementation_type=implementation,
        )
    if not implements(implementation, interface):
        raise ConfigurationError(
            f"{type_name(implementation)} does not implement {type_name(interface)}",
            service_type=interface,
            implementation_type=implementation,
        )


def derive_implementation_type(interface: Any) -> type:
    """Find ``Foo`` for an open generic interface ``IFoo`` in the same module.

    Raises:
        ConfigurationError: Naming both types when no match exists or the
            match has a different generic arity
    """
    if not is_open_generic(interface):
        raise ConfigurationError(
            f"Cannot derive an implementation type from {type_name(interface)}: "
            "it is not an open generic interface",
            service_type=interface,
        )
    name = interface.__name__
    if not name.startswith("I") or len(name) < 2:
        raise ConfigurationError(
            f"Cannot derive an implementation type from {name}: interface name must "
            "start with 'I'",
            service_type=interface,
        )

    implementation_name = name[1:]
    module = sys.modules.get(interface.__module__)
    implementation = getattr(module, implementation_name, None) if module else None
    if not inspect.isclass(implementation):
        raise ConfigurationError(
            f"Could not find implementation type {implementation_name} for {name} in "
            f"module {interface.__module__}",
            service_type=interface,
            implementation_type=implementation_name,
        )

    validate_generic_pair(interface, implementation)
    return implementation


__all__ = [
    "MarkerRegistry",
    "RegistrationDiscovery",
    "RegistrationMarker",
    "TypeCollection",
    "auto_register",
    "check_marker",
    "collection_types",
    "derive_implementation_type",
    "discover",
    "exposed_service_types",
    "get_marker_registry",
    "registrations_for",
    "validate_generic_pair",
]
