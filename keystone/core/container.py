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

"""Dependency Injection Container for Keystone.

This module provides the container that:
- Manages service lifecycles (singleton, scoped, transient)
- Supports type, factory and instance registration, keyed services,
  aliases, open generics and decorators
- Builds implementation types by constructor injection
- Validates the service graph once, before the first resolution
- Runs the ordered async startup sequence after build

Design Principles:
- Registration is single-threaded and ends at build(); the container is
  read-only afterwards
- Thread-safe, exactly-once construction per singleton slot with no
  container-wide lock held while a service is built
- Scoped services only resolve inside an explicit scope, which disposes
  what it created when it exits

Example Usage:
    from keystone.core.container import ServiceContainer, ServiceLifetime

    container = ServiceContainer()
    container.register_singleton(IClock, SystemClock)
    container.register_scoped(UnitOfWork)
    container.register_lazy_keyed("reports", lambda c: ReportEngine(c.get(IClock)))

    clock = container.get(IClock)
    engine = container.resolve_keyed("reports").value

    with container.create_scope() as scope:
        uow = scope.get(UnitOfWork)

    await container.initialize_all_async()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import typing
from contextvars import ContextVar
from types import ModuleType
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
    Type,
    TypeVar,
    Union,
)

from keystone.config.settings import Settings
from keystone.core.descriptors import DescriptorStore, ServiceDescriptor, ServiceLifetime
from keystone.core.discovery import (
    MarkerRegistry,
    RegistrationDiscovery,
    derive_implementation_type,
    validate_generic_pair,
)
from keystone.core.errors import (
    CircularDependencyError,
    ConfigurationError,
    KeystoneError,
    ScopeDisposedError,
    ScopeError,
    ServiceCreationError,
    ServiceNotFoundError,
    ValidationFailedError,
    type_name,
)
from keystone.core.graph import constructor_parameters
from keystone.core.initialization import (
    AsyncInitializationOrchestrator,
    InitializationPlan,
    StartupAction,
)
from keystone.core.lazy import Lazy
from keystone.core.protocols import AsyncDisposable, Disposable, implements, is_protocol
from keystone.core.validation import DiagnosticsReport, ServiceGraphValidator

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

# Descriptors currently under construction in this context, outermost first.
_resolution_chain: ContextVar[Tuple[ServiceDescriptor[Any], ...]] = ContextVar(
    "keystone_resolution_chain", default=()
)


def _is_type(obj: Any) -> bool:
    """A class, or a parameterized generic such as ``Repository[User]``."""
    return inspect.isclass(obj) or inspect.isclass(typing.get_origin(obj))


# =============================================================================
# Disposal
# =============================================================================


def _is_disposable(instance: Any) -> bool:
    return (
        isinstance(instance, (Disposable, AsyncDisposable))
        or callable(getattr(instance, "close", None))
        or callable(getattr(instance, "aclose", None))
    )


def _release(instance: Any) -> None:
    """Dispose one instance synchronously; failures are logged, not raised."""
    try:
        if isinstance(instance, Disposable):
            instance.dispose()
            return
        close = getattr(instance, "close", None)
        if callable(close) and not inspect.iscoroutinefunction(close):
            close()
            return
        if isinstance(instance, AsyncDisposable) or callable(getattr(instance, "aclose", None)):
            logger.warning(
                f"{type_name(type(instance))} only supports async disposal; "
                "use dispose_async() to release it"
            )
    except Exception as e:
        logger.warning(f"Error disposing {type_name(type(instance))}: {e}")


async def _release_async(instance: Any) -> None:
    try:
        if isinstance(instance, AsyncDisposable):
            await instance.dispose_async()
            return
        aclose = getattr(instance, "aclose", None)
        if callable(aclose):
            await aclose()
            return
        if isinstance(instance, Disposable):
            instance.dispose()
            return
        close = getattr(instance, "close", None)
        if callable(close):
            result = close()
            if inspect.isawaitable(result):
                await result
    except Exception as e:
        logger.warning(f"Error disposing {type_name(type(instance))}: {e}")


# =============================================================================
# Resolution surface
# =============================================================================


class ServiceResolver:
    """Resolution methods shared by the container and its scopes.

    Factories receive the resolver they were resolved through, so a factory
    running inside a scope sees that scope's scoped services.
    """

    def _resolve(self, service_type: Any, key: Any = None) -> Any:
        raise NotImplementedError

    def _resolve_all(self, service_type: Any) -> List[Any]:
        raise NotImplementedError

    def is_registered(self, service_type: Any, key: Any = None) -> bool:
        raise NotImplementedError

    def get(self, service_type: Type[T], key: Any = None) -> T:
        """Get a service instance (the last registration wins).

        Args:
            service_type: Type of service to retrieve
            key: Optional service key

        Returns:
            Service instance

        Raises:
            ServiceNotFoundError: If service is not registered
            ScopeError: If a scoped service is requested outside a scope
            CircularDependencyError: If construction re-enters itself
            ServiceCreationError: If the constructor or factory fails
        """
        return self._resolve(service_type, key)

    def get_optional(self, service_type: Type[T], key: Any = None) -> Optional[T]:
        """Get a service instance, or None if not registered."""
        if not self.is_registered(service_type, key):
            return None
        return self._resolve(service_type, key)

    def get_all(self, service_type: Type[T]) -> List[T]:
        """Every registration of ``service_type``, in registration order."""
        return self._resolve_all(service_type)

    def get_keyed(self, service_type: Type[T], key: Any) -> T:
        return self._resolve(service_type, key)

    def resolve_keyed(self, key: Any) -> Lazy[Any]:
        """The lazy holder registered with ``register_lazy_keyed(key, ...)``."""
        return self._resolve(Lazy, key)

    def get_lazy(self, service_type: Type[T]) -> Lazy[T]:
        """The holder registered with ``register_lazy(service_type, ...)``."""
        return self._resolve(Lazy[service_type], None)  # type: ignore[valid-type]

    # -------------------------------------------------------------------------
    # Enumeration helpers (all registrations of a type, in registration order)
    # -------------------------------------------------------------------------

    def get_services(
        self, service_type: Type[T], predicate: Optional[Callable[[T], bool]] = None
    ) -> List[T]:
        services = self._resolve_all(service_type)
        if predicate is None:
            return services
        return [service for service in services if predicate(service)]

    def for_each_service(self, service_type: Type[T], action: Callable[[T], Any]) -> None:
        for service in self._resolve_all(service_type):
            action(service)

    async def for_each_service_async(
        self, service_type: Type[T], func: Callable[[T], Awaitable[Any]]
    ) -> None:
        """Await ``func(service)`` for each service, one after another."""
        for service in self._resolve_all(service_type):
            await func(service)

    def map_services(self, service_type: Type[T], selector: Callable[[T], R]) -> List[R]:
        return [selector(service) for service in self._resolve_all(service_type)]

    async def map_services_async(
        self, service_type: Type[T], selector: Callable[[T], Awaitable[R]]
    ) -> List[R]:
        """Run ``selector`` for every service concurrently; results keep registration order."""
        services = self._resolve_all(service_type)
        return list(await asyncio.gather(*(selector(service) for service in services)))

    def get_first_service(self, service_type: Type[T], predicate: Callable[[T], bool]) -> T:
        """The first registered service matching ``predicate``.

        Raises:
            ServiceNotFoundError: If no service matches
        """
        for service in self._resolve_all(service_type):
            if predicate(service):
                return service
        raise ServiceNotFoundError(
            service_type,
            message=f"No service of type {type_name(service_type)} matches the predicate",
        )

    def get_first_service_or_default(
        self, service_type: Type[T], predicate: Callable[[T], bool]
    ) -> Optional[T]:
        for service in self._resolve_all(service_type):
            if predicate(service):
                return service
        return None

    def get_service_count(self, service_type: Any) -> int:
        """Number of registrations of ``service_type`` (instances are resolved)."""
        return len(self._resolve_all(service_type))


class ServiceScope(ServiceResolver):
    """Scoped container for request-level service isolation.

    Services registered with SCOPED lifetime get one instance per scope.
    The scope also owns disposable transients created through it. When the
    scope is disposed, everything it owns is released in reverse creation
    order.
    """

    def __init__(self, container: "ServiceContainer"):
        """Initialize scope with parent container.

        Args:
            container: Container to inherit registrations and singletons from
        """
        self._container = container
        self._slots: Dict[ServiceDescriptor[Any], Lazy[Any]] = {}
        self._slot_lock = threading.Lock()
        self._owned: List[Any] = []
        self._owned_lock = threading.Lock()
        self._disposed = False

    @property
    def container(self) -> "ServiceContainer":
        return self._container

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def _check_open(self, service_type: Any) -> None:
        if self._disposed:
            raise ScopeDisposedError(
                f"Scope has been disposed, cannot resolve {type_name(service_type)}"
            )

    def _resolve(self, service_type: Any, key: Any = None) -> Any:
        self._check_open(service_type)
        return self._container._resolve_in(service_type, key, self)

    def _resolve_all(self, service_type: Any) -> List[Any]:
        self._check_open(service_type)
        return self._container._resolve_all_in(service_type, self)

    def is_registered(self, service_type: Any, key: Any = None) -> bool:
        return self._container.is_registered(service_type, key)

    def _scoped_slot(self, descriptor: ServiceDescriptor[Any]) -> Lazy[Any]:
        with self._slot_lock:
            slot = self._slots.get(descriptor)
            if slot is None:
                slot = Lazy(
                    lambda: self._track(self._container._create(descriptor, self)),
                    key=descriptor.service_type,
                )
                self._slots[descriptor] = slot
            return slot

    def _track(self, instance: Any) -> Any:
        if _is_disposable(instance):
            with self._owned_lock:
                self._owned.append(instance)
        return instance

    def _take_owned(self) -> List[Any]:
        with self._owned_lock:
            if self._disposed:
                return []
            self._disposed = True
            owned = list(reversed(self._owned))
            self._owned.clear()
        self._slots.clear()
        return owned

    def dispose(self) -> None:
        """Dispose every instance this scope created, newest first."""
        owned = self._take_owned()
        for instance in owned:
            _release(instance)
        if owned:
            logger.debug(f"Disposed scope with {len(owned)} owned services")

    def close(self) -> None:
        self.dispose()

    async def dispose_async(self) -> None:
        """Like dispose(), awaiting async disposal hooks."""
        owned = self._take_owned()
        for instance in owned:
            await _release_async(instance)
        if owned:
            logger.debug(f"Disposed scope with {len(owned)} owned services")

    async def aclose(self) -> None:
        await self.dispose_async()

    def __enter__(self) -> "ServiceScope":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.dispose()

    async def __aenter__(self) -> "ServiceScope":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.dispose_async()


class ServiceContainer(ServiceResolver):
    """Central dependency injection container.

    Manages service registration, validation, resolution, and lifecycle.
    Supports singleton, scoped, and transient service lifetimes.

    Thread-safe for concurrent access to singleton services.

    Example:
        container = ServiceContainer()

        # Register services
        container.register(ILogger, FileLogger)
        container.register(ICache, factory=lambda c: RedisCache(c.get(ILogger)))

        # Resolve services (builds and validates on first use)
        cache = container.get(ICache)

        # Create scoped container
        with container.create_scope() as scope:
            request_handler = scope.get(IRequestHandler)
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        """Initialize empty container.

        Args:
            settings: Engine settings (default: loaded from the environment)
        """
        self._settings = settings or Settings()
        self._store = DescriptorStore()
        self._lock = threading.RLock()
        self._slot_lock = threading.Lock()
        self._singletons: Dict[ServiceDescriptor[Any], Lazy[Any]] = {}
        self._created: List[Any] = []
        self._open_generics: Dict[Any, Tuple[type, ServiceLifetime]] = {}
        self._closed: Dict[Any, ServiceDescriptor[Any]] = {}
        self._startup_actions: List[StartupAction] = []
        self._orchestrator: Optional[AsyncInitializationOrchestrator] = None
        self._report: Optional[DiagnosticsReport] = None
        self._built = False
        self._disposed = False

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def descriptors(self) -> Tuple[ServiceDescriptor[Any], ...]:
        return self._store.snapshot()

    @property
    def startup_actions(self) -> Tuple[StartupAction, ...]:
        return tuple(self._startup_actions)

    @property
    def is_built(self) -> bool:
        return self._built

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._disposed:
            raise ScopeDisposedError("Container has been disposed")
        if self._built:
            raise ConfigurationError(
                "Cannot register services after the container has been built",
                recovery_hint="Finish registration before build() or the first resolution.",
            )

    def _add(self, descriptor: ServiceDescriptor[Any]) -> "ServiceContainer":
        with self._lock:
            self._ensure_open()
            self._store.add(descriptor)
        return self

    def register(
        self,
        service_type: Type[T],
        implementation: Optional[Union[type, Callable[[Any], T]]] = None,
        lifetime: ServiceLifetime = ServiceLifetime.SINGLETON,
        *,
        factory: Optional[Callable[[Any], T]] = None,
        instance: Optional[T] = None,
        key: Any = None,
    ) -> "ServiceContainer":
        """Register a service.

        With no implementation, factory or instance, a concrete
        ``service_type`` is registered as its own implementation. A callable
        that is not a type passed as ``implementation`` is used as the factory.

        Args:
            service_type: Type/interface to register
            implementation: Concrete type built by constructor injection, or
                a factory function
            lifetime: How long the service instance lives
            factory: ``factory(resolver)`` producing the instance
            instance: Pre-created instance (always a singleton)
            key: Optional service key

        Returns:
            Self for method chaining

        Raises:
            ConfigurationError: If the registration can never work, or the
                container has already been built
        """
        if implementation is not None and not _is_type(implementation):
            if factory is not None or not callable(implementation):
                raise ConfigurationError(
                    f"Implementation for {type_name(service_type)} must be a type or a factory",
                    service_type=service_type,
                )
            factory, implementation = implementation, None

        if implementation is None and factory is None and instance is None:
            if not inspect.isclass(service_type) or inspect.isabstract(service_type):
                raise ConfigurationError(
                    f"No implementation given for {type_name(service_type)}",
                    service_type=service_type,
                )
            implementation = service_type

        if implementation is not None:
            if inspect.isabstract(implementation) or is_protocol(implementation):
                raise ConfigurationError(
                    f"{type_name(implementation)} is abstract and cannot be instantiated",
                    service_type=service_type,
                    implementation_type=implementation,
                )
            if not implements(implementation, service_type):
                raise ConfigurationError(
                    f"{type_name(implementation)} does not implement {type_name(service_type)}",
                    service_type=service_type,
                    implementation_type=implementation,
                )

        if instance is not None:
            lifetime = ServiceLifetime.SINGLETON

        return self._add(
            ServiceDescriptor(
                service_type=service_type,
                implementation_type=implementation,
                factory=factory,
                instance=instance,
                lifetime=lifetime,
                service_key=key,
            )
        )

    def register_singleton(
        self,
        service_type: Type[T],
        implementation: Optional[type] = None,
        *,
        factory: Optional[Callable[[Any], T]] = None,
        key: Any = None,
    ) -> "ServiceContainer":
        return self.register(
            service_type, implementation, factory=factory, lifetime=ServiceLifetime.SINGLETON, key=key
        )

    def register_scoped(
        self,
        service_type: Type[T],
        implementation: Optional[type] = None,
        *,
        factory: Optional[Callable[[Any], T]] = None,
        key: Any = None,
    ) -> "ServiceContainer":
        return self.register(
            service_type, implementation, factory=factory, lifetime=ServiceLifetime.SCOPED, key=key
        )

    def register_transient(
        self,
        service_type: Type[T],
        implementation: Optional[type] = None,
        *,
        factory: Optional[Callable[[Any], T]] = None,
        key: Any = None,
    ) -> "ServiceContainer":
        return self.register(
            service_type, implementation, factory=factory, lifetime=ServiceLifetime.TRANSIENT, key=key
        )

    def register_instance(self, service_type: Type[T], instance: T, key: Any = None) -> "ServiceContainer":
        """Register an existing instance as a singleton."""
        return self.register(service_type, instance=instance, key=key)

    def register_factory(
        self,
        service_type: Type[T],
        factory: Callable[[Any], T],
        lifetime: ServiceLifetime = ServiceLifetime.SINGLETON,
        key: Any = None,
    ) -> "ServiceContainer":
        return self.register(service_type, factory=factory, lifetime=lifetime, key=key)

    def register_alias(self, alias: Any, canonical: type) -> "ServiceContainer":
        """Expose an already registered type under another service type.

        The alias shares the canonical registration's instance and lifetime.

        Raises:
            ConfigurationError: If ``canonical`` is not registered or does
                not implement ``alias``
        """
        if alias is canonical:
            raise ConfigurationError(
                f"{type_name(alias)} cannot be an alias of itself", service_type=alias
            )
        target = self._store.find(canonical)
        if target is None:
            raise ConfigurationError(
                f"Cannot alias {type_name(alias)} to {type_name(canonical)}: "
                f"{type_name(canonical)} is not registered",
                service_type=alias,
                implementation_type=canonical,
            )
        if not implements(canonical, alias):
            raise ConfigurationError(
                f"{type_name(canonical)} does not implement {type_name(alias)}",
                service_type=alias,
                implementation_type=canonical,
            )
        return self._add(
            ServiceDescriptor(
                service_type=alias,
                implementation_type=canonical,
                lifetime=target.lifetime,
                alias_of=canonical,
            )
        )

    def try_register(
        self, service_type: Type[T], implementation: Optional[type] = None, **kwargs: Any
    ) -> "ServiceContainer":
        """Register only if ``service_type`` (with the same key) is not registered yet."""
        if self._store.contains(service_type, kwargs.get("key")):
            logger.debug(f"Skipped registration of {type_name(service_type)}: already registered")
            return self
        return self.register(service_type, implementation, **kwargs)

    def replace(
        self, service_type: Type[T], implementation: Optional[type] = None, **kwargs: Any
    ) -> "ServiceContainer":
        """Remove every registration of ``service_type`` and register anew.

        Useful for testing where you want to substitute implementations.
        """
        with self._lock:
            self._ensure_open()
            removed = self._store.remove_all(service_type, kwargs.get("key"))
            if removed:
                logger.debug(
                    f"Replaced {len(removed)} registration(s) of {type_name(service_type)}"
                )
            return self.register(service_type, implementation, **kwargs)

    def register_open_generic(
        self,
        interface: Any,
        implementation: Optional[type] = None,
        lifetime: ServiceLifetime = ServiceLifetime.SINGLETON,
    ) -> "ServiceContainer":
        """Register an open generic so every closed form resolves.

        ``IRepository[User]`` then resolves to ``Repository[User]``, one
        registration per closed type. Without an explicit implementation,
        ``IRepository`` maps to ``Repository`` from the same module.

        Raises:
            ConfigurationError: If the implementation cannot be derived or
                the generic arities differ
        """
        if implementation is None:
            implementation = derive_implementation_type(interface)
        else:
            validate_generic_pair(interface, implementation)

        with self._lock:
            self._ensure_open()
            self._open_generics[interface] = (implementation, lifetime)
        logger.debug(
            f"Registered open generic {type_name(interface)} -> {type_name(implementation)} "
            f"with {lifetime.value} lifetime"
        )
        return self

    def decorate(
        self,
        service_type: Type[T],
        decorator: Union[type, Callable[[Any, Any], T]],
        key: Any = None,
    ) -> "ServiceContainer":
        """Wrap the effective registration of ``service_type``.

        ``decorator`` is either a type whose constructor takes the inner
        service (matched by the ``service_type`` annotation, other
        parameters injected), or a callable ``decorator(inner, resolver)``.
        The decorated registration keeps the original lifetime and position.

        Raises:
            ConfigurationError: If ``service_type`` is not registered
        """
        with self._lock:
            self._ensure_open()
            original = self._store.find(service_type, key)
            if original is None:
                raise ConfigurationError(
                    f"Cannot decorate {type_name(service_type)}: it is not registered",
                    service_type=service_type,
                )

            def build_decorated(resolver: Any) -> Any:
                if original.is_alias:
                    inner = resolver.get(original.alias_of)
                else:
                    inner = self._instantiate(original, resolver)
                if inspect.isclass(decorator):
                    return self._construct(decorator, resolver, provided={service_type: inner})
                return decorator(inner, resolver)

            decorated = ServiceDescriptor(
                service_type=service_type,
                factory=build_decorated,
                lifetime=original.lifetime,
                service_key=key,
            )
            self._store.replace(original, decorated)
        logger.debug(f"Decorated {type_name(service_type)} with {type_name(decorator)}")
        return self

    def register_lazy(
        self,
        service_type: Type[T],
        factory: Callable[[Any], T],
        lifetime: ServiceLifetime = ServiceLifetime.SINGLETON,
    ) -> "ServiceContainer":
        """Register a deferred ``service_type``, resolved with ``get_lazy``.

        The holder follows ``lifetime``; its value is built on first access.
        """

        def make_holder(resolver: Any) -> Lazy[T]:
            return Lazy(lambda: factory(resolver), key=service_type)

        return self.register(Lazy[service_type], factory=make_holder, lifetime=lifetime)  # type: ignore[valid-type]

    def register_lazy_keyed(
        self,
        key: Any,
        factory: Callable[[Any], T],
        lifetime: ServiceLifetime = ServiceLifetime.SINGLETON,
    ) -> "ServiceContainer":
        """Register a keyed lazy holder, fetched with ``resolve_keyed(key)``.

        Singleton: one holder for the container; ``factory(container)`` runs
        at most once. Scoped: one holder per scope, built with that scope.
        Transient: a fresh holder on every ``resolve_keyed``.

        Raises:
            ConfigurationError: If ``key`` is None
        """
        if key is None:
            raise ConfigurationError("Lazy keyed registration requires a key")
        if lifetime is ServiceLifetime.SINGLETON:
            holder: Lazy[T] = Lazy(lambda: factory(self), key=key)
            return self._add(ServiceDescriptor(service_type=Lazy, instance=holder, service_key=key))

        def make_holder(resolver: Any) -> Lazy[T]:
            return Lazy(lambda: factory(resolver), key=key)

        return self.register(Lazy, factory=make_holder, lifetime=lifetime, key=key)

    def add_startup_action(
        self,
        action: Callable[[Any], Awaitable[None]],
        priority: int = 0,
        name: Optional[str] = None,
    ) -> "ServiceContainer":
        """Run ``await action(container)`` as part of the startup sequence."""
        with self._lock:
            self._ensure_open()
            self._startup_actions.append(StartupAction(action, priority, name))
        return self

    def discover(
        self,
        *collections: Union[ModuleType, str, Sequence[type]],
        registry: Optional[MarkerRegistry] = None,
    ) -> "ServiceContainer":
        """Register every ``@auto_register`` class found in the collections.

        Defaults to the calling module when no collection is given.
        """
        discovery = RegistrationDiscovery(
            registry, include_private=self._settings.discovery_include_private
        )
        descriptors = discovery.discover(*collections)
        with self._lock:
            self._ensure_open()
            self._store.extend(descriptors)
        return self

    def discover_implementations(
        self,
        interface: Any,
        lifetime: ServiceLifetime = ServiceLifetime.TRANSIENT,
        *collections: Union[ModuleType, str, Sequence[type]],
    ) -> "ServiceContainer":
        """Register every concrete implementation of ``interface`` in the collections."""
        discovery = RegistrationDiscovery(
            include_private=self._settings.discovery_include_private
        )
        descriptors = discovery.discover_implementations(interface, lifetime, *collections)
        with self._lock:
            self._ensure_open()
            self._store.extend(descriptors)
        return self

    # -------------------------------------------------------------------------
    # Build and diagnostics
    # -------------------------------------------------------------------------

    def _validator(self) -> ServiceGraphValidator:
        return ServiceGraphValidator(
            self._store.snapshot(),
            singleton_warning_threshold=self._settings.singleton_warning_threshold,
        )

    def build(self) -> DiagnosticsReport:
        """Validate the service graph and seal registration.

        Warnings are logged; only cycles (and, with ``fail_on_warnings``,
        any warning) stop the build.

        Raises:
            CircularDependencyError: If the construction graph has a cycle
            ValidationFailedError: If warnings exist and ``fail_on_warnings`` is set
        """
        with self._lock:
            if self._disposed:
                raise ScopeDisposedError("Container has been disposed")
            if self._report is not None:
                return self._report

            validator = self._validator()
            validator.throw_if_invalid()
            report = validator.validate()
            for warning in report.warnings:
                logger.warning(warning)
            if report.has_warnings and self._settings.fail_on_warnings:
                raise ValidationFailedError(report.warnings)

            self._report = report
            self._built = True

        logger.info(
            f"Built container: {report.total_services} registrations "
            f"({report.singleton_count} singleton, {report.scoped_count} scoped, "
            f"{report.transient_count} transient), {len(report.warnings)} warning(s)"
        )
        return report

    def _ensure_built(self) -> None:
        if self._disposed:
            raise ScopeDisposedError("Container has been disposed")
        if self._built:
            return
        if self._settings.validate_on_build:
            self.build()
        else:
            with self._lock:
                self._built = True

    def get_diagnostics(self) -> DiagnosticsReport:
        """Counts and advisory warnings, recomputed on every call."""
        return self._validator().validate()

    def throw_if_invalid(self) -> None:
        """Raise CircularDependencyError if the construction graph has a cycle."""
        self._validator().throw_if_invalid()

    # -------------------------------------------------------------------------
    # Initialization
    # -------------------------------------------------------------------------

    def _get_orchestrator(self) -> AsyncInitializationOrchestrator:
        self._ensure_built()
        with self._lock:
            if self._orchestrator is None:
                self._orchestrator = AsyncInitializationOrchestrator(
                    self, log_plan=self._settings.log_initialization_plan
                )
            return self._orchestrator

    def get_initialization_order(self) -> InitializationPlan:
        """The ordered startup plan; computed once, available before execution."""
        return self._get_orchestrator().plan()

    async def initialize_all_async(self, service_type: Any = None) -> None:
        """Run async initializers in plan order, failing fast.

        Args:
            service_type: Only initialize services implementing this type
                (and whatever they depend on); None runs the whole plan
        """
        if service_type is None:
            await self._get_orchestrator().execute()
            return
        await self._get_orchestrator().execute(
            lambda step: implements(type(step.instance), service_type)
        )

    async def initialize_async(self, service_type: Any, key: Any = None) -> None:
        """Initialize the instance ``get(service_type)`` returns, dependencies first.

        Raises:
            ServiceNotFoundError: If ``service_type`` is not registered
            ConfigurationError: If that instance is not in the initialization plan
        """
        instance = self.get(service_type, key)
        orchestrator = self._get_orchestrator()
        if not any(step.instance is instance for step in orchestrator.plan()):
            raise ConfigurationError(
                f"{type_name(service_type)} is not an async-initializable singleton",
                service_type=service_type,
            )
        await orchestrator.execute(lambda step: step.instance is instance)

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def is_registered(self, service_type: Any, key: Any = None) -> bool:
        """Check if a service type is registered (open generics included)."""
        try:
            return self._find(service_type, key) is not None
        except TypeError:
            return False

    def get_registered_types(self) -> List[Any]:
        """Unkeyed registered service types, in registration order."""
        return self._store.service_types()

    def create_scope(self) -> ServiceScope:
        """Create a new service scope.

        Scoped services will have one instance per scope.

        Returns:
            New service scope
        """
        self._ensure_built()
        return ServiceScope(self)

    def resolve_descriptor(self, descriptor: ServiceDescriptor[Any]) -> Any:
        """Resolve one specific registration from the root container."""
        self._ensure_built()
        return self._resolve_descriptor(descriptor, None)

    def is_instantiated(self, descriptor: ServiceDescriptor[Any]) -> bool:
        """Whether the container already holds an instance for this registration."""
        if descriptor.instance is not None:
            return True
        if descriptor.is_alias:
            canonical = self._store.find(descriptor.alias_of)
            return canonical is not None and self.is_instantiated(canonical)
        slot = self._singletons.get(descriptor)
        return slot is not None and slot.is_value_created

    def _resolve(self, service_type: Any, key: Any = None) -> Any:
        return self._resolve_in(service_type, key, None)

    def _resolve_all(self, service_type: Any) -> List[Any]:
        return self._resolve_all_in(service_type, None)

    def _find(self, service_type: Any, key: Any = None) -> Optional[ServiceDescriptor[Any]]:
        descriptor = self._store.find(service_type, key)
        if descriptor is None and key is None and self._open_generics:
            descriptor = self._close_generic(service_type)
        return descriptor

    def _close_generic(self, service_type: Any) -> Optional[ServiceDescriptor[Any]]:
        origin = typing.get_origin(service_type)
        if origin is None or origin not in self._open_generics:
            return None
        with self._slot_lock:
            descriptor = self._closed.get(service_type)
            if descriptor is None:
                implementation, lifetime = self._open_generics[origin]
                closed = implementation[typing.get_args(service_type)]  # type: ignore[index]
                descriptor = ServiceDescriptor(
                    service_type=service_type,
                    implementation_type=closed,
                    lifetime=lifetime,
                )
                self._closed[service_type] = descriptor
                logger.debug(f"Closed open generic {type_name(service_type)}")
            return descriptor

    def _resolve_in(self, service_type: Any, key: Any, scope: Optional[ServiceScope]) -> Any:
        self._ensure_built()
        descriptor = self._find(service_type, key)
        if descriptor is None:
            raise ServiceNotFoundError(service_type, key)
        return self._resolve_descriptor(descriptor, scope)

    def _resolve_all_in(self, service_type: Any, scope: Optional[ServiceScope]) -> List[Any]:
        self._ensure_built()
        descriptors = self._store.find_all(service_type)
        if not descriptors:
            closed = self._close_generic(service_type)
            descriptors = [closed] if closed is not None else []
        return [self._resolve_descriptor(d, scope) for d in descriptors]

    def _resolve_descriptor(
        self, descriptor: ServiceDescriptor[Any], scope: Optional[ServiceScope]
    ) -> Any:
        if descriptor.is_alias:
            canonical = self._find(descriptor.alias_of)
            if canonical is None:
                raise ServiceNotFoundError(descriptor.alias_of)
            return self._resolve_descriptor(canonical, scope)

        if descriptor.instance is not None:
            return descriptor.instance

        chain = _resolution_chain.get()
        if descriptor in chain:
            start = chain.index(descriptor)
            cycle = [d.service_type for d in chain[start:]] + [descriptor.service_type]
            raise CircularDependencyError(cycle, graph="resolution")

        if descriptor.lifetime is ServiceLifetime.SINGLETON:
            return self._singleton_slot(descriptor).value

        if descriptor.lifetime is ServiceLifetime.SCOPED:
            if scope is None:
                raise ScopeError.outside_scope(descriptor.service_type)
            return scope._scoped_slot(descriptor).value

        # Transient - always create new
        instance = self._create(descriptor, scope or self)
        if scope is not None:
            scope._track(instance)
        return instance

    def _singleton_slot(self, descriptor: ServiceDescriptor[Any]) -> Lazy[Any]:
        slot = self._singletons.get(descriptor)
        if slot is not None:
            return slot
        with self._slot_lock:
            slot = self._singletons.get(descriptor)
            if slot is None:
                slot = Lazy(
                    lambda: self._track_singleton(self._create(descriptor, self)),
                    key=descriptor.service_type,
                )
                self._singletons[descriptor] = slot
            return slot

    def _track_singleton(self, instance: Any) -> Any:
        if _is_disposable(instance):
            with self._slot_lock:
                self._created.append(instance)
        return instance

    def _create(self, descriptor: ServiceDescriptor[Any], resolver: ServiceResolver) -> Any:
        token = _resolution_chain.set(_resolution_chain.get() + (descriptor,))
        try:
            return self._instantiate(descriptor, resolver)
        except KeystoneError:
            raise
        except Exception as e:
            logger.debug(f"Failed to create {type_name(descriptor.service_type)}: {e}")
            raise ServiceCreationError(descriptor.service_type, e) from e
        finally:
            _resolution_chain.reset(token)

    def _instantiate(self, descriptor: ServiceDescriptor[Any], resolver: ServiceResolver) -> Any:
        if descriptor.factory is not None:
            return descriptor.factory(resolver)
        if descriptor.instance is not None:
            return descriptor.instance
        return self._construct(descriptor.implementation_type, resolver)

    def _can_resolve(self, service_type: Any) -> bool:
        try:
            return self._find(service_type) is not None
        except TypeError:
            return False

    def _construct(
        self,
        implementation: Any,
        resolver: ServiceResolver,
        provided: Optional[Dict[Any, Any]] = None,
    ) -> Any:
        """Call ``implementation`` with its registered constructor dependencies."""
        kwargs: Dict[str, Any] = {}
        for param in constructor_parameters(implementation):
            dep = param.service_type
            if provided and self._hashable(dep) and dep in provided:
                kwargs[param.name] = provided[dep]
            elif self._can_resolve(dep):
                kwargs[param.name] = resolver.get(dep)
            elif param.has_default:
                continue
            elif param.annotation is not dep:
                # Optional[X] with X unregistered
                kwargs[param.name] = None
            elif dep is inspect.Parameter.empty:
                raise ServiceCreationError(
                    implementation,
                    TypeError(
                        f"parameter '{param.name}' has no type annotation and no default"
                    ),
                )
            else:
                raise ServiceCreationError(implementation, ServiceNotFoundError(dep))
        return implementation(**kwargs)

    @staticmethod
    def _hashable(value: Any) -> bool:
        try:
            hash(value)
        except TypeError:
            return False
        return True

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _take_created(self) -> List[Any]:
        with self._lock:
            if self._disposed:
                return []
            self._disposed = True
            with self._slot_lock:
                created = list(reversed(self._created))
                self._created.clear()
                self._singletons.clear()
        return created

    def dispose(self) -> None:
        """Dispose all singleton services, newest first."""
        for instance in self._take_created():
            _release(instance)

    async def dispose_async(self) -> None:
        for instance in self._take_created():
            await _release_async(instance)

    def __enter__(self) -> "ServiceContainer":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.dispose()

    async def __aenter__(self) -> "ServiceContainer":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.dispose_async()


__all__ = [
    "ServiceContainer",
    "ServiceLifetime",
    "ServiceResolver",
    "ServiceScope",
]
