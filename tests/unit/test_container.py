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

"""Tests for the dependency injection container."""

import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Generic, List, Optional, Protocol, TypeVar

import pytest

from keystone.config.settings import Settings
from keystone.core.container import (
    ServiceContainer,
    ServiceLifetime,
    ServiceScope,
)
from keystone.core.errors import (
    CircularDependencyError,
    ConfigurationError,
    ScopeDisposedError,
    ScopeError,
    ServiceCreationError,
    ServiceNotFoundError,
    ValidationFailedError,
)
from keystone.core.lazy import Lazy

T = TypeVar("T")
K = TypeVar("K")
V = TypeVar("V")


class ILogger(Protocol):
    """Test logger interface."""

    def log(self, message: str) -> None: ...


class ICache(Protocol):
    """Test cache interface."""

    def get(self, key: str) -> str: ...


class MockLogger:
    """Mock logger implementation."""

    def __init__(self):
        self.messages: list[str] = []

    def log(self, message: str) -> None:
        self.messages.append(message)


class MockCache:
    """Mock cache implementation."""

    def __init__(self, logger: ILogger):
        self.logger = logger
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str:
        self.logger.log(f"Cache get: {key}")
        return self._data.get(key, "")


class DisposableService:
    """Service that tracks disposal."""

    disposed = False

    def dispose(self) -> None:
        DisposableService.disposed = True


class AsyncResource:
    """Service that only supports awaited disposal."""

    def __init__(self):
        self.disposed = False

    async def dispose_async(self) -> None:
        self.disposed = True


class Tracked:
    def __init__(self, name: str, log: List[str]):
        self.name = name
        self.log = log

    def dispose(self) -> None:
        self.log.append(self.name)


class ResourceA(Tracked):
    pass


class ResourceB(Tracked):
    pass


class IGreeter(Protocol):
    def greet(self, name: str) -> str: ...


class Greeter:
    def greet(self, name: str) -> str:
        return f"Hello, {name}"


class ShoutingGreeter:
    """Class decorator; the inner greeter is injected by type."""

    def __init__(self, inner: IGreeter, logger: ILogger):
        self.inner = inner
        self.logger = logger

    def greet(self, name: str) -> str:
        self.logger.log(f"greet {name}")
        return self.inner.greet(name).upper()


class PrefixedGreeter:
    def __init__(self, inner: IGreeter, prefix: str):
        self.inner = inner
        self.prefix = prefix

    def greet(self, name: str) -> str:
        return self.prefix + self.inner.greet(name)


class IPlugin(ABC):
    @abstractmethod
    def name(self) -> str: ...


class PluginA(IPlugin):
    def name(self) -> str:
        return "a"


class PluginB(IPlugin):
    def name(self) -> str:
        return "b"


class RequestContext:
    def __init__(self):
        self.request_id = id(self)


class RequestHandler:
    def __init__(self, context: RequestContext):
        self.context = context


class SingletonHoldingContext:
    def __init__(self, context: RequestContext):
        self.context = context


class ServiceA:
    def __init__(self, other=None):
        self.other = other


class ServiceB:
    def __init__(self, other=None):
        self.other = other


class CycleA:
    def __init__(self, b: "CycleB"):
        self.b = b


class CycleB:
    def __init__(self, a: CycleA):
        self.a = a


class Exploding:
    def __init__(self):
        raise ValueError("kaboom")


class WithOptional:
    def __init__(self, logger: Optional[ILogger]):
        self.logger = logger


class WithDefault:
    def __init__(self, logger: ILogger, retries: int = 3):
        self.logger = logger
        self.retries = retries


class Unannotated:
    def __init__(self, thing):
        self.thing = thing


class User:
    pass


class Order:
    pass


class IRepository(Generic[T]):
    pass


class Repository(IRepository[T]):
    def __init__(self, logger: Optional[ILogger] = None):
        self.logger = logger


class IPair(Generic[K, V]):
    pass


class IMissing(Generic[T]):
    pass


class TestServiceContainer:
    """Tests for ServiceContainer class."""

    def setup_method(self):
        """Reset state before each test."""
        DisposableService.disposed = False

    def test_register_and_get_singleton(self):
        """Test registering and retrieving a singleton service."""
        container = ServiceContainer()
        container.register(MockLogger, lambda c: MockLogger(), ServiceLifetime.SINGLETON)

        logger1 = container.get(MockLogger)
        logger2 = container.get(MockLogger)

        assert logger1 is logger2
        assert isinstance(logger1, MockLogger)

    def test_register_and_get_transient(self):
        """Test registering and retrieving a transient service."""
        container = ServiceContainer()
        container.register(MockLogger, lambda c: MockLogger(), ServiceLifetime.TRANSIENT)

        logger1 = container.get(MockLogger)
        logger2 = container.get(MockLogger)

        assert logger1 is not logger2
        assert isinstance(logger1, MockLogger)

    def test_injects_past_an_unresolvable_annotation(self):
        from deferred_services import Clock, Reporter

        container = ServiceContainer()
        container.register_singleton(Clock)
        container.register_transient(Reporter)

        reporter = container.get(Reporter)

        assert reporter.clock is container.get(Clock)
        assert reporter.inspector is None

    def test_register_concrete_type_as_itself(self):
        container = ServiceContainer()
        container.register(MockLogger)

        assert isinstance(container.get(MockLogger), MockLogger)

    def test_register_instance(self):
        """Test registering a pre-created instance."""
        container = ServiceContainer()
        instance = MockLogger()
        instance.messages.append("pre-existing")

        container.register_instance(MockLogger, instance)
        retrieved = container.get(MockLogger)

        assert retrieved is instance
        assert "pre-existing" in retrieved.messages

    def test_dependency_injection(self):
        """Test injecting dependencies between services."""
        container = ServiceContainer()
        container.register(MockLogger, lambda c: MockLogger(), ServiceLifetime.SINGLETON)
        container.register(
            MockCache, lambda c: MockCache(c.get(MockLogger)), ServiceLifetime.SINGLETON
        )

        cache = container.get(MockCache)
        cache.get("test_key")

        logger = container.get(MockLogger)
        assert "Cache get: test_key" in logger.messages

    def test_constructor_injection(self):
        """Implementation types get their registered parameters injected."""
        container = ServiceContainer()
        container.register_singleton(ILogger, MockLogger)
        container.register_singleton(ICache, MockCache)

        cache = container.get(ICache)

        assert isinstance(cache, MockCache)
        assert cache.logger is container.get(ILogger)

    def test_optional_parameter_without_registration_gets_none(self):
        container = ServiceContainer()
        container.register_transient(WithOptional)

        assert container.get(WithOptional).logger is None

    def test_default_parameter_is_kept(self):
        container = ServiceContainer()
        container.register_singleton(ILogger, MockLogger)
        container.register_transient(WithDefault)

        service = container.get(WithDefault)

        assert service.retries == 3
        assert isinstance(service.logger, MockLogger)

    def test_missing_constructor_dependency(self):
        container = ServiceContainer()
        container.register_singleton(ICache, MockCache)

        with pytest.raises(ServiceCreationError) as exc_info:
            container.get(ICache)

        assert isinstance(exc_info.value.original_error, ServiceNotFoundError)
        assert "ILogger" in str(exc_info.value)

    def test_unannotated_parameter_fails_creation(self):
        container = ServiceContainer()
        container.register_transient(Unannotated)

        with pytest.raises(ServiceCreationError) as exc_info:
            container.get(Unannotated)

        assert isinstance(exc_info.value.original_error, TypeError)
        assert "thing" in str(exc_info.value)

    def test_constructor_failure_is_wrapped(self):
        container = ServiceContainer()
        container.register_singleton(Exploding)

        with pytest.raises(ServiceCreationError) as exc_info:
            container.get(Exploding)

        assert isinstance(exc_info.value.__cause__, ValueError)
        assert "kaboom" in str(exc_info.value)

    def test_failed_singleton_is_retried(self):
        container = ServiceContainer()
        attempts = []

        def flaky(c):
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("first attempt")
            return MockLogger()

        container.register(MockLogger, flaky)

        with pytest.raises(ServiceCreationError):
            container.get(MockLogger)
        logger = container.get(MockLogger)

        assert isinstance(logger, MockLogger)
        assert container.get(MockLogger) is logger
        assert len(attempts) == 2

    def test_service_not_found_error(self):
        """Test that ServiceNotFoundError is raised for unregistered services."""
        container = ServiceContainer()

        with pytest.raises(ServiceNotFoundError) as exc_info:
            container.get(MockLogger)

        assert "MockLogger" in str(exc_info.value)

    def test_get_optional_returns_none(self):
        """Test get_optional returns None for unregistered services."""
        container = ServiceContainer()

        assert container.get_optional(MockLogger) is None

    def test_get_optional_returns_service(self):
        container = ServiceContainer()
        container.register(MockLogger)

        assert isinstance(container.get_optional(MockLogger), MockLogger)

    def test_is_registered(self):
        """Test is_registered check."""
        container = ServiceContainer()

        assert not container.is_registered(MockLogger)

        container.register(MockLogger, lambda c: MockLogger())

        assert container.is_registered(MockLogger)
        assert not container.is_registered(MockLogger, key="other")

    def test_get_registered_types(self):
        """Test getting all registered types."""
        container = ServiceContainer()
        container.register(MockLogger, lambda c: MockLogger())
        container.register(MockCache, lambda c: MockCache(c.get(MockLogger)))
        container.register(MockLogger, lambda c: MockLogger(), key="audit")

        assert container.get_registered_types() == [MockLogger, MockCache]

    def test_method_chaining(self):
        container = (
            ServiceContainer()
            .register_singleton(ILogger, MockLogger)
            .register_transient(ICache, MockCache)
        )

        assert container.is_registered(ILogger)
        assert container.is_registered(ICache)

    def test_last_registration_wins(self):
        container = ServiceContainer()
        container.register_transient(IPlugin, PluginA)
        container.register_transient(IPlugin, PluginB)

        assert isinstance(container.get(IPlugin), PluginB)

    def test_get_all_in_registration_order(self):
        container = ServiceContainer()
        container.register_transient(IPlugin, PluginA)
        container.register_transient(IPlugin, PluginB)

        plugins = container.get_all(IPlugin)

        assert [p.name() for p in plugins] == ["a", "b"]

    def test_get_all_unregistered_is_empty(self):
        container = ServiceContainer()

        assert container.get_all(IPlugin) == []

    def test_try_register_keeps_existing(self):
        container = ServiceContainer()
        container.register_singleton(IPlugin, PluginA)
        container.try_register(IPlugin, PluginB)

        assert isinstance(container.get(IPlugin), PluginA)

    def test_replace_registration(self):
        """Replacing removes every earlier registration of the type."""
        container = ServiceContainer()
        container.register_singleton(IPlugin, PluginA)
        container.register_singleton(IPlugin, PluginB)
        container.replace(IPlugin, PluginA)

        assert isinstance(container.get(IPlugin), PluginA)
        assert len(container.get_all(IPlugin)) == 1

    def test_dispose_singletons(self):
        """Test disposing singleton services."""
        container = ServiceContainer()
        container.register(DisposableService, lambda c: DisposableService())

        container.get(DisposableService)
        assert not DisposableService.disposed

        container.dispose()
        assert DisposableService.disposed

    def test_dispose_skips_uncreated_singletons(self):
        container = ServiceContainer()
        container.register(DisposableService, lambda c: DisposableService())
        container.build()

        container.dispose()

        assert not DisposableService.disposed

    def test_dispose_does_not_touch_registered_instances(self):
        container = ServiceContainer()
        container.register_instance(DisposableService, DisposableService())
        container.get(DisposableService)

        container.dispose()

        assert not DisposableService.disposed

    def test_context_manager(self):
        """Test using container as context manager."""
        with ServiceContainer() as container:
            container.register(DisposableService, lambda c: DisposableService())
            container.get(DisposableService)

        assert DisposableService.disposed

    def test_use_after_dispose(self):
        container = ServiceContainer()
        container.register(MockLogger)
        container.dispose()

        with pytest.raises(ScopeDisposedError):
            container.get(MockLogger)

    def test_sync_dispose_warns_for_async_only_service(self, caplog):
        container = ServiceContainer()
        container.register(AsyncResource)
        resource = container.get(AsyncResource)

        with caplog.at_level(logging.WARNING, logger="keystone"):
            container.dispose()

        assert not resource.disposed
        assert "dispose_async" in caplog.text

    @pytest.mark.asyncio
    async def test_dispose_async(self):
        container = ServiceContainer()
        container.register(AsyncResource)
        container.register(DisposableService, lambda c: DisposableService())
        resource = container.get(AsyncResource)
        container.get(DisposableService)

        await container.dispose_async()

        assert resource.disposed
        assert DisposableService.disposed

    def test_thread_safe_singleton(self):
        """Test that singleton creation is thread-safe."""
        container = ServiceContainer()
        creation_count = [0]

        def create_logger(c):
            creation_count[0] += 1
            time.sleep(0.01)
            return MockLogger()

        container.register(MockLogger, create_logger, ServiceLifetime.SINGLETON)
        container.build()

        results = []
        barrier = threading.Barrier(10)

        def get_logger():
            barrier.wait()
            results.append(container.get(MockLogger))

        threads = [threading.Thread(target=get_logger) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert creation_count[0] == 1
        assert len(results) == 10
        assert all(r is results[0] for r in results)

    def test_slow_singleton_does_not_block_other_singletons(self):
        """Building one singleton holds no lock that other services need."""
        container = ServiceContainer()
        started = threading.Event()
        release = threading.Event()

        def slow(c):
            started.set()
            release.wait(timeout=5)
            return MockLogger()

        container.register(MockLogger, slow)
        container.register(DisposableService, lambda c: DisposableService())
        container.build()

        worker = threading.Thread(target=lambda: container.get(MockLogger))
        worker.start()
        assert started.wait(timeout=5)

        try:
            assert isinstance(container.get(DisposableService), DisposableService)
        finally:
            release.set()
            worker.join()


class TestBuildAndValidation:
    """Tests for build-time validation and sealing."""

    def test_register_after_build_raises(self):
        container = ServiceContainer()
        container.register(MockLogger)
        container.build()

        with pytest.raises(ConfigurationError):
            container.register(MockCache, lambda c: MockCache(c.get(MockLogger)))

    def test_first_resolution_builds(self):
        container = ServiceContainer()
        container.register(MockLogger)

        assert not container.is_built
        container.get(MockLogger)

        assert container.is_built
        with pytest.raises(ConfigurationError):
            container.register(DisposableService)

    def test_build_detects_construction_cycle(self):
        container = ServiceContainer()
        container.register_singleton(CycleA)
        container.register_singleton(CycleB)

        with pytest.raises(CircularDependencyError) as exc_info:
            container.build()

        assert exc_info.value.graph == "construction"
        assert set(exc_info.value.cycle) == {CycleA, CycleB}
        assert not container.is_built

    def test_first_resolution_detects_cycle(self):
        container = ServiceContainer()
        container.register_singleton(CycleA)
        container.register_singleton(CycleB)
        container.register(MockLogger)

        with pytest.raises(CircularDependencyError):
            container.get(MockLogger)

    def test_validation_can_be_disabled(self):
        container = ServiceContainer(Settings(validate_on_build=False))
        container.register_singleton(CycleA)
        container.register_singleton(CycleB)
        container.register(MockLogger)

        assert isinstance(container.get(MockLogger), MockLogger)
        assert container.is_built

    def test_build_returns_report_and_logs_warnings(self, caplog):
        container = ServiceContainer()
        container.register_transient(IPlugin, PluginA)
        container.register_transient(IPlugin, PluginB)

        with caplog.at_level(logging.WARNING, logger="keystone"):
            report = container.build()

        assert len(report.duplicates) == 1
        assert "registered 2 times" in caplog.text
        assert container.build() is report

    def test_fail_on_warnings(self):
        container = ServiceContainer(Settings(fail_on_warnings=True))
        container.register_transient(IPlugin, PluginA)
        container.register_transient(IPlugin, PluginB)

        with pytest.raises(ValidationFailedError) as exc_info:
            container.build()

        assert len(exc_info.value.warnings) == 1

    def test_get_diagnostics(self):
        container = ServiceContainer()
        container.register_singleton(ILogger, MockLogger)
        container.register_scoped(RequestContext)
        container.register_transient(RequestHandler)

        report = container.get_diagnostics()

        assert report.total_services == 3
        assert report.singleton_count == 1
        assert report.scoped_count == 1
        assert report.transient_count == 1
        assert not report.has_warnings

    def test_throw_if_invalid(self):
        container = ServiceContainer()
        container.register_singleton(CycleA)
        container.register_singleton(CycleB)

        with pytest.raises(CircularDependencyError):
            container.throw_if_invalid()

    def test_abstract_implementation_rejected(self):
        container = ServiceContainer()

        with pytest.raises(ConfigurationError):
            container.register_singleton(IPlugin, IPlugin)

    def test_non_implementation_rejected(self):
        container = ServiceContainer()

        with pytest.raises(ConfigurationError) as exc_info:
            container.register_singleton(ILogger, Greeter)

        assert "does not implement" in str(exc_info.value)

    def test_interface_without_implementation_rejected(self):
        container = ServiceContainer()

        with pytest.raises(ConfigurationError):
            container.register(IPlugin)


class TestRuntimeCycles:
    """Cycles that only show up while factories run."""

    def test_factory_cycle_detected(self):
        container = ServiceContainer()
        container.register(ServiceA, lambda c: ServiceA(c.get(ServiceB)))
        container.register(ServiceB, lambda c: ServiceB(c.get(ServiceA)))

        with pytest.raises(CircularDependencyError) as exc_info:
            container.get(ServiceA)

        assert exc_info.value.graph == "resolution"
        assert exc_info.value.cycle == [ServiceA, ServiceB, ServiceA]

    def test_transient_self_cycle_detected(self):
        container = ServiceContainer()
        container.register(ServiceA, lambda c: ServiceA(c.get(ServiceA)), ServiceLifetime.TRANSIENT)

        with pytest.raises(CircularDependencyError) as exc_info:
            container.get(ServiceA)

        assert exc_info.value.cycle == [ServiceA, ServiceA]


class TestServiceScope:
    """Tests for ServiceScope class."""

    def test_create_scope(self):
        """Test creating a service scope."""
        container = ServiceContainer()
        scope = container.create_scope()

        assert isinstance(scope, ServiceScope)
        assert scope.container is container

    def test_scoped_services_isolated(self):
        """Test that scoped services are isolated between scopes."""
        container = ServiceContainer()
        container.register_scoped(RequestContext)

        with container.create_scope() as scope1:
            ctx1a = scope1.get(RequestContext)
            ctx1b = scope1.get(RequestContext)

        with container.create_scope() as scope2:
            ctx2 = scope2.get(RequestContext)

        assert ctx1a is ctx1b
        assert ctx1a is not ctx2

    def test_singleton_shared_across_scopes(self):
        """Test that singletons are shared across scopes."""
        container = ServiceContainer()
        container.register(MockLogger, lambda c: MockLogger(), ServiceLifetime.SINGLETON)

        with container.create_scope() as scope1:
            logger1 = scope1.get(MockLogger)

        with container.create_scope() as scope2:
            logger2 = scope2.get(MockLogger)

        assert logger1 is logger2
        assert logger1 is container.get(MockLogger)

    def test_scoped_from_root_raises(self):
        container = ServiceContainer()
        container.register_scoped(RequestContext)

        with pytest.raises(ScopeError) as exc_info:
            container.get(RequestContext)

        assert "RequestContext" in str(exc_info.value)

    def test_scoped_dependency_of_transient_inside_scope(self):
        container = ServiceContainer()
        container.register_scoped(RequestContext)
        container.register_transient(RequestHandler)

        with container.create_scope() as scope:
            handler = scope.get(RequestHandler)
            assert handler.context is scope.get(RequestContext)

    def test_factory_receives_scope(self):
        container = ServiceContainer()
        container.register_scoped(RequestContext)
        container.register_transient(
            RequestHandler, factory=lambda r: RequestHandler(r.get(RequestContext))
        )

        with container.create_scope() as scope:
            handler = scope.get(RequestHandler)
            assert handler.context is scope.get(RequestContext)

    def test_singleton_capturing_scoped_still_fails_from_root(self):
        """Captivity is only a warning at build; resolution from root still fails."""
        container = ServiceContainer()
        container.register_scoped(RequestContext)
        container.register_singleton(SingletonHoldingContext)

        report = container.build()
        assert len(report.lifetime_violations) == 1

        with pytest.raises(ScopeError):
            container.get(SingletonHoldingContext)

    def test_scope_disposes_services(self):
        """Test that scope disposes its services."""
        DisposableService.disposed = False
        container = ServiceContainer()
        container.register(DisposableService, lambda c: DisposableService(), ServiceLifetime.SCOPED)

        with container.create_scope() as scope:
            scope.get(DisposableService)
            assert not DisposableService.disposed

        assert DisposableService.disposed

    def test_scope_disposes_in_reverse_order(self):
        log: List[str] = []
        container = ServiceContainer()
        container.register_scoped(ResourceA, factory=lambda r: ResourceA("a", log))
        container.register_transient(ResourceB, factory=lambda r: ResourceB("b", log))

        with container.create_scope() as scope:
            scope.get(ResourceA)
            scope.get(ResourceB)

        assert log == ["b", "a"]

    def test_scope_does_not_dispose_singletons(self):
        DisposableService.disposed = False
        container = ServiceContainer()
        container.register(DisposableService, lambda c: DisposableService())

        with container.create_scope() as scope:
            scope.get(DisposableService)

        assert not DisposableService.disposed

    def test_disposed_scope_raises(self):
        """Test that using disposed scope raises error."""
        container = ServiceContainer()
        container.register(MockLogger, lambda c: MockLogger())

        scope = container.create_scope()
        scope.dispose()

        with pytest.raises(ScopeDisposedError):
            scope.get(MockLogger)

    def test_double_dispose_is_noop(self):
        log: List[str] = []
        container = ServiceContainer()
        container.register_scoped(ResourceA, factory=lambda r: ResourceA("a", log))

        scope = container.create_scope()
        scope.get(ResourceA)
        scope.dispose()
        scope.dispose()

        assert log == ["a"]

    @pytest.mark.asyncio
    async def test_async_scope(self):
        container = ServiceContainer()
        container.register_scoped(AsyncResource)

        async with container.create_scope() as scope:
            resource = scope.get(AsyncResource)
            assert not resource.disposed

        assert resource.disposed
        assert scope.is_disposed


class TestAliases:
    def test_alias_shares_singleton(self):
        container = ServiceContainer()
        container.register_singleton(MockLogger)
        container.register_alias(ILogger, MockLogger)

        assert container.get(ILogger) is container.get(MockLogger)

    def test_alias_of_unregistered_type(self):
        container = ServiceContainer()

        with pytest.raises(ConfigurationError):
            container.register_alias(ILogger, MockLogger)

    def test_alias_must_be_implemented(self):
        container = ServiceContainer()
        container.register_singleton(Greeter)

        with pytest.raises(ConfigurationError):
            container.register_alias(ILogger, Greeter)


class TestKeyedServices:
    def test_keyed_registrations_are_independent(self):
        container = ServiceContainer()
        container.register_singleton(IPlugin, PluginA, key="a")
        container.register_singleton(IPlugin, PluginB, key="b")

        assert isinstance(container.get_keyed(IPlugin, "a"), PluginA)
        assert isinstance(container.get(IPlugin, key="b"), PluginB)

        with pytest.raises(ServiceNotFoundError) as exc_info:
            container.get(IPlugin)
        assert exc_info.value.key is None

    def test_missing_key(self):
        container = ServiceContainer()
        container.register_singleton(IPlugin, PluginA, key="a")

        with pytest.raises(ServiceNotFoundError) as exc_info:
            container.get_keyed(IPlugin, "z")

        assert "'z'" in str(exc_info.value)


class TestLazyRegistrations:
    def test_lazy_keyed_resolves_holder(self):
        container = ServiceContainer()
        seen = []

        def factory(provider):
            seen.append(provider)
            return MockLogger()

        container.register_lazy_keyed("audit", factory)

        holder = container.resolve_keyed("audit")

        assert isinstance(holder, Lazy)
        assert not holder.is_value_created
        assert seen == []

        logger = holder.value

        assert isinstance(logger, MockLogger)
        assert seen == [container]
        assert container.resolve_keyed("audit") is holder

    def test_lazy_keyed_requires_key(self):
        container = ServiceContainer()

        with pytest.raises(ConfigurationError):
            container.register_lazy_keyed(None, lambda c: MockLogger())

    def test_lazy_keyed_unknown_key(self):
        container = ServiceContainer()
        container.register_lazy_keyed("audit", lambda c: MockLogger())

        with pytest.raises(ServiceNotFoundError):
            container.resolve_keyed("billing")

    def test_lazy_keyed_constructs_once_across_threads(self):
        container = ServiceContainer()
        calls = []

        def factory(provider):
            calls.append(1)
            time.sleep(0.02)
            return MockLogger()

        container.register_lazy_keyed("shared", factory)
        container.build()

        barrier = threading.Barrier(16)
        results = []

        def worker():
            barrier.wait()
            results.append(container.resolve_keyed("shared").value)

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(calls) == 1
        assert len(results) == 16
        assert all(r is results[0] for r in results)

    def test_lazy_keyed_scoped_holder_per_scope(self):
        container = ServiceContainer()
        seen = []

        def factory(provider):
            seen.append(provider)
            return MockLogger()

        container.register_lazy_keyed("audit", factory, ServiceLifetime.SCOPED)

        with container.create_scope() as first, container.create_scope() as second:
            holder = first.resolve_keyed("audit")

            assert first.resolve_keyed("audit") is holder
            assert second.resolve_keyed("audit") is not holder
            assert holder.value is holder.value
            assert seen == [first]

        with pytest.raises(ScopeError):
            container.resolve_keyed("audit")

    def test_lazy_keyed_transient_fresh_holder(self):
        container = ServiceContainer()
        container.register_lazy_keyed("audit", lambda c: MockLogger(), ServiceLifetime.TRANSIENT)

        first = container.resolve_keyed("audit")
        second = container.resolve_keyed("audit")

        assert first is not second
        assert first.value is not second.value

    def test_register_lazy(self):
        container = ServiceContainer()
        container.register_singleton(ILogger, MockLogger)
        container.register_lazy(MockCache, lambda c: MockCache(c.get(ILogger)))

        holder = container.get_lazy(MockCache)

        assert isinstance(holder, Lazy)
        assert not holder.is_value_created
        assert isinstance(holder.value, MockCache)
        assert container.get_lazy(MockCache) is holder


class TestServiceEnumeration:
    """Helpers over every registration of a service type."""

    def build(self):
        container = ServiceContainer()
        container.register_singleton(IPlugin, PluginA)
        container.register_singleton(IPlugin, PluginB)
        return container

    def test_get_services_with_predicate(self):
        container = self.build()

        assert [p.name() for p in container.get_services(IPlugin)] == ["a", "b"]
        assert [p.name() for p in container.get_services(IPlugin, lambda p: p.name() == "b")] == [
            "b"
        ]

    def test_for_each_service(self):
        container = self.build()
        names = []

        container.for_each_service(IPlugin, lambda p: names.append(p.name()))

        assert names == ["a", "b"]

    def test_map_services(self):
        assert self.build().map_services(IPlugin, lambda p: p.name().upper()) == ["A", "B"]

    @pytest.mark.asyncio
    async def test_async_helpers_keep_registration_order(self):
        container = self.build()
        visited = []

        async def visit(plugin):
            visited.append(plugin.name())

        async def slow_name(plugin):
            # the first plugin finishes last
            await asyncio.sleep(0.02 if plugin.name() == "a" else 0)
            return plugin.name()

        await container.for_each_service_async(IPlugin, visit)
        names = await container.map_services_async(IPlugin, slow_name)

        assert visited == ["a", "b"]
        assert names == ["a", "b"]

    def test_first_service(self):
        container = self.build()

        assert container.get_first_service(IPlugin, lambda p: True).name() == "a"
        assert container.get_first_service_or_default(IPlugin, lambda p: p.name() == "z") is None

        with pytest.raises(ServiceNotFoundError) as exc_info:
            container.get_first_service(IPlugin, lambda p: p.name() == "z")

        assert "matches the predicate" in str(exc_info.value)

    def test_service_count(self):
        container = self.build()

        assert container.get_service_count(IPlugin) == 2
        assert container.get_service_count(ICache) == 0

    def test_helpers_inside_scope(self):
        container = ServiceContainer()
        container.register_scoped(RequestContext)

        with container.create_scope() as scope:
            contexts = scope.get_services(RequestContext)

            assert contexts == [scope.get(RequestContext)]
            assert scope.get_service_count(RequestContext) == 1


class TestOpenGenerics:
    def test_closed_types_resolve(self):
        container = ServiceContainer()
        container.register_open_generic(IRepository, Repository)

        users = container.get(IRepository[User])

        assert isinstance(users, Repository)
        assert container.get(IRepository[User]) is users
        assert container.get(IRepository[Order]) is not users
        assert container.is_registered(IRepository[Order])

    def test_implementation_derived_from_interface_name(self):
        container = ServiceContainer()
        container.register_open_generic(IRepository, lifetime=ServiceLifetime.TRANSIENT)

        first = container.get(IRepository[User])

        assert isinstance(first, Repository)
        assert container.get(IRepository[User]) is not first

    def test_closed_type_gets_dependencies(self):
        container = ServiceContainer()
        container.register_singleton(ILogger, MockLogger)
        container.register_open_generic(IRepository)

        assert container.get(IRepository[User]).logger is container.get(ILogger)

    def test_arity_mismatch(self):
        container = ServiceContainer()

        with pytest.raises(ConfigurationError) as exc_info:
            container.register_open_generic(IPair, Repository)

        assert "IPair" in str(exc_info.value)
        assert "Repository" in str(exc_info.value)

    def test_underivable_implementation(self):
        container = ServiceContainer()

        with pytest.raises(ConfigurationError) as exc_info:
            container.register_open_generic(IMissing)

        assert "Missing" in str(exc_info.value)


class TestDecorators:
    def test_class_decorator(self):
        container = ServiceContainer()
        container.register_singleton(ILogger, MockLogger)
        container.register_singleton(IGreeter, Greeter)
        container.decorate(IGreeter, ShoutingGreeter)

        greeter = container.get(IGreeter)

        assert isinstance(greeter, ShoutingGreeter)
        assert isinstance(greeter.inner, Greeter)
        assert greeter.greet("bob") == "HELLO, BOB"
        assert container.get(ILogger).messages == ["greet bob"]
        assert container.get(IGreeter) is greeter

    def test_callable_decorator(self):
        container = ServiceContainer()
        container.register_transient(IGreeter, Greeter)
        container.decorate(IGreeter, lambda inner, c: PrefixedGreeter(inner, ">> "))

        greeter = container.get(IGreeter)

        assert greeter.greet("ann") == ">> Hello, ann"
        assert container.get(IGreeter) is not greeter

    def test_decorators_stack(self):
        container = ServiceContainer()
        container.register_singleton(IGreeter, Greeter)
        container.decorate(IGreeter, lambda inner, c: PrefixedGreeter(inner, "1:"))
        container.decorate(IGreeter, lambda inner, c: PrefixedGreeter(inner, "2:"))

        assert container.get(IGreeter).greet("x") == "2:1:Hello, x"

    def test_decorate_unregistered(self):
        container = ServiceContainer()

        with pytest.raises(ConfigurationError):
            container.decorate(IGreeter, ShoutingGreeter)
