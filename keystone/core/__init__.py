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

"""Core infrastructure modules for Keystone.

This package provides the composition engine:
- Dependency injection container (ServiceContainer)
- Registration discovery from @auto_register markers
- Service graph validation and diagnostics
- Ordered async startup (AsyncInitializationOrchestrator)
- Exactly-once lazy holders
- Error handling types
"""

from keystone.core.container import (
    ServiceContainer,
    ServiceResolver,
    ServiceScope,
)
from keystone.core.descriptors import (
    DescriptorStore,
    ServiceDescriptor,
    ServiceLifetime,
)
from keystone.core.discovery import (
    MarkerRegistry,
    RegistrationDiscovery,
    RegistrationMarker,
    auto_register,
    derive_implementation_type,
    discover,
    validate_generic_pair,
)
from keystone.core.errors import (
    CircularDependencyError,
    ConfigurationError,
    InitializationStateError,
    KeystoneError,
    ScopeDisposedError,
    ScopeError,
    ServiceCreationError,
    ServiceNotFoundError,
    ValidationFailedError,
)
from keystone.core.initialization import (
    AsyncInitializable,
    AsyncInitializableService,
    AsyncInitializationOrchestrator,
    InitializationPlan,
    InitializationState,
    InitializationStep,
    StartupAction,
)
from keystone.core.lazy import Lazy, LazyState
from keystone.core.protocols import AsyncDisposable, Disposable
from keystone.core.validation import (
    DiagnosticsReport,
    DuplicateRegistrationWarning,
    LifetimeCaptivityWarning,
    ServiceGraphValidator,
)

__all__ = [
    # Container
    "ServiceContainer",
    "ServiceResolver",
    "ServiceScope",
    # Descriptors
    "DescriptorStore",
    "ServiceDescriptor",
    "ServiceLifetime",
    # Discovery
    "MarkerRegistry",
    "RegistrationDiscovery",
    "RegistrationMarker",
    "auto_register",
    "derive_implementation_type",
    "discover",
    "validate_generic_pair",
    # Errors
    "CircularDependencyError",
    "ConfigurationError",
    "InitializationStateError",
    "KeystoneError",
    "ScopeDisposedError",
    "ScopeError",
    "ServiceCreationError",
    "ServiceNotFoundError",
    "ValidationFailedError",
    # Initialization
    "AsyncInitializable",
    "AsyncInitializableService",
    "AsyncInitializationOrchestrator",
    "InitializationPlan",
    "InitializationState",
    "InitializationStep",
    "StartupAction",
    # Lazy
    "Lazy",
    "LazyState",
    # Lifecycle protocols
    "AsyncDisposable",
    "Disposable",
    # Validation
    "DiagnosticsReport",
    "DuplicateRegistrationWarning",
    "LifetimeCaptivityWarning",
    "ServiceGraphValidator",
]
