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

"""Error types for the Keystone composition engine.

This module provides:
- Error categories and severities for classification
- A structured base exception with correlation IDs and recovery hints
- Fatal composition errors (configuration, cycles, scopes, creation)

Advisory findings (duplicate registrations, lifetime captivity) are not
exceptions; they live in keystone.core.validation and are only surfaced
through diagnostics reports.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence


def type_name(obj: Any) -> str:
    """Readable name for a type, generic alias, or arbitrary key."""
    if isinstance(obj, type):
        return obj.__qualname__
    name = getattr(obj, "__name__", None)
    if name is not None and getattr(obj, "__origin__", None) is None:
        return str(name)
    return repr(obj) if not isinstance(obj, str) else obj


# =============================================================================
# Error Categories
# =============================================================================


class ErrorCategory(Enum):
    """Categories of errors for classification and handling."""

    CONFIG_INVALID = "config_invalid"
    CIRCULAR_DEPENDENCY = "circular_dependency"
    SERVICE_NOT_FOUND = "service_not_found"
    SERVICE_CREATION = "service_creation"
    SCOPE = "scope"
    INITIALIZATION = "initialization"
    VALIDATION_ERROR = "validation_error"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# =============================================================================
# Custom Exception Types
# =============================================================================


class KeystoneError(Exception):
    """Base exception for all Keystone errors.

    Provides structured error information including:
    - Error category and severity
    - Correlation ID for tracking
    - Recovery suggestions
    - Original exception chain
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        details: Optional[Dict[str, Any]] = None,
        recovery_hint: Optional[str] = None,
        correlation_id: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.details = details or {}
        self.recovery_hint = recovery_hint
        self.correlation_id = correlation_id or str(uuid.uuid4())[:8]
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "correlation_id": self.correlation_id,
            "recovery_hint": self.recovery_hint,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        result = f"[{self.correlation_id}] {self.message}"
        if self.recovery_hint:
            result += f"\nRecovery hint: {self.recovery_hint}"
        return result


class ConfigurationError(KeystoneError):
    """Raised at registration time for registrations that can never work."""

    def __init__(
        self,
        message: str,
        service_type: Optional[Any] = None,
        implementation_type: Optional[Any] = None,
        **kwargs: Any,
    ):
        kwargs.setdefault("category", ErrorCategory.CONFIG_INVALID)
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        super().__init__(message, **kwargs)
        self.service_type = service_type
        self.implementation_type = implementation_type
        if service_type is not None:
            self.details["service_type"] = type_name(service_type)
        if implementation_type is not None:
            self.details["implementation_type"] = type_name(implementation_type)


class CircularDependencyError(KeystoneError):
    """Raised when a dependency cycle is found.

    Attributes:
        cycle: Ordered types from the repeated node back to itself
            (``[A, B, C, A]``), or the unresolved subset when no single
            cycle could be isolated.
        graph: Which graph the cycle was found in ("construction",
            "initialization" or "resolution").
    """

    def __init__(self, cycle: Sequence[Any], graph: str = "construction", **kwargs: Any):
        self.cycle: List[Any] = list(cycle)
        self.graph = graph
        path = " -> ".join(type_name(t) for t in self.cycle)
        super().__init__(
            f"Circular dependency detected in {graph} graph: {path}",
            category=ErrorCategory.CIRCULAR_DEPENDENCY,
            severity=ErrorSeverity.CRITICAL,
            recovery_hint="Break the cycle by removing one of the listed dependencies "
            "or by resolving it lazily.",
            **kwargs,
        )
        self.details["cycle"] = [type_name(t) for t in self.cycle]
        self.details["graph"] = graph

    @property
    def type_names(self) -> List[str]:
        return [type_name(t) for t in self.cycle]


class ServiceNotFoundError(KeystoneError):
    """Raised when a requested service is not registered (or none matches)."""

    def __init__(self, service_type: Any, key: Any = None, message: Optional[str] = None):
        self.service_type = service_type
        self.key = key
        name = type_name(service_type)
        if message is None:
            message = f"Service not registered: {name}"
            if key is not None:
                message += f" (key={key!r})"
        super().__init__(message, category=ErrorCategory.SERVICE_NOT_FOUND)
        self.details["service_type"] = name
        if key is not None:
            self.details["key"] = repr(key)


class ServiceCreationError(KeystoneError):
    """Raised when constructing a service instance fails."""

    def __init__(self, service_type: Any, original_error: BaseException):
        self.service_type = service_type
        self.original_error = original_error
        name = type_name(service_type)
        reason = getattr(original_error, "message", None) or str(original_error)
        super().__init__(
            f"Failed to create service {name}: {reason}",
            category=ErrorCategory.SERVICE_CREATION,
            cause=original_error,
        )
        self.details["service_type"] = name
        self.details["error_type"] = type(original_error).__name__


class ScopeError(KeystoneError):
    """Raised when a scoped service is resolved outside of a scope."""

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("category", ErrorCategory.SCOPE)
        super().__init__(message, **kwargs)

    @classmethod
    def outside_scope(cls, service_type: Any) -> "ScopeError":
        return cls(
            f"Scoped service {type_name(service_type)} requires a scope",
            recovery_hint="Resolve it through container.create_scope().",
        )


class ScopeDisposedError(ScopeError):
    """Raised when trying to use a disposed scope."""


class InitializationStateError(KeystoneError):
    """Raised when the startup sequence is driven from an invalid state."""

    def __init__(self, message: str, state: Optional[str] = None):
        super().__init__(message, category=ErrorCategory.INITIALIZATION)
        self.state = state
        self.details["state"] = state


class ValidationFailedError(KeystoneError):
    """Raised by build() when warnings are configured to be fatal."""

    def __init__(self, warnings: Iterable[str]):
        self.warnings = list(warnings)
        lines = "\n".join(f"  - {w}" for w in self.warnings)
        super().__init__(
            f"Service graph validation failed with {len(self.warnings)} warning(s):\n{lines}",
            category=ErrorCategory.VALIDATION_ERROR,
            recovery_hint="Fix the registrations or disable fail_on_warnings.",
        )
        self.details["warnings"] = self.warnings


__all__ = [
    "ErrorCategory",
    "ErrorSeverity",
    "KeystoneError",
    "ConfigurationError",
    "CircularDependencyError",
    "ServiceNotFoundError",
    "ServiceCreationError",
    "ScopeError",
    "ScopeDisposedError",
    "InitializationStateError",
    "ValidationFailedError",
    "type_name",
]
