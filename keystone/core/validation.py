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

"""Service graph validation and diagnostics.

Checks run at composition time, before anything is resolved:

- Cycle detection over the construction graph. The only fatal check; see
  ``throw_if_invalid``.
- Lifetime captivity: a wider-lived service taking a narrower-lived
  dependency in its constructor (e.g. a singleton holding a scoped service).
- Duplicate registrations of the same ``(service_type, key)``. Legal for
  enumerable resolution, but single resolution silently picks the last one.

Usage:
    validator = ServiceGraphValidator(container.descriptors)
    validator.throw_if_invalid()
    report = validator.validate()
    for warning in report.warnings:
        print(warning)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from keystone.core.descriptors import ServiceDescriptor, ServiceLifetime
from keystone.core.errors import CircularDependencyError, type_name
from keystone.core.graph import (
    DependencyGraph,
    build_construction_graph,
    construction_dependencies,
)

logger = logging.getLogger(__name__)

DEFAULT_SINGLETON_WARNING_THRESHOLD = 20


@dataclass(frozen=True)
class LifetimeCaptivityWarning:
    """A longer-lived service pinning a shorter-lived dependency."""

    service_type: Any
    lifetime: ServiceLifetime
    dependency_type: Any
    dependency_lifetime: ServiceLifetime

    @property
    def message(self) -> str:
        return (
            f"Service {type_name(self.service_type)} ({self.lifetime.value}) captures "
            f"{type_name(self.dependency_type)} ({self.dependency_lifetime.value}); "
            f"the {self.dependency_lifetime.value} dependency will live as long as "
            f"its {self.lifetime.value} owner"
        )


@dataclass(frozen=True)
class DuplicateRegistrationWarning:
    """Several registrations for the same service type and key."""

    service_type: Any
    service_key: Any
    registrations: Tuple[ServiceDescriptor[Any], ...]

    @property
    def count(self) -> int:
        return len(self.registrations)

    @property
    def message(self) -> str:
        key = f" (key={self.service_key!r})" if self.service_key is not None else ""
        entries = ", ".join(
            f"{d.implementation_name} ({d.lifetime.value})" for d in self.registrations
        )
        return (
            f"Service {type_name(self.service_type)}{key} is registered {self.count} times: "
            f"{entries}"
        )


@dataclass
class DiagnosticsReport:
    """Summary of a descriptor set; recomputed on demand, never cached."""

    total_services: int = 0
    singleton_count: int = 0
    scoped_count: int = 0
    transient_count: int = 0
    keyed_count: int = 0
    warnings: List[str] = field(default_factory=list)
    duplicates: List[DuplicateRegistrationWarning] = field(default_factory=list)
    lifetime_violations: List[LifetimeCaptivityWarning] = field(default_factory=list)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_services": self.total_services,
            "singleton_count": self.singleton_count,
            "scoped_count": self.scoped_count,
            "transient_count": self.transient_count,
            "keyed_count": self.keyed_count,
            "warnings": list(self.warnings),
            "duplicates": [
                {
                    "service_type": type_name(d.service_type),
                    "key": repr(d.service_key) if d.service_key is not None else None,
                    "count": d.count,
                    "registrations": [
                        {"implementation": r.implementation_name, "lifetime": r.lifetime.value}
                        for r in d.registrations
                    ],
                }
                for d in self.duplicates
            ],
            "lifetime_violations": [
                {
                    "service_type": type_name(v.service_type),
                    "lifetime": v.lifetime.value,
                    "dependency_type": type_name(v.dependency_type),
                    "dependency_lifetime": v.dependency_lifetime.value,
                }
                for v in self.lifetime_violations
            ],
        }


class ServiceGraphValidator:
    """Validates a descriptor set for structural defects."""

    def __init__(
        self,
        descriptors: Sequence[ServiceDescriptor[Any]],
        singleton_warning_threshold: Optional[int] = DEFAULT_SINGLETON_WARNING_THRESHOLD,
    ):
        self._descriptors = list(descriptors)
        self._singleton_warning_threshold = singleton_warning_threshold
        self._graph: Optional[DependencyGraph] = None

    @property
    def graph(self) -> DependencyGraph:
        if self._graph is None:
            self._graph = build_construction_graph(self._descriptors)
        return self._graph

    def find_cycle(self) -> Optional[List[Any]]:
        return self.graph.find_cycle()

    def throw_if_invalid(self) -> None:
        """Fail on construction cycles; captivity and duplicates stay advisory.

        Raises:
            CircularDependencyError: With the full cycle, e.g. ``A -> B -> C -> A``
        """
        cycle = self.find_cycle()
        if cycle is not None:
            error = CircularDependencyError(cycle, graph="construction")
            logger.debug(f"Validation failed: {error.message}")
            raise error

    def find_duplicates(self) -> List[DuplicateRegistrationWarning]:
        groups: Dict[Tuple[Any, Any], List[ServiceDescriptor[Any]]] = {}
        for descriptor in self._descriptors:
            groups.setdefault((descriptor.service_type, descriptor.service_key), []).append(
                descriptor
            )
        return [
            DuplicateRegistrationWarning(service_type, key, tuple(group))
            for (service_type, key), group in groups.items()
            if len(group) > 1
        ]

    def find_lifetime_violations(self) -> List[LifetimeCaptivityWarning]:
        effective: Dict[Any, ServiceDescriptor[Any]] = {}
        for descriptor in self._descriptors:
            if not descriptor.is_keyed:
                effective[descriptor.service_type] = descriptor
        registered = set(effective)

        violations: List[LifetimeCaptivityWarning] = []
        for descriptor in self._descriptors:
            # aliases share their canonical lifetime; the canonical entry is checked
            if descriptor.is_alias or descriptor.implementation_type is None:
                continue
            for dep in construction_dependencies(descriptor, registered):
                dep_lifetime = effective[dep].lifetime
                if descriptor.lifetime.rank > dep_lifetime.rank:
                    violations.append(
                        LifetimeCaptivityWarning(
                            service_type=descriptor.service_type,
                            lifetime=descriptor.lifetime,
                            dependency_type=dep,
                            dependency_lifetime=dep_lifetime,
                        )
                    )
        return violations

    def validate(self) -> DiagnosticsReport:
        """Compute counts and advisory warnings. Never raises for warnings."""
        report = DiagnosticsReport(
            total_services=len(self._descriptors),
            singleton_count=sum(
                1 for d in self._descriptors if d.lifetime is ServiceLifetime.SINGLETON
            ),
            scoped_count=sum(1 for d in self._descriptors if d.lifetime is ServiceLifetime.SCOPED),
            transient_count=sum(
                1 for d in self._descriptors if d.lifetime is ServiceLifetime.TRANSIENT
            ),
            keyed_count=sum(1 for d in self._descriptors if d.is_keyed),
        )

        report.duplicates = self.find_duplicates()
        report.lifetime_violations = self.find_lifetime_violations()

        report.warnings.extend(d.message for d in report.duplicates)
        report.warnings.extend(v.message for v in report.lifetime_violations)

        threshold = self._singleton_warning_threshold
        if threshold is not None and report.singleton_count > threshold:
            report.warnings.append(
                f"High number of singletons ({report.singleton_count}). "
                "Consider using scoped services."
            )

        logger.debug(
            f"Validated {report.total_services} descriptors: {len(report.warnings)} warning(s)"
        )
        return report


def validate(descriptors: Sequence[ServiceDescriptor[Any]], **kwargs: Any) -> DiagnosticsReport:
    return ServiceGraphValidator(descriptors, **kwargs).validate()


def throw_if_invalid(descriptors: Sequence[ServiceDescriptor[Any]]) -> None:
    ServiceGraphValidator(descriptors).throw_if_invalid()


__all__ = [
    "DiagnosticsReport",
    "DuplicateRegistrationWarning",
    "LifetimeCaptivityWarning",
    "ServiceGraphValidator",
    "throw_if_invalid",
    "validate",
]
