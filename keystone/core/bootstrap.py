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

"""Composition root for Keystone containers.

Builds a container from settings, discovered registrations and explicit
overrides in one call, then validates it. Called once at application
startup.

Usage:
    from keystone.core.bootstrap import bootstrap_container

    # Discover @auto_register classes in a package
    container = bootstrap_container(collections=["myapp.services"])

    # Substitute implementations for testing
    container = bootstrap_container(
        collections=["myapp.services"],
        override_services={IClock: FrozenClock()},
    )

    await container.initialize_all_async()
"""

from __future__ import annotations

import logging
from types import ModuleType
from typing import Any, Callable, Dict, Iterable, Optional, Sequence, Union

from keystone.config.settings import Settings, load_settings
from keystone.core.container import ServiceContainer
from keystone.core.discovery import MarkerRegistry
from keystone.core.logging import configure_logging

logger = logging.getLogger(__name__)


def bootstrap_container(
    settings: Optional[Settings] = None,
    collections: Iterable[Union[ModuleType, str, Sequence[type]]] = (),
    override_services: Optional[Dict[Any, Any]] = None,
    configure: Optional[Callable[[ServiceContainer], None]] = None,
    registry: Optional[MarkerRegistry] = None,
    build: bool = True,
) -> ServiceContainer:
    """Create, populate and build a container.

    Args:
        settings: Optional Settings instance (loads from the environment if None)
        collections: Type collections to discover ``@auto_register`` classes in
        override_services: Optional dict of service type -> instance for testing;
            replaces every existing registration of that type
        configure: Optional callback for explicit registrations, run after
            discovery and before overrides
        registry: Marker registry to discover from (default: process-wide)
        build: Validate and seal the container before returning

    Returns:
        Configured ServiceContainer
    """
    if settings is None:
        settings = load_settings()

    configure_logging(settings.log_level)

    container = ServiceContainer(settings)

    # Register Settings as singleton
    container.register_instance(Settings, settings)

    collections = list(collections)
    if collections:
        container.discover(*collections, registry=registry)

    if configure is not None:
        configure(container)

    # Apply overrides for testing
    if override_services:
        for service_type, instance in override_services.items():
            container.replace(service_type, instance=instance)

    if build:
        container.build()

    logger.info(f"Bootstrapped service container with {len(container.descriptors)} registrations")
    return container


__all__ = ["bootstrap_container"]
