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

"""
Keystone - a dependency-injection composition engine.

Discovers registrations from marked types, validates the service graph
before first use, and runs an ordered, fail-fast async startup sequence.

Simple API:
    from keystone import ServiceContainer, auto_register, ServiceLifetime

    @auto_register(ServiceLifetime.SINGLETON)
    class Clock(IClock):
        ...

    container = ServiceContainer().discover("myapp.services")
    container.build()
    await container.initialize_all_async()
"""

__version__ = "0.1.0"
__author__ = "Vijaykumar Singh"
__email__ = "singhvjd@gmail.com"
__license__ = "Apache-2.0"

# keystone.core must load before keystone.config (settings imports core.errors)
from keystone.core import *  # noqa: F401,F403
from keystone.core import __all__ as _core_all
from keystone.config.settings import Settings, load_settings
from keystone.core.bootstrap import bootstrap_container
from keystone.core.logging import configure_logging

__all__ = [
    "Settings",
    "load_settings",
    "bootstrap_container",
    "configure_logging",
    *_core_all,
]
