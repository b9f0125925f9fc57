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


from typing import Dict, Protocol

from keystone.core.descriptors import ServiceLifetime
from keystone.core.discovery import auto_register

from discovery_fixtures import REGISTRY


class IReader(Protocol):
    def read(self, key: str) -> str: ...


class IWriter(Protocol):
    def write(self, key: str, value: str) -> None: ...


@auto_register(ServiceLifetime.SINGLETON, service_types=(IReader, IWriter), registry=REGISTRY)
class FileStore:
    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def read(self, key: str) -> str:
        return self._data.get(key, "")

    def write(self, key: str, value: str) -> None:
        self._data[key] = value


@auto_register(registry=REGISTRY)
class Formatter:
    def format(self, value: str) -> str:
        return value.strip()
