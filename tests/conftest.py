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

"""Shared pytest fixtures and configuration."""

import os

# Must be set before keystone.config.settings is imported
os.environ.setdefault("KEYSTONE_SKIP_ENV_FILE", "1")

import pytest

from keystone.core.discovery import MarkerRegistry


@pytest.fixture(autouse=True)
def isolate_environment_variables(monkeypatch):
    """Isolate tests from KEYSTONE_* environment variables and .env files.

    This ensures tests are deterministic and don't depend on the developer's
    shell configuration.
    """
    monkeypatch.setenv("KEYSTONE_SKIP_ENV_FILE", "1")

    for var in list(os.environ):
        if var.startswith("KEYSTONE_") and var != "KEYSTONE_SKIP_ENV_FILE":
            monkeypatch.delenv(var, raising=False)


@pytest.fixture
def registry():
    """A private marker registry so tests never touch the process-wide one."""
    return MarkerRegistry()
