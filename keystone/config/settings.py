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

"""Configuration management for Keystone."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from keystone.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Settings(BaseSettings):
    """Composition engine settings.

    Every field can be set through a ``KEYSTONE_<FIELD>`` environment
    variable or a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="KEYSTONE_",
        env_file=".env" if not os.getenv("KEYSTONE_SKIP_ENV_FILE") else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: str = "WARNING"

    # ==========================================================================
    # Validation
    # ==========================================================================
    validate_on_build: bool = True  # Run cycle detection + diagnostics on first resolve
    fail_on_warnings: bool = False  # Treat advisory warnings as fatal in build()
    singleton_warning_threshold: Optional[int] = 20  # None disables the warning

    # ==========================================================================
    # Startup / discovery
    # ==========================================================================
    log_initialization_plan: bool = True
    discovery_include_private: bool = False  # Scan _private classes too

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(_LOG_LEVELS)}, got {v!r}")
        return level

    @field_validator("singleton_warning_threshold")
    @classmethod
    def validate_threshold(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 0:
            raise ValueError(f"singleton_warning_threshold must be >= 0, got {v}")
        return v


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to load settings from {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Settings file {path} must contain a mapping")
    # Allow either a flat file or one nested under a "keystone" key
    section = data.get("keystone", data)
    if not isinstance(section, dict):
        raise ConfigurationError(f"'keystone' section of {path} must be a mapping")
    return section


def load_settings(path: Optional[Union[str, Path]] = None, **overrides: Any) -> Settings:
    """Load settings from the environment, optionally overlaid with a YAML file.

    Precedence (highest first): explicit ``overrides``, the YAML file,
    environment variables / ``.env``, field defaults.

    Args:
        path: Optional YAML file
        **overrides: Field values that win over everything else

    Returns:
        Settings instance
    """
    values: Dict[str, Any] = {}
    if path is not None:
        values.update(_read_yaml(Path(path)))
        logger.debug(f"Loaded settings overlay from {path}")
    values.update(overrides)
    return Settings(**values)
