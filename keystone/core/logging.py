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

"""Logging setup for Keystone.

Logging Levels (Keystone convention):
- DEBUG (10): Per-registration and per-resolution detail
- INFO (20): Composition milestones (discovery counts, build, initialization plan)
- WARNING (30): Advisory diagnostics (duplicates, lifetime captivity) and
  recoverable issues (disposal errors, unknown depends_on types)
- ERROR (40): Failed initialization steps
"""

import logging
from typing import Optional

LOG_FORMAT = "[%(name)s] [%(asctime)s] [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers to keep quiet
NOISY_LOGGERS = [
    "asyncio",
]


def configure_logging(log_level: str = "WARNING", handler: Optional[logging.Handler] = None) -> None:
    """Configure the ``keystone`` logger.

    Args:
        log_level: Level for Keystone loggers (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        handler: Handler to attach; a console handler is created when omitted
            and the logger has none yet. A handler that is already attached
            is not added twice.

    Repeat calls re-level the logger and its attached handlers.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    root = logging.getLogger("keystone")
    root.setLevel(level)

    if handler is None and not root.handlers:
        handler = logging.StreamHandler()
    if handler is not None and handler not in root.handlers:
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root.addHandler(handler)

    for attached in root.handlers:
        attached.setLevel(level)

    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)
