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

"""Exactly-once lazy values.

``Lazy`` is the holder handed out for keyed lazy registrations and the slot
the container uses for every singleton and scoped instance. Construction
runs at most once per holder, no matter how many threads ask for the value
at the same time.

How the hand-off works:
1. A caller takes the short claim lock and inspects the state.
2. If the state is UNSTARTED it flips it to IN_PROGRESS, installs a fresh
   Future and releases the lock; it now owns construction.
3. Every other caller sees IN_PROGRESS (or DONE) and waits on the Future.
4. The owner runs the factory outside the lock and publishes the result
   or the exception through the Future.

The claim lock is never held while a factory runs, so unrelated holders
construct concurrently and a slow factory only blocks callers of its own
holder.

Two threads whose factories need each other's holders (A -> B on one
thread, B -> A on the other) would wait forever on each other's Future.
Before blocking, a waiter follows the chain of owners and the holders they
are blocked on; if it leads back to itself it raises RecursionError instead,
the same error as a holder read during its own construction.

Usage:
    holder = Lazy(lambda: ExpensiveClient(), key="primary")
    client = holder.value      # constructs once
    holder.is_value_created    # True
"""

import logging
import threading
from concurrent.futures import Future
from enum import Enum
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Thread id -> holder that thread is blocked on. Guarded by _waits_lock.
_waits_lock = threading.Lock()
_waiting_on: Dict[int, "Lazy[Any]"] = {}


class LazyState(Enum):
    """Lifecycle of a lazy holder."""

    UNSTARTED = "unstarted"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class Lazy(Generic[T]):
    """Thread-safe holder whose factory runs at most once.

    If the factory raises, every caller waiting on that attempt receives the
    exception and the holder goes back to UNSTARTED, so the next access
    retries. A successful value is never rebuilt.
    """

    def __init__(self, factory: Callable[[], T], key: Any = None) -> None:
        self._factory = factory
        self.key = key
        self._state = LazyState.UNSTARTED
        self._claim = threading.Lock()
        self._future: Optional["Future[T]"] = None
        self._owner: Optional[int] = None
        self._value: Optional[T] = None

    @property
    def state(self) -> LazyState:
        return self._state

    @property
    def is_value_created(self) -> bool:
        return self._state is LazyState.DONE

    @property
    def value(self) -> T:
        """The realized value, constructing it on first access."""
        # Fast path; DONE is terminal so no lock is needed to read it.
        if self._state is LazyState.DONE:
            return self._value  # type: ignore[return-value]

        with self._claim:
            if self._state is LazyState.DONE:
                return self._value  # type: ignore[return-value]
            if self._state is LazyState.IN_PROGRESS:
                if self._owner == threading.get_ident():
                    raise RecursionError(
                        f"Lazy value {self.key!r} was accessed during its own construction"
                    )
                future = self._future
                owner = False
            else:
                self._state = LazyState.IN_PROGRESS
                self._owner = threading.get_ident()
                future = self._future = Future()
                owner = True

        assert future is not None
        if not owner:
            return self._wait(future)
        return self._construct(future)

    def _wait(self, future: "Future[T]") -> T:
        me = threading.get_ident()
        with _waits_lock:
            if self._owner_waits_on(me):
                raise RecursionError(
                    f"Lazy value {self.key!r} is being constructed by a thread that is "
                    "waiting on this thread"
                )
            _waiting_on[me] = self
        try:
            return future.result()
        finally:
            with _waits_lock:
                _waiting_on.pop(me, None)

    def _owner_waits_on(self, thread_id: int) -> bool:
        """Follow owner -> awaited holder -> owner ... looking for ``thread_id``."""
        holder: Optional[Lazy[Any]] = self
        seen = set()
        while holder is not None:
            owner = holder._owner
            if owner is None or owner in seen:
                return False
            if owner == thread_id:
                return True
            seen.add(owner)
            holder = _waiting_on.get(owner)
        return False

    def _construct(self, future: "Future[T]") -> T:
        try:
            value = self._factory()
        except BaseException as e:
            with self._claim:
                self._state = LazyState.UNSTARTED
                self._owner = None
                self._future = None
            logger.debug(f"Lazy value {self.key!r} failed to construct: {e}")
            future.set_exception(e)
            raise

        with self._claim:
            self._value = value
            self._state = LazyState.DONE
            self._owner = None
        future.set_result(value)
        return value

    def peek(self) -> Optional[T]:
        """The value if already created, else None; never constructs."""
        return self._value if self._state is LazyState.DONE else None

    def __repr__(self) -> str:
        return f"Lazy(key={self.key!r}, state={self._state.value})"


__all__ = [
    "Lazy",
    "LazyState",
]
