# SPDX-License-Identifier: Apache-2.0
#
# Copyright (c) 2025 VoxRelay Contributors
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
"""Observable single-writer state cells.

Session state is published through :class:`StateCell` instances. The owning
component keeps the cell and is its only writer; presentation collaborators
receive a :class:`StateView` and can read, subscribe, or iterate changes
asynchronously, but never write.
"""

import asyncio
import logging
import threading
from typing import AsyncIterator, Callable, Generic, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StateCell(Generic[T]):
    """Holds the latest value and notifies subscribers when it changes."""

    def __init__(self, name: str, initial: T):
        self.name = name
        self._value = initial
        self._lock = threading.Lock()
        self._subscribers: List[Callable[[T], None]] = []
        self._view = StateView(self)

    @property
    def value(self) -> T:
        return self._value

    def set(self, value: T) -> bool:
        """Publish ``value``. Returns ``False`` when it equals the current value."""
        with self._lock:
            if value == self._value:
                return False
            self._value = value
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(value)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Subscriber of %s failed: %s", self.name, exc)
        return True

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register ``callback`` for future changes; returns an unsubscribe function.

        Callbacks run synchronously on the writer's thread.
        """
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    async def stream(self) -> AsyncIterator[T]:
        """Yield the current value, then every subsequent change.

        Values written from other threads are marshalled onto the consumer's
        event loop.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def _push(value: T) -> None:
            if loop.is_closed():
                return
            loop.call_soon_threadsafe(queue.put_nowait, value)

        unsubscribe = self.subscribe(_push)
        try:
            yield self._value
            while True:
                yield await queue.get()
        finally:
            unsubscribe()

    def read_only(self) -> "StateView[T]":
        return self._view

    def __repr__(self) -> str:
        return f"StateCell({self.name}={self._value!r})"


class StateView(Generic[T]):
    """Read-only facade over a :class:`StateCell`."""

    def __init__(self, cell: StateCell):
        self._cell = cell

    @property
    def name(self) -> str:
        return self._cell.name

    @property
    def value(self) -> T:
        return self._cell.value

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        return self._cell.subscribe(callback)

    def stream(self) -> AsyncIterator[T]:
        return self._cell.stream()

    def __repr__(self) -> str:
        return f"StateView({self._cell.name}={self._cell.value!r})"
