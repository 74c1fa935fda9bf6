"""
QuizLink
Copyright (C) 2024 thiccaxe

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU Affero General Public License as published
by the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU Affero General Public License for more details.

You should have received a copy of the GNU Affero General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import asyncio
import collections
import enum
import inspect
import logging
from typing import Any, Callable, Iterable


class EventKind(enum.Enum):
    READY = "ready"
    JOINED = "joined"
    STATUS = "status"
    QUIZ_START = "quizStart"
    QUESTION_READY = "questionReady"
    QUESTION_START = "questionStart"
    QUESTION_SUBMIT = "questionSubmit"
    TIME_OVER = "timeOver"
    QUESTION_END = "questionEnd"
    QUIZ_END = "quizEnd"
    PODIUM = "podium"
    FEEDBACK = "feedback"
    NAME_ACCEPT = "nameAccept"
    TWO_FACTOR_RESET = "twoFactorReset"
    TWO_FACTOR_WRONG = "twoFactorWrong"
    TWO_FACTOR_CORRECT = "twoFactorCorrect"
    DISCONNECT = "disconnect"


class EventChannel:
    """
    Callback registration table keyed by EventKind.

    Each emitted event is delivered once to every callback subscribed at emission time, in emission order.
    While held, events are queued instead and delivered in order on release.
    """

    def __init__(self, disabled: Iterable[str] = ()):
        self._handlers: dict[EventKind, list[Callable]] = collections.defaultdict(list)
        self._disabled = frozenset(disabled)
        self._held = False
        self._queue: collections.deque[tuple[EventKind, Any]] = collections.deque()
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, kind: EventKind, callback: Callable) -> Callable[[], None]:
        self._handlers[kind].append(callback)

        def unsubscribe():
            if callback in self._handlers[kind]:
                self._handlers[kind].remove(callback)

        return unsubscribe

    def once(self, kind: EventKind) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()

        def resolve(payload):
            unsubscribe()
            if not future.done():
                future.set_result(payload)

        unsubscribe = self.subscribe(kind, resolve)
        return future

    def hold(self) -> None:
        self._held = True

    def release(self) -> None:
        self._held = False
        while self._queue and not self._held:
            kind, payload = self._queue.popleft()
            self._deliver(kind, payload)

    @property
    def held(self) -> bool:
        return self._held

    def emit(self, kind: EventKind, payload: Any = None, immediate: bool = False) -> None:
        if kind.value in self._disabled:
            logging.debug(f"Dropping disabled event {kind.value}")
            return
        if self._held and not immediate:
            self._queue.append((kind, payload))
            return
        self._deliver(kind, payload)

    def _deliver(self, kind: EventKind, payload: Any) -> None:
        logging.debug(f"Event {kind.value}")
        for handler in list(self._handlers[kind]):
            if inspect.iscoroutinefunction(handler):
                task = asyncio.ensure_future(handler(payload))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            else:
                handler(payload)

    async def drain(self) -> None:
        """wait for coroutine handlers still running"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
