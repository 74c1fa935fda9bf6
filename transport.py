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

import abc
import collections
import enum
import logging
from typing import Any, Callable


class TransportEvent(enum.Enum):
    OPEN = "open"
    MESSAGE = "message"
    CLOSE = "close"
    READY = "ready"  # challenge open for answers
    QUIZ_END = "quizEnd"  # challenge ended or full


class Transport(abc.ABC):
    """
    Capability interface shared by the duplex channel and the challenge poller.
    Consumers only open, send, subscribe and close.
    """

    def __init__(self):
        self._subscribers: dict[TransportEvent, list[Callable[[Any], None]]] = collections.defaultdict(list)

    @abc.abstractmethod
    async def open(self) -> None: ...

    @abc.abstractmethod
    async def send(self, message: Any) -> None: ...

    @abc.abstractmethod
    async def close(self) -> None: ...

    @property
    @abc.abstractmethod
    def is_open(self) -> bool: ...

    def subscribe(self, kind: TransportEvent, callback: Callable[[Any], None]) -> Callable[[], None]:
        self._subscribers[kind].append(callback)

        def unsubscribe():
            if callback in self._subscribers[kind]:
                self._subscribers[kind].remove(callback)

        return unsubscribe

    def _publish(self, kind: TransportEvent, payload: Any = None) -> None:
        for callback in list(self._subscribers[kind]):
            try:
                callback(payload)
            except Exception as e:
                # keep reading after a faulty subscriber
                logging.exception(e)
                logging.warning(f"Subscriber for {kind.value} failed")
