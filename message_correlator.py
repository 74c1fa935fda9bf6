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
import itertools
import logging
from typing import Any, Awaitable, Callable, Optional

from session_data import PendingRequest

REQUEST_TIMEOUT = 10.0


class _Timeout:

    def __repr__(self):
        return "TIMEOUT"

    def __bool__(self):
        return False


TIMEOUT = _Timeout()


class MessageCorrelator:
    """
    Stamps outbound messages with sequential ids and matches responses back to them.

    A pending request ends exactly once: with the response payload, or with TIMEOUT after `timeout` seconds.
    Responses for ids that are no longer pending are dropped.
    """

    def __init__(self, dispatch: Callable[[list], Awaitable[None]], timeout: float = REQUEST_TIMEOUT,
                 first_id: int = 0):
        self._dispatch = dispatch
        self._timeout = timeout
        self._ids = itertools.count(first_id)
        self._pending: dict[int, PendingRequest] = dict()
        # outcomes not yet collected through await_response
        self._outcomes: dict[int, asyncio.Future] = dict()

    @property
    def pending_ids(self) -> list[int]:
        return list(self._pending)

    def is_pending(self, request_id: int) -> bool:
        return request_id in self._pending

    async def send(self, message: dict, expect_response: bool = True,
                   callback: Optional[Callable[[Any], None]] = None) -> int:
        request_id = next(self._ids)
        message["id"] = str(request_id)
        if expect_response:
            # registered before the wire write so a fast reply always finds it
            self._register(request_id, callback)
        try:
            await self._dispatch([message])
        except Exception:
            self._discard(request_id)
            raise
        return request_id

    async def await_response(self, request_id: int, timeout: Optional[float] = None) -> Any:
        future = self._outcomes.pop(request_id, None)
        if future is None:
            return TIMEOUT
        pending = self._pending.get(request_id)
        if pending is not None and timeout is not None:
            self._rearm(pending, timeout)
        return await future

    async def request(self, message: dict) -> Any:
        request_id = await self.send(message)
        return await self.await_response(request_id)

    def on_response(self, request_id, payload: Any) -> bool:
        try:
            request_id = int(request_id)
        except (TypeError, ValueError):
            return False
        pending = self._pending.pop(request_id, None)
        if pending is None:
            logging.debug(f"Dropping response for unknown or expired id {request_id}")
            return False
        self._settle(pending, payload)
        return True

    def cancel_all(self) -> None:
        for request_id in list(self._pending):
            self._expire(request_id)

    def _register(self, request_id: int, callback) -> None:
        loop = asyncio.get_running_loop()
        pending = PendingRequest(
            id=request_id,
            deadline=loop.time() + self._timeout,
            future=loop.create_future(),
            callback=callback,
        )
        pending.timer = loop.call_later(self._timeout, self._expire, request_id)
        self._pending[request_id] = pending
        if callback is None:
            self._outcomes[request_id] = pending.future

    def _rearm(self, pending: PendingRequest, timeout: float) -> None:
        loop = asyncio.get_running_loop()
        if pending.timer is not None:
            pending.timer.cancel()
        pending.deadline = loop.time() + timeout
        pending.timer = loop.call_later(timeout, self._expire, pending.id)

    def _expire(self, request_id: int) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        logging.warning(f"Request {request_id} timed out")
        self._settle(pending, TIMEOUT)

    def _discard(self, request_id: int) -> None:
        pending = self._pending.pop(request_id, None)
        self._outcomes.pop(request_id, None)
        if pending is not None and pending.timer is not None:
            pending.timer.cancel()

    @staticmethod
    def _settle(pending: PendingRequest, payload: Any) -> None:
        if pending.timer is not None:
            pending.timer.cancel()
        if not pending.future.done():
            pending.future.set_result(payload)
        if pending.callback is not None:
            pending.callback(None if payload is TIMEOUT else payload)
