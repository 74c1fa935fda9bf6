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
import dataclasses
import enum
import json
import logging
import time
from typing import Awaitable, Callable, Optional, Sequence, Union
from urllib.parse import urlparse

from config import ClientOptions
from errors import (HandshakeFailed, ProtocolError, QuizSessionError, RequestTimeout, SessionLocked,
                    TransportError, ValidationError)
from events import EventChannel, EventKind
from message_correlator import MessageCorrelator, TIMEOUT
from session_data import ConnectionState, Session
from transport import Transport, TransportEvent

CONTROLLER = "/service/controller"
PLAYER = "/service/player"
STATUS = "/service/status"
SUBSCRIPTIONS = (CONTROLLER, PLAYER, STATUS)

TEAM_MESSAGE_ID = 18
TWO_FACTOR_MESSAGE_ID = 50
FEEDBACK_MESSAGE_ID = 11
ANSWER_MESSAGE_ID = 45

TWO_FACTOR_DELAY = 0.25
FEEDBACK_DELAY = 0.5

PLAYER_EVENTS = {
    1: EventKind.QUESTION_READY,
    2: EventKind.QUESTION_START,
    3: EventKind.QUIZ_END,
    4: EventKind.TIME_OVER,
    8: EventKind.QUESTION_END,
    9: EventKind.QUIZ_START,
    10: EventKind.DISCONNECT,
    12: EventKind.FEEDBACK,
    13: EventKind.PODIUM,
    14: EventKind.NAME_ACCEPT,
    51: EventKind.TWO_FACTOR_WRONG,
    52: EventKind.TWO_FACTOR_CORRECT,
    53: EventKind.TWO_FACTOR_RESET,
}


class HandshakeState(enum.Enum):
    CONNECTING = "connecting"
    HANDSHAKE_SENT = "handshake-sent"
    JOIN_SENT = "join-sent"
    JOINED = "joined"


@dataclasses.dataclass(frozen=True)
class RetryPolicy:
    """
    Retry an operation `retries` more times, then carry on without it.
    """
    retries: int = 1

    async def run(self, operation: Callable[[], Awaitable[object]], description: str) -> bool:
        for attempt in range(self.retries + 1):
            try:
                await operation()
                return True
            except QuizSessionError as e:
                if attempt < self.retries:
                    logging.warning(f"Failed to {description} ({e!r}). Retrying")
                else:
                    logging.warning(f"Failed to {description} after {attempt + 1} attempts ({e!r}). "
                                    f"Assuming the best.")
        return False


class LiveProtocol:
    """
    Handshake, subscription and join over the duplex channel, and decoding of the host's pushes.
    """

    def __init__(self, session: Session, transport: Transport, events: EventChannel, options: ClientOptions,
                 settings: Optional[dict] = None):
        self._session = session
        self._transport = transport
        self._events = events
        self._options = options
        self._settings = settings or {}
        self._correlator = MessageCorrelator(transport.send, timeout=options.request_timeout)
        self._retry = RetryPolicy(options.team_retries)
        self._host = urlparse(options.api_base).hostname or "kahoot.it"
        self.state = HandshakeState.CONNECTING
        self.bayeux_client_id: Optional[str] = None
        self._join_future: Optional[asyncio.Future] = None
        # last LOCKED status seen before the join completed
        self._locked: Optional[dict] = None
        self._ack = 0
        self._closing = False
        self._disconnect_emitted = False
        self.two_factor_reset_time = 0.0
        self.feedback_time = 0.0
        self.current_question: Optional[dict] = None
        self._background: set[asyncio.Task] = set()
        self._unsubscribe = [
            transport.subscribe(TransportEvent.MESSAGE, self._on_message),
            transport.subscribe(TransportEvent.CLOSE, self._on_close),
        ]

    @property
    def correlator(self) -> MessageCorrelator:
        return self._correlator

    @property
    def settings(self) -> dict:
        return self._settings

    @staticmethod
    def _timesync() -> dict:
        return {"tc": int(time.time() * 1000), "l": 0, "o": 0}

    async def handshake(self) -> dict:
        if self.bayeux_client_id is not None and self._transport.is_open:
            # reconnecting after a rejected name
            return self._settings
        self._session.connection_state = ConnectionState.CONNECTING
        self.state = HandshakeState.CONNECTING
        await self._transport.open()

        self._session.connection_state = ConnectionState.HANDSHAKING
        self.state = HandshakeState.HANDSHAKE_SENT
        logging.debug(f"Sending handshake")
        response = await self._correlator.request({
            "channel": "/meta/handshake",
            "version": "1.0",
            "minimumVersion": "1.0",
            "supportedConnectionTypes": ["websocket", "long-polling", "callback-polling"],
            "advice": {"timeout": 60000, "interval": 0},
            "ext": {"ack": True, "timesync": self._timesync()},
        })
        if response is TIMEOUT:
            raise RequestTimeout("Handshake was not answered")
        if not response.get("successful"):
            raise HandshakeFailed(response)
        self.bayeux_client_id = response.get("clientId")
        logging.debug(f"Handshake complete, client id {self.bayeux_client_id}")

        for subscription in SUBSCRIPTIONS:
            await self._correlator.send({
                "channel": "/meta/subscribe",
                "clientId": self.bayeux_client_id,
                "subscription": subscription,
                "ext": {"timesync": self._timesync()},
            }, expect_response=False)
        await self._connect(first=True)
        return self._settings

    async def _connect(self, first: bool = False) -> None:
        message = {
            "channel": "/meta/connect",
            "connectionType": "websocket",
            "clientId": self.bayeux_client_id,
            "ext": {"ack": self._ack, "timesync": self._timesync()},
        }
        if first:
            message["advice"] = {"timeout": 0}
        self._ack += 1
        await self._correlator.send(message, expect_response=False)

    def _controller_message(self, data: dict) -> dict:
        data.setdefault("gameid", self._session.session_id)
        data.setdefault("host", self._host)
        return {"channel": CONTROLLER, "clientId": self.bayeux_client_id, "data": data, "ext": {}}

    async def join(self, name: str, team: Union[Sequence[str], bool, None] = None) -> dict:
        settings = await self.handshake()
        if self._locked is not None:
            raise SessionLocked(self._locked)
        self._session.player_name = str(name)
        loop = asyncio.get_running_loop()
        self._join_future = loop.create_future()
        width, height = self._options.screen
        self.state = HandshakeState.JOIN_SENT
        await self._correlator.send(self._controller_message({
            "type": "login",
            "name": self._session.player_name,
            "content": json.dumps({
                "device": {
                    "userAgent": self._options.user_agent,
                    "screen": {"width": width, "height": height},
                },
            }),
        }), expect_response=False)

        try:
            login = await asyncio.wait_for(self._join_future, self._options.request_timeout)
        except asyncio.TimeoutError as e:
            raise RequestTimeout("Join was not answered") from e
        finally:
            self._join_future = None

        self._session.client_id = login.get("cid")
        self._session.connection_state = ConnectionState.JOINED
        self._session.settings = settings
        self.state = HandshakeState.JOINED
        logging.info(f"Joined {self._session.session_id} as {self._session.player_name}")

        if settings.get("gameMode") == "team" and team is not False:
            members = list(team or self._options.default_team)
            await self._retry.run(lambda: self._send_team(members), "send team members")

        self._events.emit(EventKind.JOINED, settings, immediate=True)
        if settings.get("twoFactorAuth"):
            self.two_factor_reset_time = loop.time()
            self._events.emit(EventKind.TWO_FACTOR_RESET, None, immediate=True)
        else:
            self.activate()
        return settings

    def activate(self) -> None:
        self._session.connection_state = ConnectionState.ACTIVE
        self._events.release()

    async def join_team(self, team: Optional[Sequence[str]] = None) -> dict:
        if self._settings.get("gameMode") != "team":
            raise ValidationError("The gameMode is not 'team'.")
        return await self._send_team(list(team or self._options.default_team))

    async def _send_team(self, team: list) -> dict:
        return await self._controller_request({
            "type": "message",
            "id": TEAM_MESSAGE_ID,
            "content": json.dumps(team),
        }, "Team members")

    async def _controller_request(self, data: dict, description: str) -> dict:
        response = await self._correlator.request(self._controller_message(data))
        if response is TIMEOUT:
            raise RequestTimeout(f"{description} were not acknowledged")
        if not response.get("successful", True):
            raise ProtocolError(response)
        return response

    async def _wait_since(self, since: float, delay: float) -> None:
        wait = asyncio.get_running_loop().time() - since
        if wait < delay:
            await asyncio.sleep(delay - wait)

    async def answer_two_factor(self, steps: Optional[Sequence[int]] = None) -> dict:
        steps = list(steps if steps is not None else (0, 1, 2, 3))
        await self._wait_since(self.two_factor_reset_time, TWO_FACTOR_DELAY)
        return await self._controller_request({
            "type": "message",
            "id": TWO_FACTOR_MESSAGE_ID,
            "content": json.dumps({"sequence": "".join(str(step) for step in steps)}),
        }, "Two factor steps")

    async def send_feedback(self, fun: int, learn: int, recommend: int, overall: int,
                            total_score: int = 0) -> dict:
        await self._wait_since(self.feedback_time, FEEDBACK_DELAY)
        response = await self._correlator.request(self._controller_message({
            "type": "message",
            "id": FEEDBACK_MESSAGE_ID,
            "content": json.dumps({
                "totalScore": total_score,
                "fun": fun,
                "learning": learn,
                "recommend": recommend,
                "overall": overall,
                "nickname": self._session.player_name,
            }),
        }))
        if response is TIMEOUT or not response.get("successful"):
            raise ProtocolError(None if response is TIMEOUT else response, "Feedback was rejected")
        return response

    async def answer(self, choice) -> dict:
        if self.current_question is None or "questionIndex" not in self.current_question:
            raise ValidationError("No question to answer")
        return await self._controller_request({
            "type": "message",
            "id": ANSWER_MESSAGE_ID,
            "content": json.dumps({
                "type": self.current_question.get("gameBlockType", "quiz"),
                "choice": choice,
                "questionIndex": self.current_question["questionIndex"],
                "meta": {"lag": 0},
            }),
        }, "Answer")

    async def leave(self) -> None:
        self._closing = True
        if self._transport.is_open and self.bayeux_client_id is not None:
            try:
                await self._correlator.send({
                    "channel": "/meta/disconnect",
                    "clientId": self.bayeux_client_id,
                }, expect_response=False)
            except TransportError as e:
                logging.warning(f"Could not send disconnect: {e}")
        self._correlator.cancel_all()
        await self._transport.close()
        for task in list(self._background):
            task.cancel()

    def _spawn(self, coroutine) -> None:
        task = asyncio.ensure_future(coroutine)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logging.exception(task.exception())

    def _on_message(self, packet: dict) -> None:
        channel = packet.get("channel")
        if "successful" in packet and "id" in packet:
            self._correlator.on_response(packet["id"], packet)

        if channel == "/meta/connect":
            if packet.get("successful") and not self._closing:
                self._spawn(self._connect())
        elif channel == STATUS:
            self._on_status(packet.get("data") or {})
        elif channel == CONTROLLER:
            self._on_controller(packet.get("data") or {})
        elif channel == PLAYER:
            self._on_player(packet.get("data") or {})

    def _on_status(self, data: dict) -> None:
        self._events.emit(EventKind.STATUS, data, immediate=True)
        if self.state == HandshakeState.JOINED:
            return
        if data.get("status") != "LOCKED":
            self._locked = None
            return
        self._locked = data
        if self._join_future is not None and not self._join_future.done():
            self._join_future.set_exception(SessionLocked(data))

    def _on_controller(self, data: dict) -> None:
        if data.get("type") != "loginResponse":
            return
        if self._join_future is None or self._join_future.done():
            logging.warning(f"Unexpected loginResponse: {data}")
            return
        if data.get("error"):
            self._join_future.set_exception(ProtocolError(data))
        else:
            self._join_future.set_result(data)

    def _on_player(self, data: dict) -> None:
        kind = PLAYER_EVENTS.get(data.get("id"))
        if kind is None:
            logging.debug(f"Ignoring player message {data.get('id')}")
            return
        content = data.get("content")
        if isinstance(content, str):
            try:
                content = json.loads(content)
            except json.JSONDecodeError:
                logging.warning(f"Malformed content in player message {data.get('id')}")
        loop = asyncio.get_running_loop()
        if kind in (EventKind.QUESTION_READY, EventKind.QUESTION_START) and isinstance(content, dict):
            self.current_question = content
        elif kind == EventKind.TWO_FACTOR_RESET:
            self.two_factor_reset_time = loop.time()
        elif kind == EventKind.FEEDBACK:
            self.feedback_time = loop.time()
        if kind in (EventKind.TWO_FACTOR_RESET, EventKind.TWO_FACTOR_WRONG, EventKind.TWO_FACTOR_CORRECT):
            self._events.emit(kind, content, immediate=True)
            if kind == EventKind.TWO_FACTOR_CORRECT:
                self.activate()
            return
        if kind == EventKind.DISCONNECT:
            self._emit_disconnect(content)
            return
        self._events.emit(kind, content)

    def _emit_disconnect(self, reason) -> None:
        if self._disconnect_emitted:
            return
        self._disconnect_emitted = True
        self._events.emit(EventKind.DISCONNECT, reason, immediate=True)

    def _on_close(self, reason) -> None:
        self._session.connection_state = ConnectionState.CLOSED
        if self._join_future is not None and not self._join_future.done():
            self._join_future.set_exception(TransportError(f"Channel closed during join: {reason}"))
        self._correlator.cancel_all()
        self._emit_disconnect(reason or "Session Ended")
