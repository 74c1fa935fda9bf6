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
import logging
import os
import time
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

import httpx

from challenge_api import ChallengeApi
from challenge_machine import ChallengeStateMachine
from challenge_poller import ChallengePoller
from config import ClientOptions, Config, ConfigurationLoadError
from errors import ChallengeUnavailable, QuizSessionError, ValidationError
from events import EventChannel, EventKind
from live_protocol import LiveProtocol
from logger import setup_logging
from scoring import AnswerResult, Overrides, ScoringEngine
from session_data import ConnectionState, ScoreState, Session, SessionKind
from transport import Transport, TransportEvent
from websocket_transport import WebsocketTransport


@dataclasses.dataclass(frozen=True)
class ResolvedToken:
    token: str
    settings: dict


TokenResolver = Callable[[str], Awaitable[ResolvedToken]]
TransportFactory = Callable[[str, ClientOptions], Transport]


class QuizClient:
    """
    One participation in one game. Live pins go over the duplex channel, challenge pins (leading zero)
    over the challenge poller; both report through the same EventChannel.
    """

    def __init__(self, options: Optional[ClientOptions] = None, token_resolver: Optional[TokenResolver] = None,
                 transport_factory: TransportFactory = WebsocketTransport,
                 http_transport: Optional[httpx.AsyncBaseTransport] = None,
                 clock: Callable[[], float] = time.time):
        self.options = options or ClientOptions()
        self.events = EventChannel(self.options.disabled_events)
        # nothing reaches consumers before the session is active
        self.events.hold()
        self.session: Optional[Session] = None
        self.score_state = ScoreState()
        self._token_resolver = token_resolver
        self._transport_factory = transport_factory
        self._http_transport = http_transport
        self._clock = clock
        self._live: Optional[LiveProtocol] = None
        self._poller: Optional[ChallengePoller] = None
        self._machine: Optional[ChallengeStateMachine] = None
        self._scoring: Optional[ScoringEngine] = None

    def on(self, kind: EventKind, callback: Callable) -> Callable[[], None]:
        return self.events.subscribe(kind, callback)

    def once(self, kind: EventKind) -> asyncio.Future:
        return self.events.once(kind)

    @property
    def machine(self) -> Optional[ChallengeStateMachine]:
        return self._machine

    @property
    def live(self) -> Optional[LiveProtocol]:
        return self._live

    @property
    def is_challenge(self) -> bool:
        return self.session is not None and self.session.kind == SessionKind.CHALLENGE

    async def join(self, pin: Union[str, int], name: str, team: Union[Sequence[str], bool, None] = None) -> dict:
        if self.session is not None and self.session.connection_state not in (
                ConnectionState.DISCONNECTED, ConnectionState.HANDSHAKING):
            raise ValidationError(f"Already in game {self.session.session_id}")
        pin = str(pin)
        if self.session is None:
            self.session = Session(session_id=pin, kind=SessionKind.from_pin(pin))
        if self.session.kind == SessionKind.CHALLENGE:
            return await self._join_challenge(name)
        return await self._join_live(name, team)

    async def _join_live(self, name: str, team) -> dict:
        if self._live is None:
            if self._token_resolver is None:
                raise ValidationError("Live games need a token resolver")
            self.session.connection_state = ConnectionState.CONNECTING
            resolved = await self._token_resolver(self.session.session_id)
            address = f"{self.options.websocket_base}/{self.session.session_id}/{resolved.token}"
            transport = self._transport_factory(address, self.options)
            self._live = LiveProtocol(self.session, transport, self.events, self.options, resolved.settings)
        return await self._live.join(name, team)

    async def _join_challenge(self, name: str) -> dict:
        self.session.connection_state = ConnectionState.CONNECTING
        api = ChallengeApi(self.options, self._http_transport)
        try:
            data = await api.resolve_pin(self.session.session_id)
        except QuizSessionError:
            await api.close()
            raise
        self._poller = ChallengePoller(api, data, self._clock)
        self._poller.subscribe(TransportEvent.READY, lambda _: self.events.emit(EventKind.READY, immediate=True))
        self._poller.subscribe(TransportEvent.QUIZ_END,
                               lambda reason: self.events.emit(EventKind.QUIZ_END, {"reason": reason},
                                                               immediate=True))
        await self._poller.open()
        if self._poller.unavailable_reason is not None:
            self.session.connection_state = ConnectionState.CLOSED
            await self._poller.close()
            raise ChallengeUnavailable(self._poller.unavailable_reason)

        self.session.player_name = str(name)
        self._scoring = ScoringEngine(self.score_state, self.session.player_name, self.options.full_score)
        if self._scoring.resume(self._poller.entries):
            self.session.client_id = self._poller.player_cid(self.session.player_name)
        else:
            joined = await self._poller.join(self.session.player_name)
            self.session.client_id = joined.get("playerCid")

        settings = {
            "gameMode": self._poller.progress.get("gameMode", "normal"),
            "twoFactorAuth": False,
            "namerator": False,
            "challenge": True,
        }
        self.session.settings = settings
        self.session.connection_state = ConnectionState.JOINED
        self.events.emit(EventKind.JOINED, settings, immediate=True)
        self.session.connection_state = ConnectionState.ACTIVE
        self.events.release()
        logging.info(f"Joined challenge {self.session.session_id} as {self.session.player_name}")

        self._machine = ChallengeStateMachine(
            self.session, self._poller, self._scoring, self.events, self.options, self._clock
        )
        self.events.subscribe(EventKind.DISCONNECT, self._on_challenge_complete)
        self._machine.start()
        return settings

    async def _on_challenge_complete(self, _reason) -> None:
        if self.session.connection_state != ConnectionState.CLOSED:
            self.session.connection_state = ConnectionState.CLOSED
            await self._poller.close()

    def _require_active(self) -> None:
        if self.session is None or self.session.connection_state in (
                ConnectionState.DISCONNECTED, ConnectionState.CLOSED):
            raise ValidationError("Not in a game")

    def _require_live(self, operation: str) -> None:
        self._require_active()
        if self.is_challenge:
            raise ValidationError(f"Cannot {operation} in Challenges")

    async def answer(self, choice: Any, overrides: Optional[Overrides] = None) -> Union[AnswerResult, dict]:
        self._require_active()
        if self.is_challenge:
            return await self._machine.submit(choice, overrides)
        return await self._live.answer(choice)

    async def answer_two_factor(self, steps: Optional[Sequence[int]] = None) -> dict:
        self._require_live("answer two factor auth")
        return await self._live.answer_two_factor(steps)

    async def send_feedback(self, fun: int, learn: int, recommend: int, overall: int) -> dict:
        self._require_live("send feedback")
        return await self._live.send_feedback(fun, learn, recommend, overall)

    async def join_team(self, team: Optional[Sequence[str]] = None) -> dict:
        self._require_live("join a team")
        return await self._live.join_team(team)

    def next(self) -> None:
        if not self.is_challenge or self._machine is None:
            raise ValidationError("Only challenges are advanced by the client")
        self._machine.advance()

    async def wait_complete(self) -> None:
        if self._machine is None:
            raise ValidationError("Only challenges complete on their own")
        await self._machine.wait_complete()

    async def leave(self) -> None:
        if self.session is None or self.session.connection_state == ConnectionState.CLOSED:
            return
        if self.is_challenge:
            if self._machine is not None:
                self._machine.stop()
            self.session.connection_state = ConnectionState.CLOSED
            if self._poller is not None:
                await self._poller.close()
            self.events.emit(EventKind.DISCONNECT, "Client left", immediate=True)
        elif self._live is not None:
            await self._live.leave()
        self.session.connection_state = ConnectionState.CLOSED
        await self.events.drain()


async def main():
    logging.info("Starting quiz client ...")

    config = Config(os.environ.get("QUIZ_CLIENT_CONFIG", "./config.toml"))
    pin = os.environ.get("QUIZ_CLIENT_PIN")
    name = os.environ.get("QUIZ_CLIENT_NAME", "player")
    if not pin:
        logging.error("QUIZ_CLIENT_PIN is not set. Exiting")
        return

    try:
        await config.initialize()
    except ConfigurationLoadError:
        logging.error("Could not load configuration. Exiting")
        return

    client = QuizClient(config.options())
    for kind in EventKind:
        client.on(kind, lambda payload, kind=kind: logging.info(f"{kind.value}: {payload}"))
    try:
        await client.join(pin, name)
        if client.is_challenge:
            await client.wait_complete()
    except QuizSessionError as e:
        logging.error(f"Could not play {pin}: {e!r}")
    except asyncio.CancelledError:
        logging.info("Cancelled ...")
    finally:
        await client.leave()


def run():
    setup_logging()
    asyncio.run(main())


if __name__ == "__main__":
    run()
