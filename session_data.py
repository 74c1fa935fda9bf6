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
from typing import Callable, Optional


class SessionKind(enum.Enum):
    LIVE = "live"
    CHALLENGE = "challenge"

    @staticmethod
    def from_pin(pin: str) -> "SessionKind":
        # challenge pins always start with a zero
        return SessionKind.CHALLENGE if str(pin).startswith("0") else SessionKind.LIVE


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    JOINED = "joined"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclasses.dataclass
class Session:
    session_id: str  # game pin
    kind: SessionKind
    player_name: str = ""
    client_id: Optional[str] = None  # assigned by the server on join
    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    settings: dict = dataclasses.field(default_factory=dict)


@dataclasses.dataclass
class PendingRequest:
    id: int
    deadline: float  # loop time
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = None
    callback: Optional[Callable[[object], None]] = None


@dataclasses.dataclass
class ScoreState:
    score: int = 0
    streak: int = -1  # -1: not derived from history yet
    question_index: int = 0

    @property
    def streak_known(self) -> bool:
        return self.streak != -1
