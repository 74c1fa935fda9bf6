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

import logging
import time
from typing import Callable, Optional

from challenge_api import ChallengeApi
from scoring import Question
from transport import Transport, TransportEvent


class ChallengePoller(Transport):
    """
    Stands in for the duplex channel on challenges. There is nothing to push events,
    so state comes from progress snapshots fetched over HTTP.
    """

    def __init__(self, api: ChallengeApi, challenge_data: dict, clock: Callable[[], float] = time.time):
        super().__init__()
        self._api = api
        self._clock = clock
        self.challenge: dict = challenge_data.get("challenge") or {}
        self.kahoot: dict = challenge_data.get("kahoot") or {}
        self.progress: dict = challenge_data.get("progress") or {}
        self._opened = False
        self._closed = False
        self.unavailable_reason: Optional[str] = None
        self._questions: Optional[list[Question]] = None

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    @property
    def challenge_id(self) -> str:
        return self.challenge["challengeId"]

    @property
    def questions(self) -> list[Question]:
        if self._questions is None:
            self._questions = [Question.from_definition(q) for q in self.kahoot.get("questions", [])]
        return self._questions

    @property
    def entries(self) -> list[dict]:
        return (self.progress.get("playerProgress") or {}).get("playerProgressEntries") or []

    @property
    def question_timer(self) -> bool:
        return bool((self.challenge.get("game_options") or {}).get("question_timer", True))

    async def open(self) -> None:
        # availability is decided once, on the first snapshot
        if self._opened:
            return
        await self.refresh()
        self._opened = True
        self._publish(TransportEvent.OPEN)
        self.unavailable_reason = self._availability()
        if self.unavailable_reason is not None:
            logging.info(f"Challenge {self.challenge.get('challengeId')} is {self.unavailable_reason}")
            self._publish(TransportEvent.QUIZ_END, self.unavailable_reason)
        else:
            self._publish(TransportEvent.READY)

    async def refresh(self, up_to_question: Optional[int] = None) -> dict:
        snapshot = await self._api.progress(self.challenge_id, up_to_question)
        self.challenge = snapshot.get("challenge") or self.challenge
        if snapshot.get("kahoot"):
            self.kahoot = snapshot["kahoot"]
            self._questions = None
        self.progress = snapshot.get("progress") or self.progress
        return snapshot

    def _availability(self) -> Optional[str]:
        end_time = self.challenge.get("endTime")
        if end_time and end_time <= self._clock() * 1000:
            return "ended"
        max_players = self.challenge.get("maxPlayers")
        if max_players and len(self.challenge.get("challengeUsersList") or []) >= max_players:
            return "full"
        return None

    def player_cid(self, nickname: str) -> Optional[str]:
        for user in self.challenge.get("challengeUsersList") or []:
            if user.get("nickname") == nickname:
                return user.get("playerCId")
        return None

    async def join(self, nickname: str) -> dict:
        data = await self._api.join(self.challenge_id, nickname)
        logging.debug(f"Joined challenge {self.challenge_id} as {nickname}")
        return data

    async def submit(self, payload: dict) -> None:
        await self._api.submit_answers(self.challenge_id, payload)

    async def send(self, message) -> None:
        # challenges are answer driven, live commands have no HTTP counterpart
        logging.debug(f"Challenge transport ignoring {message}")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._api.close()
        self._publish(TransportEvent.CLOSE, "Session Ended")
