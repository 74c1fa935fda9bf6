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
import inspect
import logging
import time
from typing import Any, Callable, Optional

from challenge_poller import ChallengePoller
from config import ClientOptions
from errors import QuizSessionError, ValidationError
from events import EventChannel, EventKind
from scoring import AnswerResult, Overrides, Question, ScoringEngine, Standing
from session_data import Session

MEDALS = {1: "gold", 2: "silver", 3: "bronze"}


class ChallengePhase(enum.Enum):
    START = "start"
    READY = "ready"
    ANSWER = "answer"
    LEADERBOARD = "leaderboard"
    CLOSE = "close"
    COMPLETE = "complete"


class PhaseScheduler:
    """
    Owns the single outstanding phase timer of a challenge. Arming a new timer cancels the previous one.
    """

    def __init__(self, on_error: Optional[Callable[[BaseException], None]] = None):
        self._handle: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._on_error = on_error

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def arm(self, delay: float, callback: Callable[[], Any]) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        logging.debug(f"Arming phase timer for {delay}s")
        self._handle = loop.call_later(delay, self._fire, callback)

    def cancel(self) -> None:
        if self._handle is not None:
            logging.debug(f"Cancelling phase timer")
            self._handle.cancel()
            self._handle = None

    def _fire(self, callback: Callable[[], Any]) -> None:
        self._handle = None
        if inspect.iscoroutinefunction(callback):
            self._task = asyncio.ensure_future(callback())
            self._task.add_done_callback(self._task_done)
            return
        try:
            callback()
        except Exception as e:
            self._failed(e)

    def _task_done(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            self._failed(task.exception())

    def _failed(self, error: BaseException) -> None:
        logging.exception(error)
        logging.error(f"Phase step failed, challenge halted")
        if self._on_error is not None:
            self._on_error(error)


class ChallengeStateMachine:
    """
    Replays a challenge as if the host were pushing a live game: start, then ready / answer / leaderboard
    for every question, then close and complete. With auto_continue every step is driven by the phase timer.
    """

    def __init__(self, session: Session, poller: ChallengePoller, scoring: ScoringEngine, events: EventChannel,
                 options: ClientOptions, clock: Callable[[], float] = time.time):
        self._session = session
        self._poller = poller
        self._scoring = scoring
        self._events = events
        self._options = options
        self._clock = clock
        self._scheduler = PhaseScheduler(on_error=self._halt)
        self.phase: Optional[ChallengePhase] = None
        self.steps = 0
        self.received_time = 0
        self._answered = False
        self._last_result: Optional[AnswerResult] = None
        self._last_standing: Optional[Standing] = None
        self.correct_count = 0
        self.incorrect_count = 0
        self._finished: Optional[asyncio.Future] = None
        self._stopped = False

    @property
    def questions(self) -> list[Question]:
        return self._poller.questions

    @property
    def question_index(self) -> int:
        return self._scoring.state.question_index

    @property
    def current_question(self) -> Question:
        return self.questions[self.question_index]

    @property
    def finished(self) -> bool:
        return self.phase == ChallengePhase.COMPLETE

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def start(self) -> None:
        if self.phase is not None:
            raise ValidationError("Challenge already started")
        self._finished = asyncio.get_running_loop().create_future()
        if self.question_index >= len(self.questions):
            # every question answered before a reconnect
            self._enter(ChallengePhase.CLOSE)
        else:
            self._enter(ChallengePhase.START)

    async def wait_complete(self) -> None:
        if self._finished is None:
            raise ValidationError("Challenge has not started")
        await asyncio.shield(self._finished)

    def stop(self) -> None:
        self._stopped = True
        self._scheduler.cancel()

    def _halt(self, error: BaseException) -> None:
        if self._finished is not None and not self._finished.done():
            self._finished.set_exception(error)

    def _enter(self, phase: ChallengePhase) -> None:
        self._scheduler.cancel()
        logging.debug(f"Challenge phase {self.phase and self.phase.value} -> {phase.value}")
        self.phase = phase
        {
            ChallengePhase.START: self._on_start,
            ChallengePhase.READY: self._on_ready,
            ChallengePhase.ANSWER: self._on_answer,
            ChallengePhase.LEADERBOARD: self._on_leaderboard,
            ChallengePhase.CLOSE: self._on_close,
            ChallengePhase.COMPLETE: self._on_complete,
        }[phase]()

    def _auto(self, delay: float, callback: Callable[[], Any]) -> None:
        if self._options.auto_continue:
            self._scheduler.arm(delay, callback)

    def _step_to(self, phase: ChallengePhase) -> Callable[[], None]:
        def step():
            self.steps += 1
            self._enter(phase)
        return step

    def advance(self) -> None:
        """manual progression when auto_continue is off"""
        if self.phase is None:
            raise ValidationError("Challenge has not started")
        if self.phase == ChallengePhase.COMPLETE:
            raise ValidationError("Challenge is complete")
        if self.phase == ChallengePhase.ANSWER:
            if self._answered:
                raise ValidationError("Question is settling")
            self._on_timeout()
            return
        self._step_to(self._next_phase())()

    def _next_phase(self) -> ChallengePhase:
        if self.phase == ChallengePhase.START:
            return ChallengePhase.READY
        if self.phase == ChallengePhase.READY:
            return ChallengePhase.ANSWER
        if self.phase == ChallengePhase.LEADERBOARD:
            if self.question_index >= len(self.questions):
                return ChallengePhase.CLOSE
            return ChallengePhase.READY
        return ChallengePhase.COMPLETE

    def _quiz_question_answers(self) -> list[int]:
        return [len(question.choices) for question in self.questions]

    def _question_payload(self, question: Question) -> dict:
        return {
            "questionIndex": self.question_index,
            "gameBlockType": question.kind,
            "gameBlockLayout": question.layout,
            "quizQuestionAnswers": self._quiz_question_answers(),
            "totalGameBlockCount": len(self.questions),
        }

    def answer_window_ms(self, question: Question) -> int:
        if self._poller.question_timer and question.duration_ms:
            return question.duration_ms
        return int(self._options.timings.answer_fallback * 1000)

    def _on_start(self) -> None:
        kahoot = self._poller.kahoot
        self._events.emit(EventKind.QUIZ_START, {
            "name": kahoot.get("title"),
            "quizType": self._poller.progress.get("quizType", "quiz"),
            "questionCount": len(self.questions),
            "quizQuestionAnswers": self._quiz_question_answers(),
        })
        self._auto(self._options.timings.start, self._step_to(ChallengePhase.READY))

    def _on_ready(self) -> None:
        question = self.current_question
        self._answered = False
        self._last_result = None
        payload = self._question_payload(question)
        payload["timeLeft"] = self._options.timings.ready
        self._events.emit(EventKind.QUESTION_READY, payload)
        self._auto(self._options.timings.ready, self._step_to(ChallengePhase.ANSWER))

    def _on_answer(self) -> None:
        question = self.current_question
        self.received_time = self._now_ms()
        payload = self._question_payload(question)
        payload["timeAvailable"] = self.answer_window_ms(question)
        self._events.emit(EventKind.QUESTION_START, payload)
        self._auto(self.answer_window_ms(question) / 1000, self._on_timeout)

    def _on_timeout(self) -> None:
        self.steps += 1
        self._answered = True
        self._scoring.record_unanswered()
        self._last_result = None
        self._last_standing = self._scoring.standing(self._poller.entries)
        logging.debug(f"Question {self.question_index} timed out")
        self._events.emit(EventKind.TIME_OVER, {"questionNumber": self.question_index})
        self._scheduler.arm(self._options.timings.settle, self._end_question)

    async def submit(self, choice: Any, overrides: Optional[Overrides] = None) -> AnswerResult:
        if self.phase != ChallengePhase.ANSWER or self._answered:
            raise ValidationError("Not accepting answers right now")
        # stop the answer timeout before anything else can advance the phase
        self._scheduler.cancel()
        self._answered = True
        question = self.current_question
        saved_state = dataclasses.replace(self._scoring.state)
        try:
            self._scoring.derive_streak(self._poller.entries, self.questions)
            result = self._scoring.score_answer(
                question, choice, self._now_ms() - self.received_time, overrides,
                duration_ms=question.duration_ms or self.answer_window_ms(question),
            )
            await self._poller.submit(self._answers_payload(question, result))
        except Exception:
            self._scoring.state.score = saved_state.score
            self._scoring.state.streak = saved_state.streak
            self._answered = False
            if not self._stopped:
                remaining = self.answer_window_ms(question) - (self._now_ms() - self.received_time)
                self._auto(max(remaining, 0) / 1000, self._on_timeout)
            raise
        self.steps += 1
        if result.evaluation.correct:
            self.correct_count += 1
        else:
            self.incorrect_count += 1
        self._last_result = result
        self._events.emit(EventKind.QUESTION_SUBMIT, {"questionIndex": self.question_index})
        try:
            await self._poller.refresh(self.question_index)
        except QuizSessionError as e:
            # the answer is already recorded, rank from the last snapshot instead
            logging.warning(f"Could not refresh progress after answering: {e!r}")
        self._last_standing = self._scoring.standing(self._poller.entries)
        if not self._stopped:
            self._scheduler.arm(self._options.timings.settle, self._end_question)
        return result

    def _end_question(self) -> None:
        self.steps += 1
        self._events.emit(EventKind.QUESTION_END, self._question_end_payload())
        self._enter(ChallengePhase.LEADERBOARD)

    def _on_leaderboard(self) -> None:
        self._scoring.advance()
        self._auto(self._options.timings.leaderboard, self._step_to(self._next_phase()))

    def _on_close(self) -> None:
        standing = self._scoring.standing(self._poller.entries)
        self._events.emit(EventKind.QUIZ_END, {
            "rank": standing.rank,
            "playerCount": standing.player_count,
            "quizId": self._poller.kahoot.get("uuid"),
            "quizType": self._poller.progress.get("quizType", "quiz"),
            "totalScore": self._scoring.state.score,
            "cid": self._session.client_id,
            "name": self._session.player_name,
            "correctCount": self.correct_count,
            "incorrectCount": self.incorrect_count,
            "isGhost": False,
            "isKicked": False,
        })
        self._events.emit(EventKind.PODIUM, {
            "podiumMedalType": MEDALS.get(standing.rank),
            "rank": standing.rank,
            "totalScore": self._scoring.state.score,
        })
        self._auto(self._options.timings.close, self._step_to(ChallengePhase.COMPLETE))

    def _on_complete(self) -> None:
        logging.info(f"Challenge {self._session.session_id} complete")
        self._events.emit(EventKind.DISCONNECT, "Session Ended")
        if self._finished is not None and not self._finished.done():
            self._finished.set_result(None)

    def _question_end_payload(self) -> dict:
        question = self.current_question
        standing = self._last_standing or Standing(rank=1)
        result = self._last_result
        payload = {
            "questionIndex": self.question_index,
            "type": question.kind,
            "pointsQuestion": question.points_enabled,
            "correctChoices": [index for index, choice in enumerate(question.choices) if choice.correct],
            "totalScore": self._scoring.state.score,
            "rank": standing.rank,
            "nemesis": None if standing.nemesis is None else {
                "name": standing.nemesis,
                "totalScore": standing.nemesis_score,
                "isGhost": False,
            },
            "receivedTime": self.received_time,
            "hasAnswer": result is not None,
        }
        if result is None:
            payload.update({"isCorrect": False, "points": 0, "text": None, "choice": None})
            return payload
        payload.update({
            "isCorrect": result.evaluation.correct,
            "points": result.points + result.streak_bonus,
            "text": result.evaluation.text,
            "choice": result.evaluation.choice_index,
            "pointsData": {
                "questionPoints": result.question_points,
                "totalPointsWithoutBonuses": result.total_score - result.streak_bonus,
                "totalPointsWithBonuses": result.total_score,
                "answerStreakPoints": {
                    "previousStreakLevel": result.previous_streak,
                    "streakLevel": result.streak,
                    "streakBonus": result.streak_bonus,
                },
            },
        })
        return payload

    def _answers_payload(self, question: Question, result: AnswerResult) -> dict:
        width, height = self._options.screen
        challenge = self._poller.challenge
        progress = self._poller.progress
        evaluation = result.evaluation
        return {
            "device": {
                "screen": {"width": width, "height": height},
                "userAgent": self._options.user_agent,
            },
            "gameMode": progress.get("gameMode"),
            "gameOptions": progress.get("gameOptions"),
            "hostOrganizationId": None,
            "kickedPlayers": [],
            "numQuestions": len(self.questions),
            "organizationId": "",
            "question": {
                "answers": [
                    {
                        "bonusPoints": {
                            "answerStreakBonus": result.streak_bonus,
                        },
                        "choiceIndex": evaluation.choice_index,
                        "isCorrect": evaluation.correct,
                        "playerCid": self._session.client_id,
                        "playerId": self._session.player_name,
                        "points": result.points,
                        "reactionTime": result.reaction_time_ms,
                        "receivedTime": self.received_time,
                        "text": evaluation.text,
                    }
                ],
                "choices": question.definition.get("choices"),
                "duration": question.duration_ms,
                "format": question.format,
                "index": self.question_index,
                "lag": 0,
                "layout": question.layout,
                "playerCount": 1,
                "pointsQuestion": question.points_enabled,
                "skipped": False,
                "startTime": 0,
                "title": question.title,
                "type": question.kind,
                "video": question.video,
            },
            "quizId": self._poller.kahoot.get("uuid"),
            "quizMaster": challenge.get("quizMaster"),
            "quizTitle": self._poller.kahoot.get("title"),
            "quizType": progress.get("quizType"),
            "sessionId": self._session.session_id,
            "startTime": progress.get("timestamp"),
        }
