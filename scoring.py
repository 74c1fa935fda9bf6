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

import dataclasses
import logging
import math
import re
from typing import Any, Optional, Sequence

from errors import ValidationError

PUNCTUATION = re.compile(r"[~`!@#$%^&*(){}\[\];:\"'<,.>?/\\|\-_+=]")
EMOJI = re.compile(
    "["
    "\U0001F000-\U0001FAFF"
    "\u2300-\u23FF"
    "\u2600-\u27BF"
    "\u2B00-\u2BFF"
    "\uFE0F\u200D"
    "]"
)

FULL_SCORE_REACTION_MS = 1

QUIZ = "quiz"
JUMBLE = "jumble"
MULTIPLE_SELECT = "multiple_select_quiz"
OPEN_ENDED = "open_ended"
WORD_CLOUD = "word_cloud"


@dataclasses.dataclass(frozen=True)
class Choice:
    answer: str = ""
    correct: bool = False


@dataclasses.dataclass(frozen=True)
class Question:
    kind: str
    choices: tuple[Choice, ...] = ()
    duration_ms: int = 0
    points_enabled: bool = True
    points_multiplier: float = 1
    title: str = ""
    layout: Optional[str] = None
    format: Optional[int] = None
    video: Optional[dict] = None
    definition: dict = dataclasses.field(default_factory=dict, compare=False, repr=False)

    @staticmethod
    def from_definition(definition: dict) -> "Question":
        choices = tuple(
            Choice(answer=str(choice.get("answer", "")), correct=bool(choice.get("correct", False)))
            for choice in (definition.get("choices") or [])
        )
        points = definition.get("points")
        return Question(
            kind=definition["type"],
            choices=choices,
            duration_ms=int(definition.get("time") or 0),
            points_enabled=True if points is None else bool(points),
            points_multiplier=definition.get("pointsMultiplier", 1),
            title=definition.get("question", ""),
            layout=definition.get("layout"),
            format=definition.get("questionFormat"),
            video=definition.get("video"),
            definition=definition,
        )


@dataclasses.dataclass(frozen=True)
class Overrides:
    correct: bool = False
    points: Optional[int] = None


@dataclasses.dataclass(frozen=True)
class Evaluation:
    correct: bool
    text: str
    choice_index: Any
    percent_correct: Optional[float] = None


@dataclasses.dataclass(frozen=True)
class Standing:
    rank: int
    nemesis: Optional[str] = None
    nemesis_score: Optional[int] = None
    player_count: int = 1


@dataclasses.dataclass(frozen=True)
class AnswerResult:
    evaluation: Evaluation
    reaction_time_ms: int
    question_points: int
    points: int
    previous_streak: int
    streak: int
    streak_bonus: int
    total_score: int


def js_round(value: float) -> int:
    """Math.round: halves go towards positive infinity"""
    return math.floor(value + 0.5)


def streak_bonus(streak: int) -> int:
    if streak >= 6:
        return 500
    elif streak <= 1:
        return 0
    return (streak - 1) * 100


def raw_points(reaction_time_ms: float, duration_ms: float, multiplier: float = 1,
               points_enabled: bool = True) -> int:
    """
    Time decayed score of a correct answer: 1000 for an instant answer, 500 at the end of the timer,
    multiplied by the question's points multiplier.
    """
    if not points_enabled:
        return 0
    return js_round((1 - ((reaction_time_ms / duration_ms) / 2)) * 1000) * multiplier


def strip_punctuation(text: str) -> str:
    return PUNCTUATION.sub("", text)


def strip_emoji(text: str) -> str:
    return EMOJI.sub("", text)


def _choice_index(question: Question, value: Any) -> int:
    try:
        index = int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid choice {value!r}") from e
    if not 0 <= index < len(question.choices):
        raise ValidationError(f"Choice {index} out of range for {len(question.choices)} choices")
    return index


def _choice_indexes(question: Question, values: Any) -> list[int]:
    try:
        values = list(values)
    except TypeError as e:
        raise ValidationError(f"Expected a list of choices, got {values!r}") from e
    return [_choice_index(question, value) for value in values]


def _answers(question: Question, indexes: Sequence[int]) -> str:
    return "|".join(question.choices[index].answer for index in indexes)


def evaluate(question: Question, choice: Any, overrides: Optional[Overrides] = None) -> Evaluation:
    """
    Decide whether `choice` answers `question` correctly, the way the service does.

    quiz: `choice` is the index of a choice.
    jumble: `choice` is the submitted order; only the unshuffled order is correct.
    multiple_select_quiz: `choice` is a list of indexes; one wrong pick voids correctness,
        percent_correct is the share of the correct choices that were picked.
    open_ended: `choice` is free text compared to every accepted answer without punctuation or case.
    word_cloud and unknown kinds are always correct.
    """
    kind = question.kind
    percent_correct = None
    if kind == QUIZ:
        index = _choice_index(question, choice)
        correct = question.choices[index].correct
        text = question.choices[index].answer
        choice_index = index
    elif kind == JUMBLE:
        order = _choice_indexes(question, choice)
        correct = order == list(range(len(question.choices)))
        text = _answers(question, order)
        choice_index = -1
    elif kind == MULTIPLE_SELECT:
        # repeated picks count once
        picks = list(dict.fromkeys(_choice_indexes(question, choice)))
        total_correct = sum(1 for option in question.choices if option.correct)
        correct = False
        correct_count = 0
        for index in picks:
            if question.choices[index].correct:
                correct = True
                correct_count += 1
            else:
                correct = False
                break
        percent_correct = correct_count / total_correct if total_correct else 0.0
        text = _answers(question, picks)
        choice_index = -1
    elif kind == OPEN_ENDED:
        text = str(choice)
        submitted = strip_punctuation(text)
        correct = False
        choice_index = -1
        for index, option in enumerate(question.choices):
            candidate = option.answer
            if strip_emoji(candidate):
                correct = (strip_emoji(submitted).casefold()
                           == strip_punctuation(strip_emoji(candidate)).casefold())
            else:
                # emoji only answer
                correct = submitted.casefold() == candidate.casefold()
            if correct:
                choice_index = index
                break
    elif kind == WORD_CLOUD:
        text = str(choice)
        correct = True
        choice_index = -1
    else:
        text = ""
        correct = True
        choice_index = choice or 0

    if overrides is not None and overrides.correct:
        correct = True
    return Evaluation(correct=bool(correct), text=text, choice_index=choice_index, percent_correct=percent_correct)


def compute_standing(metrics: dict, player: str, score: int) -> Standing:
    """
    Rank of `player` in one progress entry: one plus the number of other players at or above `score`.
    The nemesis is the best of those.
    """
    above = {name: value for name, value in metrics.items()
             if name != player and value is not None and value >= score}
    player_count = len(set(metrics) | {player})
    if not above:
        return Standing(rank=1, player_count=player_count)
    nemesis = max(above, key=lambda name: above[name])
    return Standing(rank=len(above) + 1, nemesis=nemesis, nemesis_score=above[nemesis], player_count=player_count)


def answered_entries(entries: Sequence[dict], player: str) -> list[int]:
    """cumulative scores of `player` for the leading entries the player appears in"""
    scores = []
    for entry in entries:
        metrics = entry.get("questionMetrics") or {}
        if player not in metrics:
            break
        scores.append(metrics[player])
    return scores


class ScoringEngine:
    """
    Owns the ScoreState of one session and applies the service's scoring rules to each answer.
    """

    def __init__(self, state, player: str = "", full_score: bool = False):
        self.state = state
        self.player = player
        self.full_score = full_score

    def resume(self, entries: Sequence[dict]) -> int:
        """continue from history when the player answered before; returns the number of answered questions"""
        scores = answered_entries(entries, self.player)
        if scores:
            self.state.question_index = max(self.state.question_index, len(scores))
            self.state.score = scores[-1]
            logging.debug(f"Resuming {self.player} at question {len(scores)} with score {self.state.score}")
        return len(scores)

    def derive_streak(self, entries: Sequence[dict], questions: Sequence[Question]) -> int:
        if self.state.streak_known:
            return self.state.streak
        streak = 0
        previous = 0
        scores = answered_entries(entries, self.player)
        for index, score in enumerate(scores):
            points_question = questions[index].points_enabled if index < len(questions) else True
            if score > previous or not points_question:
                streak += 1
            else:
                streak = 0
            previous = score
        if scores:
            self.state.score = scores[-1]
        self.state.streak = streak
        logging.debug(f"Derived streak {streak} from {len(scores)} history entries")
        return streak

    def reaction_time(self, elapsed_ms: float) -> int:
        if self.full_score:
            return FULL_SCORE_REACTION_MS
        return int(elapsed_ms)

    def score_answer(self, question: Question, choice: Any, elapsed_ms: float,
                     overrides: Optional[Overrides] = None, duration_ms: Optional[float] = None) -> AnswerResult:
        if not self.state.streak_known:
            self.state.streak = 0
        evaluation = evaluate(question, choice, overrides)
        reaction_time_ms = self.reaction_time(elapsed_ms)
        question_points = raw_points(
            reaction_time_ms, duration_ms or question.duration_ms, question.points_multiplier, question.points_enabled
        )
        if overrides is not None and overrides.points:
            question_points = overrides.points

        points = question_points if evaluation.correct else 0
        if evaluation.percent_correct is not None:
            points = js_round(points * evaluation.percent_correct)

        previous_streak = self.state.streak
        self.state.streak = previous_streak + 1 if evaluation.correct else 0
        bonus = streak_bonus(self.state.streak) if question.points_enabled else 0
        self.state.score += points + bonus

        return AnswerResult(
            evaluation=evaluation,
            reaction_time_ms=reaction_time_ms,
            question_points=question_points,
            points=points,
            previous_streak=previous_streak,
            streak=self.state.streak,
            streak_bonus=bonus,
            total_score=self.state.score,
        )

    def record_unanswered(self) -> None:
        self.state.streak = 0

    def advance(self) -> int:
        self.state.question_index += 1
        return self.state.question_index

    def standing(self, entries: Sequence[dict]) -> Standing:
        if not entries:
            return Standing(rank=1)
        metrics = entries[-1].get("questionMetrics") or {}
        return compute_standing(metrics, self.player, self.state.score)
