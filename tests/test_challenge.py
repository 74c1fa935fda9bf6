import asyncio

import httpx
import pytest

from challenge_api import ChallengeApi
from challenge_machine import ChallengePhase, PhaseScheduler
from challenge_poller import ChallengePoller
from conftest import FakeChallengeService, make_question
from errors import ChallengeUnavailable, ProtocolError, ValidationError
from events import EventKind
from quiz_client import QuizClient
from session_data import ConnectionState, SessionKind
from transport import TransportEvent


def record(client, *kinds):
    seen = []
    for kind in kinds:
        client.on(kind, lambda payload, kind=kind: seen.append((kind, payload)))
    return seen


def kinds_of(seen, kind):
    return [payload for seen_kind, payload in seen if seen_kind == kind]


async def test_challenge_runs_to_completion_on_timers(fast_options, clock):
    service = FakeChallengeService(clock, questions=[make_question(time=20), make_question(time=20)])
    client = QuizClient(fast_options, http_transport=service.transport, clock=clock)
    seen = record(client, *EventKind)

    await client.join("0123", "me")
    assert client.session.kind == SessionKind.CHALLENGE
    assert client.session.client_id == "cid-7"
    await asyncio.wait_for(client.wait_complete(), 2)
    await client.events.drain()

    questions = 2
    assert client.machine.steps == 4 * questions + 2
    assert client.machine.phase == ChallengePhase.COMPLETE
    assert len(kinds_of(seen, EventKind.DISCONNECT)) == 1
    assert len(kinds_of(seen, EventKind.QUESTION_READY)) == questions
    assert len(kinds_of(seen, EventKind.TIME_OVER)) == questions
    quiz_start = kinds_of(seen, EventKind.QUIZ_START)[0]
    assert quiz_start["questionCount"] == 2
    assert quiz_start["quizQuestionAnswers"] == [2, 2]
    assert [kind for kind, _ in seen][:3] == [EventKind.READY, EventKind.JOINED, EventKind.QUIZ_START]
    assert kinds_of(seen, EventKind.QUIZ_END)[0]["quizId"] == "quiz-uuid"
    assert client.score_state.streak == 0
    assert client.session.connection_state == ConnectionState.CLOSED
    assert service.answers == []


async def test_manual_answer_is_scored_and_submitted(fast_options, clock):
    options = fast_options.with_changes(auto_continue=False)
    service = FakeChallengeService(clock, questions=[make_question(), make_question(correct=(1,))])
    service.after_answer_entries = [{"questionMetrics": {"me": 900, "alice": 950, "bob": 100}}]
    client = QuizClient(options, http_transport=service.transport, clock=clock)
    seen = record(client, EventKind.QUESTION_END, EventKind.QUESTION_SUBMIT, EventKind.QUIZ_END, EventKind.PODIUM)

    await client.join("0123", "me")
    assert client.machine.phase == ChallengePhase.START
    client.next()
    client.next()
    assert client.machine.phase == ChallengePhase.ANSWER
    clock.advance(2.0)
    result = await client.answer(0)
    assert result.points == 900
    assert result.total_score == 900

    answer = service.answers[0]
    submitted = answer["question"]["answers"][0]
    assert submitted["isCorrect"] is True
    assert submitted["points"] == 900
    assert submitted["reactionTime"] == 2000
    assert submitted["choiceIndex"] == 0
    assert submitted["playerCid"] == "cid-7"
    assert submitted["bonusPoints"]["answerStreakBonus"] == 0
    assert answer["sessionId"] == "0123"
    assert answer["quizId"] == "quiz-uuid"
    assert answer["numQuestions"] == 2
    assert service.requests_to("/progress")[-1].url.params["upToQuestion"] == "0"

    with pytest.raises(ValidationError):
        await client.answer(0)

    await asyncio.sleep(0.01)
    assert client.machine.phase == ChallengePhase.LEADERBOARD
    question_end = kinds_of(seen, EventKind.QUESTION_END)[0]
    assert question_end["isCorrect"] is True
    assert question_end["rank"] == 2
    assert question_end["nemesis"]["name"] == "alice"
    assert len(kinds_of(seen, EventKind.QUESTION_SUBMIT)) == 1

    client.next()
    client.next()
    result = await client.answer(0)
    assert not result.evaluation.correct
    assert client.score_state.streak == 0
    await asyncio.sleep(0.01)
    client.next()
    assert client.machine.phase == ChallengePhase.CLOSE
    assert kinds_of(seen, EventKind.QUIZ_END)[0]["correctCount"] == 1
    assert kinds_of(seen, EventKind.PODIUM)[0]["rank"] == 2
    client.next()
    assert client.machine.phase == ChallengePhase.COMPLETE
    with pytest.raises(ValidationError):
        client.next()


async def test_submission_cancels_answer_timeout(fast_options, clock):
    service = FakeChallengeService(clock, questions=[make_question(time=300), make_question(time=20)])
    client = QuizClient(fast_options, http_transport=service.transport, clock=clock)
    seen = record(client, EventKind.TIME_OVER, EventKind.QUESTION_END)
    started = asyncio.get_running_loop().create_future()
    client.on(EventKind.QUESTION_START, lambda payload: started.done() or started.set_result(payload))

    await client.join("0123", "me")
    await asyncio.wait_for(started, 1)
    await client.answer(0)
    await asyncio.wait_for(client.wait_complete(), 2)

    assert len(service.answers) == 1
    assert len(kinds_of(seen, EventKind.TIME_OVER)) == 1
    assert len(kinds_of(seen, EventKind.QUESTION_END)) == 2
    assert client.machine.steps == 10


async def test_fallback_timer_when_question_timer_disabled(fast_options, clock):
    service = FakeChallengeService(clock, questions=[make_question(time=60000)], question_timer=False)
    client = QuizClient(fast_options, http_transport=service.transport, clock=clock)
    await client.join("0123", "me")
    assert client.machine.answer_window_ms(client.machine.questions[0]) == 20
    await asyncio.wait_for(client.wait_complete(), 2)


@pytest.mark.parametrize("overrides,reason", [
    ({"end_time": 1}, "ended"),
    ({"max_players": 1, "users": [{"nickname": "x", "playerCId": "1"}]}, "full"),
])
async def test_unavailable_challenge(fast_options, clock, overrides, reason):
    service = FakeChallengeService(clock, **overrides)
    client = QuizClient(fast_options, http_transport=service.transport, clock=clock)
    seen = record(client, EventKind.QUIZ_END, EventKind.READY)
    with pytest.raises(ChallengeUnavailable) as info:
        await client.join("0123", "me")
    assert info.value.reason == reason
    assert kinds_of(seen, EventKind.QUIZ_END) == [{"reason": reason}]
    assert kinds_of(seen, EventKind.READY) == []
    assert service.requests_to("/join/") == []
    assert client.session.connection_state == ConnectionState.CLOSED


async def test_rejoin_resumes_from_history(fast_options, clock):
    options = fast_options.with_changes(auto_continue=False)
    entries = [{"questionMetrics": {"me": 800}}, {"questionMetrics": {"me": 1700}}]
    service = FakeChallengeService(
        clock,
        questions=[make_question(), make_question(), make_question()],
        users=[{"nickname": "me", "playerCId": "cid-old"}],
        entries=entries,
    )
    client = QuizClient(options, http_transport=service.transport, clock=clock)
    await client.join("0123", "me")

    assert service.requests_to("/join/") == []
    assert client.session.client_id == "cid-old"
    assert client.machine.question_index == 2
    client.next()
    client.next()
    result = await client.answer(0)
    assert result.previous_streak == 2
    assert result.streak == 3
    assert result.streak_bonus == 200
    assert result.total_score == 1700 + 1000 + 200


async def test_live_only_operations_fail_fast(fast_options, clock):
    options = fast_options.with_changes(auto_continue=False)
    service = FakeChallengeService(clock)
    client = QuizClient(options, http_transport=service.transport, clock=clock)
    await client.join("0123", "me")
    requests = len(service.requests)
    with pytest.raises(ValidationError):
        await client.send_feedback(5, 1, 1, 1)
    with pytest.raises(ValidationError):
        await client.answer_two_factor()
    with pytest.raises(ValidationError):
        await client.join_team(["a"])
    with pytest.raises(ValidationError):
        await client.answer(0)
    assert len(service.requests) == requests
    await client.leave()
    assert client.session.connection_state == ConnectionState.CLOSED


async def test_scheduler_keeps_one_timer():
    fired = []
    scheduler = PhaseScheduler()
    scheduler.arm(0.01, lambda: fired.append("first"))
    scheduler.arm(0.01, lambda: fired.append("second"))
    await asyncio.sleep(0.03)
    assert fired == ["second"]
    scheduler.arm(0.01, lambda: fired.append("third"))
    scheduler.cancel()
    await asyncio.sleep(0.02)
    assert fired == ["second"]
    assert not scheduler.pending


async def start_first_question(client):
    await client.join("0123", "me")
    client.next()
    client.next()
    assert client.machine.phase == ChallengePhase.ANSWER


async def test_rejected_answer_post_restores_score(fast_options, clock):
    options = fast_options.with_changes(auto_continue=False)
    service = FakeChallengeService(clock)
    service.failing_answers = 1
    client = QuizClient(options, http_transport=service.transport, clock=clock)
    await start_first_question(client)

    with pytest.raises(ProtocolError):
        await client.answer(0)
    assert client.score_state.score == 0
    assert client.machine.correct_count == 0
    assert client.machine.phase == ChallengePhase.ANSWER
    assert service.answers == []

    result = await client.answer(0)
    assert result.total_score == 1000
    assert client.score_state.score == 1000
    assert len(service.answers) == 1


@pytest.mark.parametrize("choice", [-1, 2, "x"])
async def test_invalid_choice_is_rejected_before_posting(fast_options, clock, choice):
    options = fast_options.with_changes(auto_continue=False)
    service = FakeChallengeService(clock, questions=[make_question(correct=(1,))])
    client = QuizClient(options, http_transport=service.transport, clock=clock)
    await start_first_question(client)

    with pytest.raises(ValidationError):
        await client.answer(choice)
    assert service.answers == []
    assert client.score_state.score == 0

    result = await client.answer(1)
    assert result.evaluation.correct


async def test_answer_stands_when_progress_refresh_fails(fast_options, clock):
    options = fast_options.with_changes(auto_continue=False)
    service = FakeChallengeService(clock)
    service.progress_fails_after_answer = True
    client = QuizClient(options, http_transport=service.transport, clock=clock)
    seen = record(client, EventKind.QUESTION_END)
    await start_first_question(client)

    result = await client.answer(0)
    assert result.total_score == 1000
    assert len(service.answers) == 1

    await asyncio.sleep(0.01)
    assert client.machine.phase == ChallengePhase.LEADERBOARD
    assert kinds_of(seen, EventKind.QUESTION_END)[0]["rank"] == 1


async def test_stopped_machine_stays_put_after_inflight_answer(fast_options, clock):
    options = fast_options.with_changes(auto_continue=False)
    service = FakeChallengeService(clock)
    gate = asyncio.Event()

    async def slow_answers(request):
        if request.url.path.endswith("/answers"):
            await gate.wait()
        return service.handler(request)

    client = QuizClient(options, http_transport=httpx.MockTransport(slow_answers), clock=clock)
    seen = record(client, EventKind.QUESTION_END)
    await start_first_question(client)

    answering = asyncio.create_task(client.answer(0))
    await asyncio.sleep(0.01)
    client.machine.stop()
    gate.set()
    await answering

    await asyncio.sleep(0.02)
    assert client.machine.phase == ChallengePhase.ANSWER
    assert kinds_of(seen, EventKind.QUESTION_END) == []


async def test_poller_open_retries_after_failed_snapshot(fast_options, clock):
    service = FakeChallengeService(clock)
    service.failing_progress = 1
    api = ChallengeApi(fast_options, service.transport)
    poller = ChallengePoller(api, {"challenge": service.challenge, "kahoot": service.kahoot}, clock)
    ready = []
    poller.subscribe(TransportEvent.READY, ready.append)

    with pytest.raises(ProtocolError):
        await poller.open()
    assert not poller.is_open
    assert ready == []

    await poller.open()
    assert poller.is_open
    assert ready == [None]
    await poller.close()
