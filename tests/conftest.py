import asyncio
import json
import os
import sys

import httpx
import pytest

# Ensure the repository root (holding the modules) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from config import ClientOptions, ChallengeTimings
from transport import Transport, TransportEvent

CONTROLLER = "/service/controller"


class FakeTransport(Transport):
    """In-memory duplex channel; `responder` plays the server."""

    def __init__(self, responder=None):
        super().__init__()
        self.responder = responder
        self.sent = []
        self._open = False
        self.closed = False

    @property
    def is_open(self):
        return self._open

    async def open(self):
        self._open = True
        self._publish(TransportEvent.OPEN)

    async def send(self, message):
        self.sent.extend(message)
        if self.responder is not None:
            loop = asyncio.get_running_loop()
            for reply in self.responder(message[0]) or []:
                loop.call_soon(self._publish, TransportEvent.MESSAGE, reply)

    async def close(self):
        self._open = False
        self.closed = True
        self._publish(TransportEvent.CLOSE, "closed")

    def push(self, packet):
        self._publish(TransportEvent.MESSAGE, packet)

    def sent_on(self, channel):
        return [message for message in self.sent if message["channel"] == channel]

    def controller_sent(self, message_id):
        return [message for message in self.sent_on(CONTROLLER) if message["data"].get("id") == message_id]


class FakeLiveServer:
    """Answers handshakes, logins and controller publishes the way the live service does."""

    def __init__(self, handshake_ok=True, login_replies=None, ignored_ids=(), rejected_ids=(), before_handshake=()):
        self.handshake_ok = handshake_ok
        self.before_handshake = list(before_handshake)
        self.login_replies = login_replies if login_replies is not None else [
            {"channel": CONTROLLER, "data": {"type": "loginResponse", "cid": "42"}}
        ]
        self.ignored_ids = set(ignored_ids)
        self.rejected_ids = set(rejected_ids)

    def __call__(self, message):
        channel = message["channel"]
        if channel == "/meta/handshake":
            return self.before_handshake + [{"channel": channel, "id": message["id"], "successful": self.handshake_ok,
                                             "clientId": "bayeux-1"}]
        if channel == CONTROLLER:
            data = message["data"]
            if data["type"] == "login":
                return self.login_replies
            if data.get("id") in self.ignored_ids:
                return []
            return [{"channel": CONTROLLER, "id": message["id"],
                     "successful": data.get("id") not in self.rejected_ids}]
        return []


@pytest.fixture()
def fast_options():
    return ClientOptions(
        request_timeout=0.05,
        timings=ChallengeTimings(start=0, ready=0, leaderboard=0, close=0, answer_fallback=0.02, settle=0),
    )


class FakeClock:

    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture()
def clock():
    return FakeClock()


def make_question(kind="quiz", time=10000, correct=(0,), count=2, points=True, **extra):
    question = {
        "type": kind,
        "question": f"{kind} question",
        "time": time,
        "points": points,
        "pointsMultiplier": 1,
        "layout": "CLASSIC",
        "choices": [{"answer": chr(ord("A") + index), "correct": index in correct} for index in range(count)],
    }
    question.update(extra)
    return question


class FakeChallengeService:
    """httpx handler for the challenge endpoints"""

    def __init__(self, clock, questions=None, users=(), max_players=50, end_time=None, entries=None,
                 question_timer=True):
        self.challenge = {
            "challengeId": "c1",
            "quizMaster": "host",
            "endTime": end_time if end_time is not None else int((clock() + 3600) * 1000),
            "maxPlayers": max_players,
            "challengeUsersList": list(users),
            "game_options": {"question_timer": question_timer},
        }
        self.kahoot = {
            "uuid": "quiz-uuid",
            "title": "Capitals",
            "questions": questions if questions is not None else [make_question(), make_question()],
        }
        self.entries = list(entries or [])
        self.after_answer_entries = None
        self.requests = []
        self.answers = []
        self.failing_answers = 0
        self.failing_progress = 0
        self.progress_fails_after_answer = False

    @property
    def transport(self):
        return httpx.MockTransport(self.handler)

    def progress(self):
        return {
            "challenge": self.challenge,
            "kahoot": self.kahoot,
            "progress": {
                "gameMode": "normal",
                "gameOptions": {},
                "quizType": "quiz",
                "timestamp": 1234,
                "playerProgress": {"playerProgressEntries": self.entries},
            },
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/rest/challenges/pin/0123":
            return httpx.Response(200, json={"challenge": self.challenge, "kahoot": self.kahoot})
        if path == "/rest/challenges/c1/progress":
            if self.failing_progress:
                self.failing_progress -= 1
                return httpx.Response(503, json={"error": "busy"})
            if self.progress_fails_after_answer and self.answers:
                return httpx.Response(500, json={"error": "boom"})
            return httpx.Response(200, json=self.progress())
        if path == "/rest/challenges/c1/join/":
            return httpx.Response(200, json={"playerCid": "cid-7"})
        if path == "/rest/challenges/c1/answers":
            if self.failing_answers:
                self.failing_answers -= 1
                return httpx.Response(500, json={"error": "unavailable"})
            self.answers.append(json.loads(request.content))
            if self.after_answer_entries is not None:
                self.entries = self.after_answer_entries
            return httpx.Response(200)
        return httpx.Response(404, json={"error": "NOT_FOUND"})

    def requests_to(self, suffix):
        return [request for request in self.requests if request.url.path.endswith(suffix)]
