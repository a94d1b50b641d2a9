"""
Configuration pytest et fixtures partagées.

- Ajoute `src/` au sys.path (les modules du gate s'importent en absolu : core, db, events, views)
- Fournit un hôte factice, une horloge contrôlable et un générateur de captchas déterministe
"""
import itertools
import sys
from pathlib import Path

import pytest

_SRC = Path(__file__).resolve().parent.parent / "src"
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

from core.config import RoomConfig  # noqa: E402
from core.errors import HostError, RoundTripTimeout  # noqa: E402
from core.gate.challenge import ChallengeIssuer  # noqa: E402
from core.gate.manager import AdmissionGate  # noqa: E402
from core.gate.models import Snapshot  # noqa: E402

SERVER_PK = "ab" * 32
SERVER = {"pk": SERVER_PK}
NOW = 1_700_000_000.0


class FakeHost:
    """Hôte en mémoire : répond immédiatement aux requêtes, enregistre tout.

    `on_request[method]` est appelé une seule fois pendant la prochaine requête `method`.
    """

    def __init__(self):
        self.requests = []
        self.notifications = []
        self.replies = []
        self.handlers = {}
        self.fail = {}
        self.on_request = {}
        self._file_ids = itertools.count(100)
        self._message_ids = itertools.count(500)

    def event(self, name):
        def decorator(func):
            self.handlers[name] = func
            return func
        return decorator

    async def request(self, method, **fields):
        self.requests.append((method, fields))
        hook = self.on_request.pop(method, None)
        if hook is not None:
            hook(fields)
        error = self.fail.get(method)
        if error is not None:
            raise error
        if method == "uploadFile":
            return {"ok": True, "fileId": next(self._file_ids)}
        if method == "sendMessage":
            return {"ok": True, "messageId": next(self._message_ids)}
        return {"ok": True}

    async def notify(self, method, **fields):
        self.notifications.append((method, fields))

    async def reply(self, ref, **fields):
        self.replies.append((ref, fields))

    def calls(self, method):
        return [f for m, f in self.requests + self.notifications if m == method]


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def sequential_renderer():
    answers = itertools.cycle(["ABCD", "EFGH", "JKMN", "PQRS"])

    def render(difficult):
        answer = next(answers)
        return b"\x89PNG-fake-" + answer.encode(), answer

    return render


def user(uid, handle=None, **flags):
    data = {"id": uid, "session_id": handle or f"05{uid:064x}"}
    data.update(flags)
    return data


def room(token):
    return {"token": token, "id": 1}


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rooms():
    return {
        "open": RoomConfig(message="Bienvenue !"),
        "quiet": RoomConfig(),
        "guarded": RoomConfig(message="Résous le captcha", captcha=True, verified_message="Merci, tu es vérifié"),
        "hard": RoomConfig(captcha=True, difficult=True),
    }


@pytest.fixture
def make_gate(host, clock, rooms):
    def factory(snapshot=None, room_configs=None):
        gate = AdmissionGate(
            host,
            room_configs or rooms,
            issuer=ChallengeIssuer(host, sequential_renderer()),
            clock=clock,
            send_delay=0,
        )
        gate.load(snapshot or Snapshot())
        return gate
    return factory


__all__ = ["FakeHost", "FakeClock", "HostError", "RoundTripTimeout", "SERVER", "SERVER_PK", "NOW", "user", "room"]
