from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

# Au-delà de 30 jours, un captcha sans réponse est réémis à la prochaine apparition
CHALLENGE_TTL = 60 * 60 * 24 * 30


@dataclass
class PendingChallenge:
    """Captcha en attente pour un utilisateur (clé : son handle dans la room).

    answer=None -> utilisateur vu sans captcha ("soft-verified")
    message_id  -> message du captcha, à retirer lorsqu'il est remplacé ou résolu
    """

    answer: Optional[str] = None
    issued_at: Optional[float] = None
    message_id: Optional[int] = None

    def is_stale(self, now: float) -> bool:
        if not self.answer or self.issued_at is None:
            return False
        return now - self.issued_at > CHALLENGE_TTL

    def matches(self, text: Optional[str]) -> bool:
        if not self.answer or text is None:
            return False
        return text.strip().casefold() == self.answer.casefold()

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.answer is not None:
            out["answer"] = self.answer
        if self.issued_at is not None:
            out["issued_at"] = self.issued_at
        if self.message_id is not None:
            out["message_id"] = self.message_id
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingChallenge":
        answer = data.get("answer", data.get("captchaAnswer"))
        issued_at = data.get("issued_at")
        if issued_at is None and data.get("captchaSentAt") is not None:
            # ancien format : millisecondes
            issued_at = data["captchaSentAt"] / 1000
        message_id = data.get("message_id")
        return cls(
            answer=str(answer) if answer is not None else None,
            issued_at=float(issued_at) if issued_at is not None else None,
            message_id=int(message_id) if message_id is not None else None,
        )


@dataclass
class RoomTrust:
    verified: Set[int] = field(default_factory=set)
    pending: Dict[str, PendingChallenge] = field(default_factory=dict)


@dataclass
class Snapshot:
    """Forme durable de l'état de toutes les rooms.

    verified : token -> ids vérifiés
    sessions : token -> graine hex de l'identité de la room
    pending  : token -> handle -> captcha (clé `db` dans le JSON)
    """

    verified: Dict[str, List[int]] = field(default_factory=dict)
    sessions: Dict[str, str] = field(default_factory=dict)
    pending: Dict[str, Dict[str, PendingChallenge]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verified": {room: sorted(ids) for room, ids in self.verified.items()},
            "sessions": dict(self.sessions),
            "db": {
                room: {handle: rec.to_dict() for handle, rec in records.items()}
                for room, records in self.pending.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Snapshot":
        data = data or {}
        verified = {
            str(room): [int(uid) for uid in (ids or [])]
            for room, ids in (data.get("verified") or {}).items()
        }
        sessions = {str(room): str(seed) for room, seed in (data.get("sessions") or {}).items()}
        pending = {
            str(room): {str(h): PendingChallenge.from_dict(rec or {}) for h, rec in (records or {}).items()}
            for room, records in (data.get("db") or {}).items()
        }
        return cls(verified=verified, sessions=sessions, pending=pending)


class Action(str, enum.Enum):
    SEND = "send"
    DROP = "drop"
    REJECT = "reject"


@dataclass
class Decision:
    """Réponse au `beforePost` ; `followup` s'exécute après l'envoi de la réponse."""

    action: Action
    followup: Optional[Callable[[], Awaitable[None]]] = None
