"""
Trust Store : état de confiance en mémoire, partitionné par room.

Toutes les opérations sont synchrones et ne font que muter la mémoire.
Un token de room inconnu est une erreur de l'appelant (KeyError).
L'ensemble des vérifiés est monotone : on n'en retire jamais personne.
"""
from __future__ import annotations

from dataclasses import replace
from typing import Dict, Optional

from .models import PendingChallenge, RoomTrust, Snapshot


class TrustStore:
    def __init__(self):
        self.rooms: Dict[str, RoomTrust] = {}

    def add_room(self, room: str) -> RoomTrust:
        part = self.rooms.get(room)
        if part is None:
            part = RoomTrust()
            self.rooms[room] = part
        return part

    def partition(self, room: str) -> RoomTrust:
        return self.rooms[room]

    def is_verified(self, room: str, user_id: int) -> bool:
        return user_id in self.rooms[room].verified

    def mark_verified(self, room: str, user_id: int) -> bool:
        """Returns : True si l'utilisateur vient d'être ajouté."""
        verified = self.rooms[room].verified
        if user_id in verified:
            return False
        verified.add(user_id)
        return True

    def get_pending(self, room: str, handle: str) -> Optional[PendingChallenge]:
        return self.rooms[room].pending.get(handle)

    def set_pending(self, room: str, handle: str, record: PendingChallenge) -> Optional[PendingChallenge]:
        """Remplace le captcha d'un utilisateur. Returns : l'ancien enregistrement."""
        pending = self.rooms[room].pending
        previous = pending.get(handle)
        pending[handle] = record
        return previous

    def load(self, snapshot: Snapshot):
        for room, ids in snapshot.verified.items():
            self.add_room(room).verified.update(ids)
        for room, records in snapshot.pending.items():
            part = self.add_room(room)
            for handle, rec in records.items():
                part.pending[handle] = replace(rec)

    def snapshot(self) -> Snapshot:
        return Snapshot(
            verified={room: sorted(part.verified) for room, part in self.rooms.items()},
            pending={
                room: {h: replace(r) for h, r in part.pending.items()}
                for room, part in self.rooms.items()
            },
        )


__all__ = ["TrustStore"]
