"""
Identité de signature d'une room.

Chaque room possède une graine secrète de 32 octets (hex) persistée dans le snapshot.
À partir de cette graine et de la clé publique du serveur, on dérive une clé Ed25519
"aveuglée" : son handle public (`15` + clé publique hex) est stable pour un couple
(room, serveur) et ne révèle pas la clé racine. L'encodage réel du protocole de messagerie
reste du ressort de l'hôte ; on ne fournit ici que les octets signés et le handle.
"""
from __future__ import annotations

import hashlib
import json
import secrets
from dataclasses import dataclass
from typing import Dict, Iterable

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

SEED_BYTES = 32
HANDLE_PREFIX = "15"
_BLIND_PERSON = b"roomgate-blind"


@dataclass(frozen=True)
class EncodedMessage:
    data: bytes
    signature: bytes
    handle: str


class RoomIdentity:
    def __init__(self, seed_hex: str):
        seed = bytes.fromhex(seed_hex)
        if len(seed) != SEED_BYTES:
            raise ValueError(f"graine de {len(seed)} octets, {SEED_BYTES} attendus")
        self.seed_hex = seed.hex()
        self._seed = seed
        self._blinded: Dict[str, Ed25519PrivateKey] = {}

    @classmethod
    def generate(cls) -> "RoomIdentity":
        return cls(secrets.token_hex(SEED_BYTES))

    def _blinded_key(self, server_pk: str) -> Ed25519PrivateKey:
        key = self._blinded.get(server_pk)
        if key is None:
            derived = hashlib.blake2b(
                bytes.fromhex(server_pk),
                key=self._seed,
                digest_size=SEED_BYTES,
                person=_BLIND_PERSON,
            ).digest()
            key = Ed25519PrivateKey.from_private_bytes(derived)
            self._blinded[server_pk] = key
        return key

    def handle(self, server_pk: str) -> str:
        """Handle pseudonyme du bot pour ce serveur (stable)."""
        pub = self._blinded_key(server_pk).public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        return HANDLE_PREFIX + pub.hex()

    def encode_message(self, server_pk: str, text: str, attachments: Iterable[int] = ()) -> EncodedMessage:
        body = {"text": text}
        files = [int(a) for a in attachments]
        if files:
            body["attachments"] = files
        data = json.dumps(body, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        signature = self._blinded_key(server_pk).sign(data)
        return EncodedMessage(data=data, signature=signature, handle=self.handle(server_pk))


__all__ = ["RoomIdentity", "EncodedMessage"]
