"""
Canal de communication avec le processus hôte (un objet JSON par ligne).

Principes :
- Les événements de l'hôte (`type`) sont routés vers des handlers enregistrés via `@host.event(...)`
  et exécutés chacun dans une tâche asyncio (la lecture ne bloque jamais sur un handler)
- Les réponses de l'hôte (`ref`) complètent la requête correspondante dans une table de corrélation :
  jeton à usage unique -> future, complétée une seule fois puis retirée
- Toute requête est bornée par un timeout (`RoundTripTimeout`), la table ne fuit jamais d'entrée
"""
from __future__ import annotations

import asyncio
import base64
import json
import logging
import secrets
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from core import config
from core.errors import HostError, RoundTripTimeout

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]

# Noms historiques des événements -> noms canoniques
EVENT_ALIASES = {
    "onRecentMessagesRequest": "userVisible",
    "onBeforePost": "beforePost",
    "onLoad": "load",
    "onClose": "shutdown",
}

# Réponses typées : elles portent `type` mais se corrèlent par `ref`
RESPONSE_TYPES = {"uploadResult", "sendResult"}


def encode_bytes(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class HostChannel:
    """
    Extrémité "plugin" du canal hôte.

    Attributs principaux :
        timeout : délai maximal (secondes) d'attente d'une réponse corrélée
        pending : table de corrélation jeton -> future
    """

    def __init__(self, writer, *, timeout: Optional[float] = None):
        self._writer = writer
        self.timeout = config.ROUND_TRIP_TIMEOUT if timeout is None else timeout
        self.pending: Dict[str, asyncio.Future] = {}
        self._handlers: Dict[str, Handler] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    # ---------- enregistrement ----------
    def event(self, name: str):
        """Décorateur : associe un handler coroutine à un type d'événement."""
        def decorator(func: Handler) -> Handler:
            self._handlers[EVENT_ALIASES.get(name, name)] = func
            return func
        return decorator

    # ---------- sortie ----------
    async def _send(self, payload: Dict[str, Any]):
        if self._closed:
            raise HostError(str(payload.get("method", "?")), "canal fermé")
        line = json.dumps(payload, separators=(",", ":")) + "\n"
        self._writer.write(line.encode("utf-8"))
        drain = getattr(self._writer, "drain", None)
        if drain is not None:
            await drain()

    async def notify(self, method: str, **fields: Any):
        """Commande sans réponse attendue (setRoomModerator, deleteMessage)."""
        await self._send({"method": method, **fields})

    async def reply(self, ref: str, **fields: Any):
        """Répond à une requête initiée par l'hôte (ex: beforePost)."""
        await self._send({"ref": ref, **fields})

    async def request(self, method: str, **fields: Any) -> Dict[str, Any]:
        """
        Envoie une commande et attend la réponse portant le même jeton.
        Raises :
            RoundTripTimeout si l'hôte ne répond pas dans `timeout`
            HostError si l'hôte répond `ok: false`
        """
        token = secrets.token_hex(16)
        fut = asyncio.get_running_loop().create_future()
        self.pending[token] = fut
        try:
            await self._send({"method": method, "ref": token, **fields})
            try:
                result = await asyncio.wait_for(fut, self.timeout)
            except asyncio.TimeoutError:
                raise RoundTripTimeout(method, self.timeout) from None
        finally:
            self.pending.pop(token, None)
        if not result.get("ok", True):
            raise HostError(method, result.get("error"))
        return result

    # ---------- entrée ----------
    def _resolve(self, message: Dict[str, Any]):
        ref = message.get("ref")
        fut = self.pending.pop(ref, None) if isinstance(ref, str) else None
        if fut is None or fut.done():
            logger.debug("Réponse sans requête en attente (ref=%s)", ref)
            return
        fut.set_result(message)

    def handle_line(self, line: bytes | str) -> Optional[asyncio.Task]:
        """
        Traite une ligne reçue de l'hôte.
        Returns : la tâche du handler si un événement a été dispatché
        """
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        line = line.strip()
        if not line:
            return None
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Ligne hôte illisible ignorée: %.120s", line)
            return None
        if not isinstance(message, dict):
            logger.warning("Message hôte inattendu ignoré: %.120s", line)
            return None

        kind = message.get("type")
        if kind is None or kind in RESPONSE_TYPES:
            if "ref" in message:
                self._resolve(message)
            else:
                logger.warning("Message hôte sans type ni ref ignoré")
            return None

        name = EVENT_ALIASES.get(kind, kind)
        handler = self._handlers.get(name)
        if handler is None:
            logger.debug("Aucun handler pour l'événement %s", name)
            return None
        payload = message.get("payload")
        if not isinstance(payload, dict):
            payload = {k: v for k, v in message.items() if k != "type"}
        task = asyncio.get_running_loop().create_task(self._run_handler(name, handler, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_handler(self, name: str, handler: Handler, payload: Dict[str, Any]):
        try:
            await handler(payload)
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            logger.exception("Echec traitement événement %s", name)

    async def run(self, reader):
        """Boucle de lecture ; se termine à EOF."""
        while True:
            line = await reader.readline()
            if not line:
                logger.info("Canal hôte fermé (EOF)")
                return
            self.handle_line(line)

    async def wait_idle(self):
        """Attend la fin des handlers en cours (utile à l'arrêt et en test)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self):
        """Échoue toutes les requêtes en attente et refuse les envois suivants."""
        self._closed = True
        for token, fut in list(self.pending.items()):
            if not fut.done():
                fut.set_exception(HostError("close", "canal fermé"))
        self.pending.clear()


__all__ = ["HostChannel", "EVENT_ALIASES", "encode_bytes"]
