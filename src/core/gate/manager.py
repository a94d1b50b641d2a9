from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import time
from typing import Any, Callable, Dict, Iterable, Optional, Set

from core import config
from core.config import RoomConfig
from core.errors import HostError
from core.host import encode_bytes
from core.identity import RoomIdentity
from views.welcome import challenge_retry_text, verified_text, welcome_text
from .challenge import ChallengeIssuer
from .models import Action, Decision, PendingChallenge, RoomTrust, Snapshot
from .persistence import PersistenceManager
from .trust import TrustStore

logger = logging.getLogger(__name__)


def is_privileged(user: Dict[str, Any]) -> bool:
    perms = user.get("roomPermissions") or user.get("room_permissions") or {}
    return bool(user.get("admin") or user.get("moderator") or perms.get("admin") or perms.get("moderator"))


class RoomContext:
    """État propre à une room configurée.

    Attributs principaux :
        trust : partition du Trust Store de la room (seul ce contexte la modifie)
        identity : identité de signature (None si la graine persistée est inutilisable)
        moderator_handles : clé publique serveur -> handle du bot, calculé au bootstrap
    """

    def __init__(self, token: str, room_config: RoomConfig, trust: RoomTrust, identity: Optional[RoomIdentity]):
        self.token = token
        self.config = room_config
        self.trust = trust
        self.identity = identity
        self.room_id: Optional[int] = None
        self.moderator_handles: Dict[str, str] = {}
        self.locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._timers: Set[asyncio.Task] = set()
        self.closed = False

    def get_lock(self, handle: str) -> asyncio.Lock:
        lock = self.locks.get(handle)
        if lock is None:
            lock = asyncio.Lock()
            self.locks[handle] = lock
        return lock

    @contextlib.asynccontextmanager
    async def user_lock(self, handle: str):
        """Verrou par utilisateur, oublié dès que plus personne ne le détient ni ne l'attend."""
        lock = self.get_lock(handle)
        self._lock_users[handle] = self._lock_users.get(handle, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[handle] - 1
            if remaining:
                self._lock_users[handle] = remaining
            else:
                del self._lock_users[handle]
                self.locks.pop(handle, None)

    def bot_handle(self, server_pk: str) -> str:
        handle = self.moderator_handles.get(server_pk)
        if handle is None:
            if self.identity is None:
                raise LookupError(f"aucune identité pour la room {self.token}")
            handle = self.identity.handle(server_pk)
            self.moderator_handles[server_pk] = handle
        return handle

    async def sleep(self, delay: float):
        """Attente annulée si la room est fermée entre-temps."""
        if delay <= 0:
            return
        if self.closed:
            raise asyncio.CancelledError()
        timer = asyncio.get_running_loop().create_task(asyncio.sleep(delay))
        self._timers.add(timer)
        timer.add_done_callback(self._timers.discard)
        await timer

    def close(self):
        self.closed = True
        for timer in list(self._timers):
            timer.cancel()


class AdmissionGate:
    """
    Machine d'états de vérification par (room, utilisateur) : inconnu -> captcha -> vérifié.

    Les décisions sont prises sans `await` ; chaque aller-retour avec l'hôte est suivi
    d'une revalidation de l'état avant toute nouvelle mutation.
    """

    def __init__(self, host, rooms: Dict[str, RoomConfig], *, issuer: Optional[ChallengeIssuer] = None,
                 clock: Callable[[], float] = time.time, send_delay: Optional[float] = None):
        self.host = host
        self.rooms_config = dict(rooms)
        self.trust = TrustStore()
        self.issuer = issuer or ChallengeIssuer(host)
        self.clock = clock
        self.send_delay = config.SEND_DELAY if send_delay is None else send_delay
        self.contexts: Dict[str, RoomContext] = {}
        self.seeds: Dict[str, str] = {}
        self.persistence: Optional[PersistenceManager] = None

    # ---------- état ----------
    def load(self, snapshot: Snapshot) -> int:
        """
        Construit les contextes de room à partir du snapshot.
        Returns : nombre d'identités générées (rooms nouvelles)
        """
        self.trust.load(snapshot)
        self.seeds.update(snapshot.sessions)
        generated = 0
        for token, room_config in self.rooms_config.items():
            identity: Optional[RoomIdentity] = None
            seed = self.seeds.get(token)
            if seed is None:
                identity = RoomIdentity.generate()
                self.seeds[token] = identity.seed_hex
                generated += 1
            else:
                try:
                    identity = RoomIdentity(seed)
                except ValueError:
                    # La graine n'est pas réécrite : une correction manuelle reste possible
                    logger.warning("Graine invalide pour la room %s, room inactive", token)
            self.contexts[token] = RoomContext(token, room_config, self.trust.add_room(token), identity)
        logger.info("Gate chargé: %s room(s), %s identité(s) créée(s)", len(self.contexts), generated)
        return generated

    def snapshot(self) -> Snapshot:
        snap = self.trust.snapshot()
        snap.sessions = dict(self.seeds)
        return snap

    def _note_change(self):
        if self.persistence is not None:
            self.persistence.note_change()

    def _context(self, room: Any) -> Optional[RoomContext]:
        token = room.get("token") if isinstance(room, dict) else room
        ctx = self.contexts.get(token) if isinstance(token, str) else None
        if ctx is None:
            logger.debug("Room inconnue %s, événement ignoré", token)
            return None
        if isinstance(room, dict) and room.get("id") is not None:
            ctx.room_id = room.get("id")
        return ctx

    def _verify(self, ctx: RoomContext, user_id: int) -> bool:
        added = self.trust.mark_verified(ctx.token, user_id)
        if added:
            self._note_change()
        return added

    # ---------- déclencheur 1 : utilisateur visible ----------
    async def user_visible(self, user: Dict[str, Any], room: Any, server: Dict[str, Any]):
        ctx = self._context(room)
        if ctx is None:
            return
        user_id = int(user["id"])
        if self.trust.is_verified(ctx.token, user_id):
            return
        if is_privileged(user):
            if self._verify(ctx, user_id):
                logger.info("Utilisateur privilégié %s vérifié dans %s", user_id, ctx.token)
            return
        handle = user.get("session_id")
        server_pk = (server or {}).get("pk")
        if not handle or not server_pk:
            logger.warning("Evénement userVisible incomplet pour %s dans %s", user_id, ctx.token)
            return
        record = self.trust.get_pending(ctx.token, handle)
        if record is not None and not record.is_stale(self.clock()):
            return
        if not ctx.config.captcha:
            self.trust.set_pending(ctx.token, handle, PendingChallenge())
            self._verify(ctx, user_id)
            if ctx.config.message and ctx.identity is not None:
                try:
                    await ctx.sleep(self.send_delay)
                    await self._send(ctx, server_pk, welcome_text(handle, ctx.config.message), whisper_to=handle)
                except (HostError, ValueError) as e:
                    logger.warning("Bienvenue non envoyée à %s dans %s : %s", handle, ctx.token, e)
            return

        if ctx.identity is None:
            logger.warning("Identité absente pour la room %s, utilisateur %s ignoré", ctx.token, user_id)
            return
        text = welcome_text(handle, ctx.config.message, captcha=True)
        await self._issue(ctx, user_id, handle, server_pk, text, renew_only_if_stale=True)

    # ---------- déclencheur 2 : avant publication ----------
    def before_post(self, message: Dict[str, Any], room: Any, server: Dict[str, Any]) -> Decision:
        ctx = self._context(room)
        if ctx is None:
            return Decision(Action.SEND)
        user = message.get("user") or {}
        user_id = int(user["id"])
        if self.trust.is_verified(ctx.token, user_id):
            return Decision(Action.SEND)
        if is_privileged(user):
            self._verify(ctx, user_id)
            return Decision(Action.SEND)
        handle = user.get("session_id")
        if not ctx.config.captcha:
            if handle and self.trust.get_pending(ctx.token, handle) is None:
                self.trust.set_pending(ctx.token, handle, PendingChallenge())
            self._verify(ctx, user_id)
            return Decision(Action.SEND)
        if ctx.identity is None:
            logger.warning("Identité absente pour la room %s, message de %s admis sans contrôle", ctx.token, user_id)
            return Decision(Action.SEND)
        server_pk = (server or {}).get("pk")
        if not handle or not server_pk:
            logger.warning("Evénement beforePost incomplet pour %s dans %s, message rejeté", user_id, ctx.token)
            return Decision(Action.REJECT)

        record = self.trust.get_pending(ctx.token, handle)
        if record is not None and record.matches(message.get("text")):
            self.trust.set_pending(ctx.token, handle, PendingChallenge())
            self._verify(ctx, user_id)
            logger.info("Captcha résolu par %s dans %s", user_id, ctx.token)
            return Decision(Action.DROP, functools.partial(self._after_verified, ctx, handle, server_pk, record))

        if record is None:
            text = welcome_text(handle, ctx.config.message, captcha=True)
        else:
            text = challenge_retry_text(handle)
        return Decision(
            Action.REJECT,
            functools.partial(self._issue, ctx, user_id, handle, server_pk, text, renew_only_if_stale=False),
        )

    async def _after_verified(self, ctx: RoomContext, handle: str, server_pk: str, record: PendingChallenge):
        if record.message_id is not None:
            await self._retract(ctx, server_pk, record.message_id)
        if ctx.config.verified_message:
            try:
                await self._send(ctx, server_pk, verified_text(handle, ctx.config.verified_message), whisper_to=handle)
            except (HostError, ValueError) as e:
                logger.warning("Confirmation non envoyée à %s dans %s : %s", handle, ctx.token, e)

    # ---------- captcha ----------
    async def _issue(self, ctx: RoomContext, user_id: int, handle: str, server_pk: str, text: str, *,
                     renew_only_if_stale: bool) -> bool:
        """
        Émet un captcha et l'enregistre ; remplace (et retire) le précédent.
        Returns : True si un nouveau captcha a été enregistré
        """
        async with ctx.user_lock(handle):
            if self.trust.is_verified(ctx.token, user_id):
                return False
            if renew_only_if_stale:
                current = self.trust.get_pending(ctx.token, handle)
                if current is not None and not current.is_stale(self.clock()):
                    return False
            try:
                bot = ctx.bot_handle(server_pk)
                challenge = await self.issuer.issue(ctx.token, bot, ctx.config.difficult)
                if self.trust.is_verified(ctx.token, user_id):
                    return False
                await ctx.sleep(self.send_delay)
                message_id = await self._send(ctx, server_pk, text, whisper_to=handle, attachments=[challenge.file_id])
            except (HostError, ValueError) as e:
                logger.warning("Captcha non émis pour %s dans %s : %s", handle, ctx.token, e)
                return False

            if self.trust.is_verified(ctx.token, user_id):
                # Vérifié pendant l'envoi : le captcha n'a plus lieu d'être
                if message_id is not None:
                    await self._retract(ctx, server_pk, message_id)
                return False
            record = PendingChallenge(answer=challenge.answer, issued_at=self.clock(), message_id=message_id)
            previous = self.trust.set_pending(ctx.token, handle, record)
            self._note_change()
            logger.info("Captcha émis pour %s dans %s", handle, ctx.token)

        if previous is not None and previous.message_id is not None and previous.message_id != message_id:
            await self._retract(ctx, server_pk, previous.message_id)
        return True

    # ---------- commandes hôte ----------
    async def _send(self, ctx: RoomContext, server_pk: str, text: str, *, whisper_to: Optional[str] = None,
                    attachments: Iterable[int] = ()) -> Optional[int]:
        encoded = ctx.identity.encode_message(server_pk, text, attachments)
        # sendMessage adresse la room par son id hôte, le token sert de repli avant le premier événement
        fields: Dict[str, Any] = {
            "room": ctx.room_id if ctx.room_id is not None else ctx.token,
            "user": encoded.handle,
            "data": encode_bytes(encoded.data),
            "signature": encode_bytes(encoded.signature),
        }
        if whisper_to:
            fields["whisperTo"] = whisper_to
        result = await self.host.request("sendMessage", **fields)
        message_id = result.get("messageId")
        return int(message_id) if message_id is not None else None

    async def _retract(self, ctx: RoomContext, server_pk: str, message_id: int):
        try:
            await self.host.notify("deleteMessage", room=ctx.token, user=ctx.bot_handle(server_pk), messageId=message_id)
        except (HostError, LookupError, ValueError) as e:
            logger.warning("Impossible de retirer le message %s dans %s : %s", message_id, ctx.token, e)

    # ---------- déclencheurs 3 et 4 : démarrage / arrêt ----------
    async def bootstrap(self, rooms: Iterable[Any], server: Dict[str, Any]):
        """Demande les droits de modérateur pour le bot dans chaque room configurée."""
        server_pk = (server or {}).get("pk")
        if not server_pk:
            logger.warning("Evénement load sans clé serveur, bootstrap ignoré")
            return
        host_rooms: Dict[str, Any] = {}
        for r in rooms or []:
            token = r.get("token") if isinstance(r, dict) else r
            if isinstance(token, str):
                host_rooms[token] = r
        for token, ctx in self.contexts.items():
            if host_rooms and token not in host_rooms:
                logger.warning("Room %s configurée mais inconnue de l'hôte", token)
                continue
            if ctx.identity is None:
                logger.warning("Identité absente pour la room %s, pas de bootstrap", token)
                continue
            info = host_rooms.get(token)
            if isinstance(info, dict) and info.get("id") is not None:
                ctx.room_id = info.get("id")
            try:
                handle = ctx.bot_handle(server_pk)
                await self.host.notify("setRoomModerator", room=token, user=handle, visible=True)
                logger.info("Bot %s promu modérateur de %s", handle, token)
            except Exception:  # noqa: BLE001
                logger.exception("Echec élévation modérateur pour %s", token)

    async def shutdown(self):
        for ctx in self.contexts.values():
            ctx.close()
        if self.persistence is not None:
            await self.persistence.close()


async def setup_admission_gate(host, rooms: Dict[str, RoomConfig], store, *,
                               on_shutdown: Optional[Callable[[], None]] = None, **kwargs) -> AdmissionGate:
    gate = AdmissionGate(host, rooms, **kwargs)
    snapshot = await store.load()
    generated = gate.load(snapshot)
    gate.persistence = PersistenceManager(store, gate.snapshot)

    from events.rooms import setup as setup_rooms  # import local pour éviter cycles
    setup_rooms(host, gate, on_shutdown)

    if generated:
        gate.persistence.note_change()
    return gate
