"""
Handlers pour les événements de room envoyés par l'hôte (visible, avant publication, load, arrêt).

Chaque handler délègue au gate. Pour `beforePost`, la décision est renvoyée à l'hôte
avant tout travail asynchrone (retrait, nouveau captcha, confirmation).
En cas d'erreur, le workflow de l'hôte n'est pas bloqué (log + réponse `ok: false`).
"""
from __future__ import annotations

import logging
from typing import Callable, Optional

from core.gate.models import Action, Decision

logger = logging.getLogger(__name__)


def setup(host, gate, on_shutdown: Optional[Callable[[], None]] = None):
    @host.event("userVisible")
    async def on_user_visible(payload: dict):
        await gate.user_visible(payload.get("user") or {}, payload.get("room") or {}, payload.get("server") or {})

    @host.event("beforePost")
    async def on_before_post(payload: dict):
        ref = payload.get("replyToken") or payload.get("ref")
        if not ref:
            logger.warning("beforePost sans replyToken ignoré")
            return
        try:
            decision: Decision = gate.before_post(
                payload.get("message") or {}, payload.get("room") or {}, payload.get("server") or {}
            )
        except Exception:  # noqa: BLE001
            logger.exception("Echec évaluation beforePost")
            await host.reply(ref, ok=False)
            return
        await host.reply(ref, ok=True, action=decision.action.value)
        if decision.action is not Action.SEND:
            logger.debug("beforePost -> %s", decision.action.value)
        if decision.followup is not None:
            await decision.followup()

    @host.event("load")
    async def on_load(payload: dict):
        await gate.bootstrap(payload.get("rooms") or [], payload.get("server") or {})

    @host.event("shutdown")
    async def on_close(payload: dict):
        logger.info("Arrêt demandé par l'hôte")
        if on_shutdown is not None:
            on_shutdown()
