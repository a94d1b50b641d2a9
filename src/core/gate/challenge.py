"""
Émission des captchas : rendu de l'image puis upload via l'hôte.

Un appel = exactement une commande `uploadFile`. L'attente de la réponse corrélée
est bornée par le timeout du canal ; en cas d'échec rien n'est écrit dans le Trust Store.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Tuple

from core.host import encode_bytes
from core.errors import HostError
from views.captcha import render_captcha

logger = logging.getLogger(__name__)

Renderer = Callable[[bool], Tuple[bytes, str]]


@dataclass(frozen=True)
class IssuedChallenge:
    file_id: int
    image: bytes
    answer: str


class ChallengeIssuer:
    def __init__(self, host, renderer: Renderer = render_captcha):
        self.host = host
        self.renderer = renderer

    async def issue(self, room: str, uploader: str, difficult: bool) -> IssuedChallenge:
        """
        Génère un captcha et l'envoie à l'hôte.
        Args :
            room : token de la room
            uploader : handle du bot dans la room
            difficult : difficulté du captcha
        Raises : HostError / RoundTripTimeout
        """
        image, answer = self.renderer(difficult)
        result = await self.host.request("uploadFile", room=room, uploader=uploader, data=encode_bytes(image))
        file_id = result.get("fileId")
        if file_id is None:
            raise HostError("uploadFile", "réponse sans fileId")
        logger.debug("Captcha uploadé dans %s (fichier %s)", room, file_id)
        return IssuedChallenge(file_id=int(file_id), image=image, answer=answer)


__all__ = ["ChallengeIssuer", "IssuedChallenge"]
