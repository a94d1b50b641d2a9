"""
Textes envoyés aux utilisateurs (bienvenue, captcha, confirmation).
"""
from __future__ import annotations

from typing import Optional

DEFAULT_CHALLENGE_TEXT = "please type the characters shown in the image to start chatting."
RETRY_TEXT = "wrong answer, please type the characters shown in this new image."


def welcome_text(session_id: str, message: Optional[str], *, captcha: bool = False) -> str:
    # Même format que l'ancien bot : "<session id>, <message>"
    body = message or (DEFAULT_CHALLENGE_TEXT if captcha else "")
    return f"{session_id}, {body}"


def challenge_retry_text(session_id: str) -> str:
    return f"{session_id}, {RETRY_TEXT}"


def verified_text(session_id: str, message: str) -> str:
    return f"{session_id}, {message}"
