"""
Configuration centrale du gate d'admission.

Ce module charge les variables d'environnement (.env) et prépare :
- Le chemin du fichier de configuration des rooms (ROOMS_CONFIG)
- Le chemin du snapshot JSON (SNAPSHOT_PATH) ou l'URL PostgreSQL (DATABASE_URL, optionnelle)
- Les délais : aller-retour hôte, fenêtre de persistance, délai avant envoi

La configuration des rooms est validée par pydantic ; toute erreur lève `ConfigError`,
ce qui doit empêcher le processus de démarrer.
"""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from core.errors import ConfigError

load_dotenv()

logger = logging.getLogger(__name__)

_BASE_DIR = Path(__file__).resolve().parent.parent


def _float_env(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} doit être un nombre (reçu {raw!r})") from None
    if value < 0:
        raise ConfigError(f"{name} doit être positif (reçu {raw!r})")
    return value


ROOMS_CONFIG = Path(os.getenv("ROOMS_CONFIG") or _BASE_DIR / "config.json")
SNAPSHOT_PATH = Path(os.getenv("SNAPSHOT_PATH") or _BASE_DIR / "db.json")
DATABASE_URL = os.getenv("DATABASE_URL")

ROUND_TRIP_TIMEOUT = _float_env("ROUND_TRIP_TIMEOUT", 30.0)
PERSIST_WINDOW = _float_env("PERSIST_WINDOW", 5.0)
SEND_DELAY = _float_env("SEND_DELAY", 0.01)


class RoomConfig(BaseModel):
    """Configuration immuable d'une room.

    message          -> texte de bienvenue (optionnel)
    captcha          -> vérification par captcha obligatoire
    difficult        -> captcha difficile
    verified_message -> message envoyé une fois la vérification réussie
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    message: Optional[str] = Field(default=None, min_length=1, max_length=1024)
    captcha: bool = False
    difficult: bool = False
    verified_message: Optional[str] = Field(default=None, min_length=1, max_length=1024)


class RoomsFile(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    rooms: Dict[str, RoomConfig]


def parse_rooms(data: object) -> Dict[str, RoomConfig]:
    """
    Valide un document de configuration déjà décodé.
    Returns : mapping token de room -> RoomConfig
    """
    try:
        parsed = RoomsFile.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Configuration des rooms invalide : {e}") from e
    for token in parsed.rooms:
        if not token.strip():
            raise ConfigError("Token de room vide dans la configuration")
    return dict(parsed.rooms)


def load_rooms(path: Path | str | None = None) -> Dict[str, RoomConfig]:
    """
    Charge et valide le fichier de configuration des rooms.
    Args :
        path : chemin du fichier (ROOMS_CONFIG par défaut)
    """
    target = Path(path) if path is not None else ROOMS_CONFIG
    try:
        raw = target.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Lecture impossible de {target} : {e}") from e
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"JSON invalide dans {target} : {e}") from e
    rooms = parse_rooms(data)
    logger.info("Configuration chargée: %s room(s) depuis %s", len(rooms), target)
    return rooms


__all__ = [
    "ROOMS_CONFIG",
    "SNAPSHOT_PATH",
    "DATABASE_URL",
    "ROUND_TRIP_TIMEOUT",
    "PERSIST_WINDOW",
    "SEND_DELAY",
    "RoomConfig",
    "RoomsFile",
    "parse_rooms",
    "load_rooms",
]
