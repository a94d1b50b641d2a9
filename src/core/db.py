"""
Accès PostgreSQL via asyncpg (optionnel, activé par DATABASE_URL).

Principes :
- Un pool global unique, créé à la demande (`get_pool`)
- Fermé explicitement à l'arrêt (`close_pool`) après le dernier flush du snapshot
"""
from __future__ import annotations

import asyncpg
import logging

logger = logging.getLogger(__name__)

_pool = None


async def get_pool(dsn: str):
    """
    Retourne (et crée si nécessaire) le pool asyncpg.
    Args :
        dsn : URL de connexion Postgres
    """
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(dsn, min_size=1, max_size=3)
        logger.info("Pool asyncpg initialisé")
    return _pool


async def close_pool():
    global _pool
    if _pool is None:
        return
    try:
        await _pool.close()
        logger.info("Pool asyncpg fermé")
    finally:
        _pool = None
