"""
Persistance de l'état de confiance.

Deux stores interchangeables (`load()` / `save(snapshot)`) :
- JsonFileStore : fichier JSON local (défaut)
- PostgresStore : tables PostgreSQL via asyncpg (si DATABASE_URL)

`PersistenceManager` regroupe les écritures : la première modification (ou la première
après expiration de la fenêtre) est écrite tout de suite, les suivantes sont différées à
`dernier flush + fenêtre`. Le repère de dernier flush est mis à jour après chaque écriture.
À l'arrêt, `close()` écrit sans condition.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Callable, Optional

import asyncpg

from core import config
from core.errors import PersistenceError
from db import snapshot as pg_snapshot
from db import snapshot_file
from .models import Snapshot

logger = logging.getLogger(__name__)


class JsonFileStore:
    def __init__(self, path: Path | str):
        self.path = Path(path)

    async def load(self) -> Snapshot:
        try:
            return await asyncio.to_thread(snapshot_file.read_snapshot, self.path)
        except (OSError, json.JSONDecodeError, ValueError, TypeError) as e:
            raise PersistenceError(f"Lecture du snapshot {self.path} impossible : {e}") from e

    async def save(self, snapshot: Snapshot):
        try:
            await asyncio.to_thread(snapshot_file.write_snapshot, self.path, snapshot)
        except OSError as e:
            raise PersistenceError(f"Ecriture du snapshot {self.path} impossible : {e}") from e


class PostgresStore:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def load(self) -> Snapshot:
        try:
            await pg_snapshot.ensure_schema(self.pool)
            return await pg_snapshot.load_snapshot(self.pool)
        except (asyncpg.PostgresError, OSError) as e:
            raise PersistenceError(f"Lecture du snapshot en base impossible : {e}") from e

    async def save(self, snapshot: Snapshot):
        try:
            await pg_snapshot.save_snapshot(self.pool, snapshot)
        except (asyncpg.PostgresError, OSError) as e:
            raise PersistenceError(f"Ecriture du snapshot en base impossible : {e}") from e


class PersistenceManager:
    """
    Attributs principaux :
        window : fenêtre de regroupement (secondes)
        last_flush : instant (horloge `clock`) du dernier flush réussi, None avant le premier
        dirty : des modifications ne sont pas encore écrites
    """

    def __init__(self, store, snapshot_fn: Callable[[], Snapshot], *, window: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.snapshot_fn = snapshot_fn
        self.window = config.PERSIST_WINDOW if window is None else window
        self.clock = clock
        self.last_flush: Optional[float] = None
        self.dirty = False
        self.flush_count = 0
        self._timer: Optional[asyncio.Task] = None
        self._writing = False
        self._closing = False
        self._lock = asyncio.Lock()

    def note_change(self):
        self.dirty = True
        if self._closing:
            return
        if self._timer is not None and not self._timer.done():
            return
        delay = 0.0
        if self.last_flush is not None:
            delay = max(0.0, self.last_flush + self.window - self.clock())
        self._timer = asyncio.get_running_loop().create_task(self._flush_later(delay))

    async def _flush_later(self, delay: float):
        if delay > 0:
            await asyncio.sleep(delay)
        self._writing = True
        try:
            await self.flush()
        except PersistenceError:
            logger.exception("Echec persistance (nouvel essai à la prochaine modification)")
            return
        finally:
            self._writing = False
        self._timer = None
        # Modifications arrivées pendant l'écriture
        if self.dirty and not self._closing:
            self.note_change()

    async def flush(self):
        async with self._lock:
            self.dirty = False
            snapshot = self.snapshot_fn()
            try:
                await self.store.save(snapshot)
            except PersistenceError:
                self.dirty = True
                raise
            self.last_flush = self.clock()
            self.flush_count += 1
            logger.debug("Snapshot écrit (%s flush)", self.flush_count)

    async def close(self):
        self._closing = True
        timer, self._timer = self._timer, None
        if timer is not None and not timer.done():
            if self._writing:
                # Annuler la tâche n'arrêterait pas le thread d'écriture : on attend sa fin
                await timer
            else:
                timer.cancel()
                try:
                    await timer
                except asyncio.CancelledError:
                    pass
        await self.flush()
        logger.info("Snapshot final écrit")


__all__ = ["JsonFileStore", "PostgresStore", "PersistenceManager"]
