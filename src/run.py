"""
Entrée principale du gate d'admission.

Le processus est lancé par l'hôte : il lit les événements sur stdin (un JSON par ligne)
et écrit ses commandes sur stdout. Les logs partent sur stderr.

Ce script garantit que le dossier courant est ajouté à sys.path pour permettre les imports absolus
(core, db, events, views), même si le lancement se fait via `python src/run.py`.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys

 # Ajoute dynamiquement le répertoire courant à sys.path si nécessaire
_CURRENT_DIR = os.path.dirname(__file__)
if _CURRENT_DIR not in sys.path:
    sys.path.insert(0, _CURRENT_DIR)

from core.logging_config import setup_logging  # noqa: E402
setup_logging()  # Initialise le logging global

from core.errors import ConfigError, PersistenceError  # noqa: E402

logger = logging.getLogger("run")


class _StdoutWriter:
    """Écriture ligne à ligne sur stdout, vidée immédiatement."""

    def write(self, data: bytes):
        sys.stdout.buffer.write(data)
        sys.stdout.buffer.flush()


async def _open_stdin() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=2 ** 22)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    return reader


async def _open_store():
    from core import config, db
    from core.gate.persistence import JsonFileStore, PostgresStore

    if config.DATABASE_URL:
        pool = await db.get_pool(config.DATABASE_URL)
        return PostgresStore(pool)
    return JsonFileStore(config.SNAPSHOT_PATH)


async def main() -> int:
    try:
        from core import config
        rooms = config.load_rooms()
    except ConfigError as e:
        logger.error("%s", e)
        raise SystemExit(2)

    from core import db
    from core.gate import setup_admission_gate
    from core.host import HostChannel

    loop = asyncio.get_running_loop()
    stopping = asyncio.Event()
    host = HostChannel(_StdoutWriter())
    try:
        store = await _open_store()
        gate = await setup_admission_gate(host, rooms, store, on_shutdown=stopping.set)
    except PersistenceError as e:
        logger.error("Snapshot illisible, démarrage annulé : %s", e)
        await db.close_pool()
        return 1

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stopping.set)
        except (NotImplementedError, RuntimeError):
            pass

    reader = await _open_stdin()
    read_task = asyncio.create_task(host.run(reader))
    stop_task = asyncio.create_task(stopping.wait())
    await asyncio.wait({read_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    for task in (read_task, stop_task):
        task.cancel()

    # Les requêtes en cours échouent proprement, l'état des utilisateurs reste inchangé
    host.close()
    await host.wait_idle()
    code = 0
    try:
        await gate.shutdown()
    except PersistenceError:
        logger.exception("Echec écriture du snapshot final")
        code = 1
    finally:
        await db.close_pool()
    return code


# Démarre le gate si le script est exécuté directement
if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Arrêt manuel")
        sys.exit(0)
