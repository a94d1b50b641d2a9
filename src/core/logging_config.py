"""
Configuration centralisée du logging du gate.

- Sortie sur stderr uniquement : stdout est réservé au canal hôte (JSON par ligne)
- Un même message (logger, niveau, texte) n'est émis qu'une fois par fenêtre de
  LOG_DEDUP_WINDOW secondes : un utilisateur qui reposte en boucle ne noie pas les logs
"""
from __future__ import annotations

import logging
import os
import sys
import threading
import time

DEFAULT_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
DEFAULT_FORMAT = '[%(asctime)s] %(levelname)s %(name)s: %(message)s'
DEDUP_WINDOW = float(os.getenv("LOG_DEDUP_WINDOW", "10"))

_INITIALIZED = False


class _WindowDeduplicateFilter(logging.Filter):
    def __init__(self, window: float = DEDUP_WINDOW, clock=time.monotonic):
        super().__init__()
        self.window = window
        self.clock = clock
        self._last_seen: dict = {}
        self._lock = threading.Lock()

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        # Les traces d'exception ne sont jamais filtrées
        if record.exc_info or self.window <= 0:
            return True
        try:
            rendered = record.getMessage()
        except Exception:  # noqa: BLE001
            rendered = str(record.msg)
        key = (record.name, record.levelno, rendered)
        now = self.clock()
        with self._lock:
            last = self._last_seen.get(key)
            if last is not None and now - last < self.window:
                return False
            self._last_seen[key] = now
            if len(self._last_seen) > 5000:
                self._last_seen = {k: t for k, t in self._last_seen.items() if now - t < self.window}
        return True


def setup_logging() -> None:
    global _INITIALIZED
    if _INITIALIZED:
        return

    root = logging.getLogger()
    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(_WindowDeduplicateFilter())
    handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))
    root.addHandler(handler)
    root.setLevel(getattr(logging, DEFAULT_LEVEL, logging.INFO))
    _INITIALIZED = True


__all__ = ["setup_logging"]
