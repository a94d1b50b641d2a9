"""
Snapshot du gate dans un fichier JSON (mode par défaut, sans DATABASE_URL).

Le fichier est créé vide (`{}`) s'il n'existe pas ; l'écriture passe par un fichier
temporaire puis un `os.replace` pour ne jamais laisser un JSON tronqué.
"""
from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path

from core.gate.models import Snapshot


def ensure_file(path: Path):
    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("{}", encoding="utf-8")


def read_snapshot(path: Path) -> Snapshot:
    ensure_file(path)
    raw = path.read_text(encoding="utf-8").strip()
    return Snapshot.from_dict(json.loads(raw or "{}"))


def write_snapshot(path: Path, snapshot: Snapshot):
    with tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", dir=path.parent, prefix=path.name + ".", suffix=".tmp", delete=False
    ) as f:
        tmp = Path(f.name)
        try:
            json.dump(snapshot.to_dict(), f, separators=(",", ":"))
            f.flush()
            os.fsync(f.fileno())
        except BaseException:
            f.close()
            tmp.unlink(missing_ok=True)
            raise
    os.replace(tmp, path)


__all__ = ["ensure_file", "read_snapshot", "write_snapshot"]
