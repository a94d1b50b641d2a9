"""Admission gate core package.

Les imports sont effectués de manière lazy : `db.snapshot` importe `core.gate.models`
et ne doit pas tirer le manager (et ses dépendances) au passage.
"""
from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # aide mypy/IDE sans exécuter les imports au runtime initial
	from .manager import AdmissionGate, RoomContext, setup_admission_gate  # noqa: F401
	from .models import PendingChallenge, Snapshot  # noqa: F401

__all__ = ["AdmissionGate", "RoomContext", "setup_admission_gate", "PendingChallenge", "Snapshot"]


def __getattr__(name: str):  # lazy resolution
	if name in {"AdmissionGate", "RoomContext", "setup_admission_gate"}:
		mod = import_module("core.gate.manager")
		return getattr(mod, name)
	if name in {"PendingChallenge", "Snapshot"}:
		mod = import_module("core.gate.models")
		return getattr(mod, name)
	raise AttributeError(name)
