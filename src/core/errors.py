"""
Exceptions du gate d'admission.

Hiérarchie volontairement plate :
- ConfigError : configuration invalide, fatale au démarrage
- HostError : l'hôte a répondu `ok: false` à une requête
- RoundTripTimeout : aucune réponse corrélée dans le délai imparti
- PersistenceError : lecture/écriture du snapshot impossible
"""
from __future__ import annotations


class ConfigError(Exception):
    pass


class HostError(Exception):
    def __init__(self, method: str, detail: str | None = None):
        self.method = method
        self.detail = detail
        super().__init__(f"{method}: {detail or 'refusé par l’hôte'}")


class RoundTripTimeout(HostError):
    def __init__(self, method: str, timeout: float):
        self.timeout = timeout
        super().__init__(method, f"pas de réponse après {timeout:.1f}s")


class PersistenceError(Exception):
    pass


__all__ = ["ConfigError", "HostError", "RoundTripTimeout", "PersistenceError"]
