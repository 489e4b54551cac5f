# -*- coding: utf-8 -*-
"""
TTLStore - Stockage clé/valeur en mémoire avec expiration.

Utilisé pour l'état éphémère des flux OAuth (state PKCE, 15 minutes).
Les entrées expirées sont purgées paresseusement à la lecture et par un
balayage périodique (run_sweeper). Accès concurrents protégés par un verrou.
"""

import asyncio
import sys
import threading
import time
from typing import Callable, Dict, Generic, Optional, Tuple, TypeVar

V = TypeVar("V")


class TTLStore(Generic[V]):
    """Dictionnaire à durée de vie, thread-safe."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._items: Dict[str, Tuple[float, V]] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def put(self, key: str, value: V, ttl_seconds: Optional[float] = None) -> None:
        expires_at = self._clock() + (ttl_seconds if ttl_seconds is not None else self._ttl)
        with self._lock:
            self._items[key] = (expires_at, value)

    def get(self, key: str) -> Optional[V]:
        """Valeur si présente et non expirée ; une entrée expirée est supprimée."""
        with self._lock:
            entry = self._items.get(key)
            if entry is None:
                return None
            if entry[0] <= self._clock():
                del self._items[key]
                return None
            return entry[1]

    def pop(self, key: str) -> Optional[V]:
        """Retire et retourne la valeur (usage unique), None si absente ou expirée."""
        with self._lock:
            entry = self._items.pop(key, None)
        if entry is None or entry[0] <= self._clock():
            return None
        return entry[1]

    def sweep(self) -> int:
        """Supprime les entrées expirées. Retourne le nombre d'entrées purgées."""
        now = self._clock()
        with self._lock:
            expired = [k for k, (expires_at, _) in self._items.items() if expires_at <= now]
            for key in expired:
                del self._items[key]
        return len(expired)

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Boucle de purge périodique (tâche de fond, annulée à l'arrêt)."""
        while True:
            await asyncio.sleep(interval_seconds)
            purged = self.sweep()
            if purged:
                print(f"🧹 [OAuth] {purged} state(s) expiré(s) purgé(s)", file=sys.stderr)
