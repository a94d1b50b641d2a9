"""
Couche base de données pour le snapshot du gate (PostgreSQL via asyncpg).

Schéma :
- gate_room_secret : room TEXT PRIMARY KEY, seed_hex TEXT, updated_at TIMESTAMPTZ
- gate_verified : (room, user_id) PRIMARY KEY ; jamais de suppression (ensemble monotone)
- gate_pending : (room, handle) PRIMARY KEY, answer TEXT NULL, issued_at DOUBLE PRECISION NULL, message_id BIGINT NULL
"""
from __future__ import annotations

import asyncpg

from core.gate.models import PendingChallenge, Snapshot

SCHEMA = """
CREATE TABLE IF NOT EXISTS gate_room_secret (
    room TEXT PRIMARY KEY,
    seed_hex TEXT NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS gate_verified (
    room TEXT NOT NULL,
    user_id BIGINT NOT NULL,
    PRIMARY KEY (room, user_id)
);

CREATE TABLE IF NOT EXISTS gate_pending (
    room TEXT NOT NULL,
    handle TEXT NOT NULL,
    answer TEXT NULL,
    issued_at DOUBLE PRECISION NULL,
    message_id BIGINT NULL,
    PRIMARY KEY (room, handle)
);

CREATE INDEX IF NOT EXISTS idx_gate_pending_room ON gate_pending(room);
"""

UPSERT_SECRET_SQL = """
INSERT INTO gate_room_secret(room, seed_hex, updated_at)
VALUES($1, $2, NOW())
ON CONFLICT (room) DO UPDATE SET seed_hex = EXCLUDED.seed_hex, updated_at = NOW()
"""

INSERT_VERIFIED_SQL = """
INSERT INTO gate_verified(room, user_id) VALUES($1, $2)
ON CONFLICT DO NOTHING
"""

INSERT_PENDING_SQL = """
INSERT INTO gate_pending(room, handle, answer, issued_at, message_id)
VALUES($1, $2, $3, $4, $5)
"""


async def ensure_schema(pool: asyncpg.Pool):
    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute(SCHEMA)


async def save_snapshot(pool: asyncpg.Pool, snapshot: Snapshot):
    """
    Écrit le snapshot complet dans une seule transaction.
    Les captchas d'une room sont réécrits intégralement ; les vérifiés ne sont qu'ajoutés.
    """
    async with pool.acquire() as conn:
        async with conn.transaction():
            if snapshot.sessions:
                await conn.executemany(UPSERT_SECRET_SQL, list(snapshot.sessions.items()))
            verified_rows = [(room, uid) for room, ids in snapshot.verified.items() for uid in ids]
            if verified_rows:
                await conn.executemany(INSERT_VERIFIED_SQL, verified_rows)
            rooms = list(snapshot.pending.keys())
            if rooms:
                await conn.execute("DELETE FROM gate_pending WHERE room = ANY($1::text[])", rooms)
            pending_rows = [
                (room, handle, rec.answer, rec.issued_at, rec.message_id)
                for room, records in snapshot.pending.items()
                for handle, rec in records.items()
            ]
            if pending_rows:
                await conn.executemany(INSERT_PENDING_SQL, pending_rows)


async def load_snapshot(pool: asyncpg.Pool) -> Snapshot:
    snapshot = Snapshot()
    async with pool.acquire() as conn:
        for r in await conn.fetch("SELECT room, seed_hex FROM gate_room_secret"):
            snapshot.sessions[r["room"]] = r["seed_hex"]
        for r in await conn.fetch("SELECT room, user_id FROM gate_verified ORDER BY room, user_id"):
            snapshot.verified.setdefault(r["room"], []).append(int(r["user_id"]))
        for r in await conn.fetch("SELECT room, handle, answer, issued_at, message_id FROM gate_pending"):
            snapshot.pending.setdefault(r["room"], {})[r["handle"]] = PendingChallenge(
                answer=r["answer"],
                issued_at=r["issued_at"],
                message_id=int(r["message_id"]) if r["message_id"] is not None else None,
            )
    return snapshot


__all__ = ["ensure_schema", "save_snapshot", "load_snapshot", "SCHEMA"]
