"""
Identifier allocation from persisted per-kind counters.

The counter increment happens inside the caller's transaction, so a rolled
back mutation also rolls back the allocation and ids stay gap-free.
"""

import sqlite3
from typing import Tuple

from tasktrail.db import ID_PREFIXES, Database
from tasktrail.errors import AllocationError


def format_id(kind: str, seq: int) -> str:
    return f"{ID_PREFIXES[kind]}-{seq}"


def split_id(entity_id: str) -> Tuple[str, int]:
    """Split 'TASK-12' into ('TASK', 12). Unparseable ids sort with seq 0."""
    prefix, _, num = entity_id.rpartition("-")
    try:
        return prefix, int(num)
    except ValueError:
        return entity_id, 0


class IdAllocator:
    def __init__(self, db: Database):
        self._db = db

    def allocate(self, conn: sqlite3.Connection, kind: str) -> Tuple[str, int]:
        """Bump the counter for kind and return (formatted id, sequence number).

        Must run inside an open transaction on conn.
        """
        if kind not in ID_PREFIXES:
            raise AllocationError(f"Unknown id kind: {kind}", entity_type=kind)
        if not conn.in_transaction:
            raise AllocationError("Id allocation requires an open transaction", entity_type=kind)

        cur = conn.execute("UPDATE id_counters SET counter = counter + 1 WHERE kind = ?", (kind,))
        if cur.rowcount != 1:
            raise AllocationError(f"Missing id counter for {kind}; is the store initialized?", entity_type=kind)
        seq = conn.execute("SELECT counter FROM id_counters WHERE kind = ?", (kind,)).fetchone()[0]
        if seq < 1:
            raise AllocationError(f"Corrupt id counter for {kind}: {seq}", entity_type=kind)
        return format_id(kind, seq), seq

    def peek(self, kind: str) -> int:
        if kind not in ID_PREFIXES:
            raise AllocationError(f"Unknown id kind: {kind}", entity_type=kind)
        value = self._db.scalar("SELECT counter FROM id_counters WHERE kind = ?", (kind,))
        if value is None:
            raise AllocationError(f"Missing id counter for {kind}", entity_type=kind)
        return int(value)
