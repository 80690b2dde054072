"""
SQLite storage for blocks, events, transactions, contract-state snapshots and
watched contracts.

Every public method is a coroutine; the blocking sqlite call runs in a worker
thread (asyncio.to_thread) under a connection lock, so any number of tasks can
write concurrently without coordinating with each other.
"""

import asyncio
import json
import pathlib
import sqlite3
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import structlog

from devlab_indexer import config
from devlab_indexer.errors import PersistenceError
from devlab_indexer.helpers import json_dumps, to_addr, utcnow
from devlab_indexer.models import Block, ContractStateSnapshot, Event, Transaction

logger = structlog.get_logger()

SCHEMA_PATH = pathlib.Path(__file__).with_name("schema.sql")


def db(path: str = None) -> sqlite3.Connection:
    conn = sqlite3.connect(path or config.DB_PATH, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA temp_store=MEMORY;")
    return conn

def ensure_schema(conn: sqlite3.Connection):
    # read SQL from the file shipped next to this module
    with open(SCHEMA_PATH, "r", encoding="utf-8") as f:
        conn.executescript(f.read())

def row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    return {k: row[k] for k in row.keys()}

def _epoch(dt: datetime) -> float:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()

def _dt(ts) -> Optional[datetime]:
    if ts is None:
        return None
    return datetime.fromtimestamp(float(ts), tz=timezone.utc)

def _int_or_none(v) -> Optional[int]:
    return None if v is None else int(v)

def _normalize_address(address: str) -> str:
    try:
        return to_addr(address)
    except (ValueError, TypeError):
        # unknown shape: stored rows are checksummed, so this simply matches nothing
        return str(address)


# ---------- row mappers ----------
def block_from_row(row: sqlite3.Row) -> Block:
    return Block(
        block_number=row["block_number"],
        timestamp=_dt(row["timestamp"]),
        transaction_count=row["transaction_count"],
        gas_used=int(row["gas_used"]),
        gas_limit=int(row["gas_limit"]),
    )

def event_from_row(row: sqlite3.Row) -> Event:
    return Event(
        id=row["id"],
        contract_address=row["contract_address"],
        event_name=row["event_name"],
        block_number=row["block_number"],
        transaction_hash=row["transaction_hash"],
        log_index=row["log_index"],
        args=json.loads(row["args"]),
        gas_used=_int_or_none(row["gas_used"]),
        timestamp=_dt(row["timestamp"]),
        created_at=_dt(row["created_at"]),
    )

def snapshot_from_row(row: sqlite3.Row) -> ContractStateSnapshot:
    return ContractStateSnapshot(
        contract_address=row["contract_address"],
        block_number=row["block_number"],
        state_data=json.loads(row["state_data"]),
        timestamp=_dt(row["timestamp"]),
    )


class Storage:
    """Async facade over one sqlite connection."""

    def __init__(self, path: str = None):
        self.path = path or config.DB_PATH
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    # ---------- lifecycle ----------
    async def open(self) -> "Storage":
        def _open():
            conn = db(self.path)
            ensure_schema(conn)
            return conn
        try:
            self._conn = await asyncio.to_thread(_open)
        except sqlite3.Error as e:
            raise PersistenceError(f"cannot open {self.path}: {e}") from e
        logger.info("Storage opened", path=self.path)
        return self

    async def close(self) -> None:
        if self._conn is not None:
            conn, self._conn = self._conn, None
            await asyncio.to_thread(conn.close)
            logger.info("Storage closed", path=self.path)

    async def __aenter__(self):
        return await self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _run(self, fn, *args):
        if self._conn is None:
            raise PersistenceError("storage is not open")

        def _locked():
            with self._lock:
                return fn(self._conn, *args)
        try:
            return await asyncio.to_thread(_locked)
        except sqlite3.Error as e:
            raise PersistenceError(str(e)) from e

    # ---------- writes ----------
    async def store_block(self, block: Block) -> None:
        """Upsert by block_number; the later write wins."""
        def _store(conn, b: Block):
            conn.execute("""
                INSERT INTO blocks (block_number, timestamp, transaction_count, gas_used, gas_limit, created_at)
                VALUES (?,?,?,?,?,?)
                ON CONFLICT(block_number) DO UPDATE SET
                    timestamp=excluded.timestamp,
                    transaction_count=excluded.transaction_count,
                    gas_used=excluded.gas_used,
                    gas_limit=excluded.gas_limit
            """, (
                b.block_number,
                int(_epoch(b.timestamp)),
                b.transaction_count,
                str(b.gas_used),
                str(b.gas_limit),
                time.time(),
            ))
        await self._run(_store, block)

    async def store_event(self, event: Event) -> Tuple[int, bool]:
        """
        Append an event; returns (id, inserted). A second delivery of the same
        (transaction_hash, log_index) is ignored: the first id comes back with
        inserted=False.
        """
        def _store(conn, e: Event) -> Tuple[int, bool]:
            created_at = _epoch(e.created_at) if e.created_at else time.time()
            cur = conn.execute("""
                INSERT OR IGNORE INTO events
                (contract_address, event_name, block_number, transaction_hash, log_index,
                 args, gas_used, timestamp, created_at)
                VALUES (?,?,?,?,?,?,?,?,?)
            """, (
                _normalize_address(e.contract_address),
                e.event_name,
                e.block_number,
                e.transaction_hash,
                e.log_index,
                json_dumps(e.args),
                None if e.gas_used is None else str(e.gas_used),
                _epoch(e.timestamp),
                created_at,
            ))
            if cur.rowcount:
                return cur.lastrowid, True
            row = conn.execute(
                "SELECT id FROM events WHERE transaction_hash=? AND log_index=?",
                (e.transaction_hash, e.log_index),
            ).fetchone()
            return row["id"], False
        return await self._run(_store, event)

    async def store_transaction(self, tx: Transaction) -> None:
        def _store(conn, t: Transaction):
            conn.execute("""
                INSERT INTO transactions
                (hash, block_number, "from", "to", value, gas_used, gas_price, status, timestamp, created_at)
                VALUES (?,?,?,?,?,?,?,?,?,?)
                ON CONFLICT(hash) DO UPDATE SET
                    gas_used=excluded.gas_used,
                    gas_price=excluded.gas_price,
                    status=excluded.status
            """, (
                t.hash.lower(),
                t.block_number,
                t.from_address,
                t.to_address,
                str(t.value),
                str(t.gas_used),
                str(t.gas_price),
                t.status,
                int(_epoch(t.timestamp)),
                time.time(),
            ))
        await self._run(_store, tx)

    async def store_contract_state(self, snapshot: ContractStateSnapshot) -> None:
        """One row per (contract, block); capturing again overwrites."""
        def _store(conn, s: ContractStateSnapshot):
            conn.execute("""
                INSERT INTO contract_states (contract_address, block_number, state_data, timestamp, created_at)
                VALUES (?,?,?,?,?)
                ON CONFLICT(contract_address, block_number) DO UPDATE SET
                    state_data=excluded.state_data,
                    timestamp=excluded.timestamp
            """, (
                _normalize_address(s.contract_address),
                s.block_number,
                json_dumps(s.state_data),
                _epoch(s.timestamp),
                time.time(),
            ))
        await self._run(_store, snapshot)

    async def store_contract(self, address: str, abi: list, name: str = None) -> None:
        def _store(conn):
            conn.execute("""
                INSERT INTO contracts(address, name, abi, added_at)
                VALUES(?,?,?,?)
                ON CONFLICT(address) DO UPDATE SET name=excluded.name, abi=excluded.abi
            """, (_normalize_address(address), name, json.dumps(abi), time.time()))
        await self._run(_store)

    # ---------- reads ----------
    async def get_blocks_by_range(self, start_block: int, end_block: int) -> List[Block]:
        def _q(conn):
            rows = conn.execute("""
                SELECT * FROM blocks
                WHERE block_number BETWEEN ? AND ?
                ORDER BY block_number ASC
            """, (start_block, end_block)).fetchall()
            return [block_from_row(r) for r in rows]
        return await self._run(_q)

    async def get_block(self, block_number: int) -> Optional[Block]:
        def _q(conn):
            row = conn.execute("SELECT * FROM blocks WHERE block_number=?", (block_number,)).fetchone()
            return block_from_row(row) if row else None
        return await self._run(_q)

    async def get_latest_block(self) -> Optional[int]:
        def _q(conn):
            return conn.execute("SELECT MAX(block_number) AS n FROM blocks").fetchone()["n"]
        return await self._run(_q)

    async def get_recent_events(self, contract_address: str, limit: int = 50) -> List[Event]:
        address = _normalize_address(contract_address)

        def _q(conn):
            rows = conn.execute("""
                SELECT * FROM events
                WHERE contract_address = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
            """, (address, max(0, int(limit)))).fetchall()
            return [event_from_row(r) for r in rows]
        return await self._run(_q)

    async def get_events_by_time_range(self, contract_address: str, start: datetime, end: datetime) -> List[Event]:
        address = _normalize_address(contract_address)

        def _q(conn):
            rows = conn.execute("""
                SELECT * FROM events
                WHERE contract_address = ?
                  AND timestamp BETWEEN ? AND ?
                ORDER BY timestamp ASC, id ASC
            """, (address, _epoch(start), _epoch(end))).fetchall()
            return [event_from_row(r) for r in rows]
        return await self._run(_q)

    async def get_events_by_block_range(self, contract_address: str, start_block: int, end_block: int) -> List[Event]:
        address = _normalize_address(contract_address)

        def _q(conn):
            rows = conn.execute("""
                SELECT * FROM events
                WHERE contract_address = ?
                  AND block_number BETWEEN ? AND ?
                ORDER BY block_number ASC, id ASC
            """, (address, start_block, end_block)).fetchall()
            return [event_from_row(r) for r in rows]
        return await self._run(_q)

    async def get_event_count(self, contract_address: str = None) -> int:
        def _q(conn):
            if contract_address is None:
                return conn.execute("SELECT COUNT(*) AS n FROM events").fetchone()["n"]
            return conn.execute(
                "SELECT COUNT(*) AS n FROM events WHERE contract_address=?",
                (_normalize_address(contract_address),),
            ).fetchone()["n"]
        return await self._run(_q)

    async def get_metrics(self, contract_address: str, window: str = config.DEFAULT_METRIC_WINDOW,
                          now: datetime = None) -> List[Dict[str, Any]]:
        """
        Per-event-name aggregates for events whose timestamp falls inside the
        window ("1h", "24h" or "7d"; anything else is treated as the default).
        """
        seconds = config.METRIC_WINDOWS.get(window, config.METRIC_WINDOWS[config.DEFAULT_METRIC_WINDOW])
        since = _epoch(now or utcnow()) - seconds
        address = _normalize_address(contract_address)

        def _q(conn):
            rows = conn.execute("""
                SELECT event_name,
                       COUNT(*)                          AS event_count,
                       COUNT(DISTINCT block_number)      AS blocks_with_events,
                       AVG(CAST(gas_used AS REAL))       AS avg_gas_used
                FROM events
                WHERE contract_address = ? AND timestamp > ?
                GROUP BY event_name
                ORDER BY event_count DESC, event_name ASC
            """, (address, since)).fetchall()
            return [row_to_dict(r) for r in rows]
        return await self._run(_q)

    async def get_contract_state(self, contract_address: str, block_number: int) -> Optional[ContractStateSnapshot]:
        address = _normalize_address(contract_address)

        def _q(conn):
            row = conn.execute("""
                SELECT * FROM contract_states
                WHERE contract_address=? AND block_number=?
            """, (address, block_number)).fetchone()
            return snapshot_from_row(row) if row else None
        return await self._run(_q)

    async def get_contracts(self) -> List[Dict[str, Any]]:
        def _q(conn):
            rows = conn.execute("SELECT address, name, abi FROM contracts ORDER BY added_at ASC").fetchall()
            return [{"address": r["address"], "name": r["name"], "abi": json.loads(r["abi"])} for r in rows]
        return await self._run(_q)
