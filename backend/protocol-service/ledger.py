"""
Odontoplan Protocol Service - Metered Ledger Backends

Provides consume/refund ledgers keyed by (tenant, operation, idempotency key):
- SqliteMeteredLedger (runtime default; BEGIN IMMEDIATE serializes writers)
- InMemoryMeteredLedger (tests and single-process runs)

A key is charged at most once and refunded at most once, and only after a
successful consume.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional, Tuple

from errors import LedgerError
from models import MeteredOperation, MeteredOperationType, utc_now

logger = logging.getLogger(__name__)

DEFAULT_OPERATION_COSTS: Dict[str, int] = {
    MeteredOperationType.CASE_ANALYSIS.value: 1,
    MeteredOperationType.DSD_SIMULATION.value: 1,
}


@dataclass(frozen=True)
class ConsumeResult:
    allowed: bool
    credits_remaining: int
    already_consumed: bool = False


def _op_value(operation) -> str:
    return operation.value if isinstance(operation, MeteredOperationType) else str(operation)


class MeteredLedger:
    def consume(self, tenant_id: str, operation, idempotency_key: str) -> ConsumeResult:
        raise NotImplementedError

    def refund(self, tenant_id: str, operation, idempotency_key: str) -> bool:
        raise NotImplementedError

    def operation(self, tenant_id: str, operation, idempotency_key: str) -> Optional[MeteredOperation]:
        raise NotImplementedError

    def transactions(self, tenant_id: str, operation, idempotency_key: str) -> List[str]:
        raise NotImplementedError

    def grant(self, tenant_id: str, credits: int) -> int:
        raise NotImplementedError

    def balance(self, tenant_id: str) -> int:
        raise NotImplementedError


class InMemoryMeteredLedger(MeteredLedger):
    def __init__(self, operation_costs: Optional[Dict[str, int]] = None) -> None:
        self.operation_costs = dict(operation_costs or DEFAULT_OPERATION_COSTS)
        self._lock = Lock()
        self._balances: Dict[str, int] = {}
        self._operations: Dict[Tuple[str, str, str], MeteredOperation] = {}
        self._transactions: List[Tuple[str, str, str, str]] = []

    def _cost(self, operation: str) -> int:
        return self.operation_costs.get(operation, 1)

    def grant(self, tenant_id: str, credits: int) -> int:
        with self._lock:
            self._balances[tenant_id] = self._balances.get(tenant_id, 0) + int(credits)
            return self._balances[tenant_id]

    def balance(self, tenant_id: str) -> int:
        with self._lock:
            return self._balances.get(tenant_id, 0)

    def consume(self, tenant_id: str, operation, idempotency_key: str) -> ConsumeResult:
        op = _op_value(operation)
        key = (tenant_id, op, idempotency_key)
        with self._lock:
            balance = self._balances.get(tenant_id, 0)
            existing = self._operations.get(key)
            if existing is not None:
                if existing.refunded:
                    raise LedgerError(f"Operation {idempotency_key} was already refunded; use a new key.")
                return ConsumeResult(True, balance, already_consumed=True)
            cost = self._cost(op)
            if balance < cost:
                return ConsumeResult(False, balance)
            self._balances[tenant_id] = balance - cost
            self._operations[key] = MeteredOperation(
                tenant_id=tenant_id,
                operation=op,
                idempotency_key=idempotency_key,
                consumed=True,
            )
            self._transactions.append((tenant_id, op, idempotency_key, "consume"))
            return ConsumeResult(True, self._balances[tenant_id])

    def refund(self, tenant_id: str, operation, idempotency_key: str) -> bool:
        op = _op_value(operation)
        key = (tenant_id, op, idempotency_key)
        with self._lock:
            existing = self._operations.get(key)
            if existing is None or not existing.consumed or existing.refunded:
                return False
            self._balances[tenant_id] = self._balances.get(tenant_id, 0) + self._cost(op)
            existing.refunded = True
            existing.updated_at = utc_now()
            self._transactions.append((tenant_id, op, idempotency_key, "refund"))
            return True

    def operation(self, tenant_id: str, operation, idempotency_key: str) -> Optional[MeteredOperation]:
        with self._lock:
            found = self._operations.get((tenant_id, _op_value(operation), idempotency_key))
            return found.model_copy() if found else None

    def transactions(self, tenant_id: str, operation, idempotency_key: str) -> List[str]:
        op = _op_value(operation)
        with self._lock:
            return [
                kind
                for t, o, k, kind in self._transactions
                if (t, o, k) == (tenant_id, op, idempotency_key)
            ]


class SqliteMeteredLedger(MeteredLedger):
    def __init__(self, db_path: str, operation_costs: Optional[Dict[str, int]] = None) -> None:
        if not db_path:
            raise RuntimeError("SQLite ledger requires a non-empty db_path.")
        self.db_path = str(Path(db_path).expanduser().resolve())
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.operation_costs = dict(operation_costs or DEFAULT_OPERATION_COSTS)
        self._lock = Lock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        # Autocommit mode so BEGIN IMMEDIATE controls the write lock explicitly.
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS credit_balances (
                    tenant_id TEXT PRIMARY KEY,
                    credits INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS metered_operations (
                    tenant_id TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    idempotency_key TEXT NOT NULL,
                    cost INTEGER NOT NULL,
                    consumed INTEGER NOT NULL DEFAULT 0,
                    refunded INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, operation, idempotency_key)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS credit_transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    idempotency_key TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE (tenant_id, operation, idempotency_key, kind)
                )
                """
            )
        finally:
            conn.close()

    def _cost(self, operation: str) -> int:
        return self.operation_costs.get(operation, 1)

    @staticmethod
    def _balance(conn: sqlite3.Connection, tenant_id: str) -> int:
        row = conn.execute(
            "SELECT credits FROM credit_balances WHERE tenant_id = ?", (tenant_id,)
        ).fetchone()
        return int(row["credits"]) if row else 0

    def grant(self, tenant_id: str, credits: int) -> int:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                conn.execute(
                    """
                    INSERT INTO credit_balances (tenant_id, credits) VALUES (?, ?)
                    ON CONFLICT(tenant_id) DO UPDATE SET credits = credits + excluded.credits
                    """,
                    (tenant_id, int(credits)),
                )
                balance = self._balance(conn, tenant_id)
                conn.execute("COMMIT")
                return balance
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise LedgerError(f"Could not grant credits to {tenant_id}: {exc}") from exc
            finally:
                conn.close()

    def balance(self, tenant_id: str) -> int:
        conn = self._connect()
        try:
            return self._balance(conn, tenant_id)
        finally:
            conn.close()

    def consume(self, tenant_id: str, operation, idempotency_key: str) -> ConsumeResult:
        op = _op_value(operation)
        cost = self._cost(op)
        now = utc_now().isoformat()
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                existing = conn.execute(
                    """
                    SELECT consumed, refunded FROM metered_operations
                    WHERE tenant_id = ? AND operation = ? AND idempotency_key = ?
                    """,
                    (tenant_id, op, idempotency_key),
                ).fetchone()
                balance = self._balance(conn, tenant_id)
                if existing is not None and existing["refunded"]:
                    conn.execute("ROLLBACK")
                    raise LedgerError(f"Operation {idempotency_key} was already refunded; use a new key.")
                if existing is not None and existing["consumed"]:
                    conn.execute("COMMIT")
                    logger.info("Credits already consumed for %s/%s, skipping.", op, idempotency_key)
                    return ConsumeResult(True, balance, already_consumed=True)
                if balance < cost:
                    conn.execute("ROLLBACK")
                    return ConsumeResult(False, balance)
                conn.execute(
                    "UPDATE credit_balances SET credits = credits - ? WHERE tenant_id = ?",
                    (cost, tenant_id),
                )
                conn.execute(
                    """
                    INSERT INTO metered_operations (
                        tenant_id, operation, idempotency_key, cost, consumed, refunded, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, 1, 0, ?, ?)
                    """,
                    (tenant_id, op, idempotency_key, cost, now, now),
                )
                conn.execute(
                    """
                    INSERT INTO credit_transactions (tenant_id, operation, idempotency_key, kind, amount, created_at)
                    VALUES (?, ?, ?, 'consume', ?, ?)
                    """,
                    (tenant_id, op, idempotency_key, cost, now),
                )
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise LedgerError(f"Credit consume failed for {tenant_id}: {exc}") from exc
            finally:
                conn.close()
        logger.info(
            "Credits consumed: tenant=%s op=%s key=%s remaining=%d",
            tenant_id,
            op,
            idempotency_key,
            balance - cost,
        )
        return ConsumeResult(True, balance - cost)

    def refund(self, tenant_id: str, operation, idempotency_key: str) -> bool:
        op = _op_value(operation)
        now = utc_now().isoformat()
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                existing = conn.execute(
                    """
                    SELECT cost, consumed, refunded FROM metered_operations
                    WHERE tenant_id = ? AND operation = ? AND idempotency_key = ?
                    """,
                    (tenant_id, op, idempotency_key),
                ).fetchone()
                if existing is None or not existing["consumed"] or existing["refunded"]:
                    conn.execute("ROLLBACK")
                    return False
                cost = int(existing["cost"])
                conn.execute(
                    """
                    INSERT INTO credit_balances (tenant_id, credits) VALUES (?, ?)
                    ON CONFLICT(tenant_id) DO UPDATE SET credits = credits + excluded.credits
                    """,
                    (tenant_id, cost),
                )
                conn.execute(
                    """
                    UPDATE metered_operations SET refunded = 1, updated_at = ?
                    WHERE tenant_id = ? AND operation = ? AND idempotency_key = ?
                    """,
                    (now, tenant_id, op, idempotency_key),
                )
                conn.execute(
                    """
                    INSERT INTO credit_transactions (tenant_id, operation, idempotency_key, kind, amount, created_at)
                    VALUES (?, ?, ?, 'refund', ?, ?)
                    """,
                    (tenant_id, op, idempotency_key, cost, now),
                )
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise LedgerError(f"Credit refund failed for {tenant_id}: {exc}") from exc
            finally:
                conn.close()
        logger.info("Credits refunded: tenant=%s op=%s key=%s", tenant_id, op, idempotency_key)
        return True

    def operation(self, tenant_id: str, operation, idempotency_key: str) -> Optional[MeteredOperation]:
        conn = self._connect()
        try:
            row = conn.execute(
                """
                SELECT tenant_id, operation, idempotency_key, consumed, refunded, created_at, updated_at
                FROM metered_operations
                WHERE tenant_id = ? AND operation = ? AND idempotency_key = ?
                """,
                (tenant_id, _op_value(operation), idempotency_key),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return MeteredOperation(
            tenant_id=row["tenant_id"],
            operation=row["operation"],
            idempotency_key=row["idempotency_key"],
            consumed=bool(row["consumed"]),
            refunded=bool(row["refunded"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def transactions(self, tenant_id: str, operation, idempotency_key: str) -> List[str]:
        conn = self._connect()
        try:
            rows = conn.execute(
                """
                SELECT kind FROM credit_transactions
                WHERE tenant_id = ? AND operation = ? AND idempotency_key = ?
                ORDER BY id
                """,
                (tenant_id, _op_value(operation), idempotency_key),
            ).fetchall()
        finally:
            conn.close()
        return [r["kind"] for r in rows]
