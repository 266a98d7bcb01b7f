"""
Persistence for meter readings, invoices and monthly bills.

One DB-API store with two backends, chosen by DATABASE_URL:
  sqlite:///path/to/file.db   - per-call sqlite3 connections (WAL)
  postgresql://...            - psycopg2 ThreadedConnectionPool

Each entity is exposed as a Table with find_many / find_unique / create /
update.  Every method takes an optional ``conn``; pass the connection from
``store.transaction()`` to make several writes commit or roll back together.
"""

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Type

import psycopg2
import psycopg2.pool

from models import Invoice, MeterReading, MonthlyBill, Record

logger = logging.getLogger("netmeter-api.store")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def generate_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4()}"


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS meter_readings (
        "id"             TEXT PRIMARY KEY,
        "customer_id"    TEXT NOT NULL,
        "application_id" TEXT,
        "device_id"      TEXT NOT NULL,
        "kwh_generated"  DOUBLE PRECISION NOT NULL,
        "kwh_exported"   DOUBLE PRECISION NOT NULL,
        "kwh_imported"   DOUBLE PRECISION NOT NULL,
        "voltage"        DOUBLE PRECISION,
        "current"        DOUBLE PRECISION,
        "timestamp"      TEXT NOT NULL,
        "created_at"     TEXT NOT NULL,
        "status"         TEXT NOT NULL DEFAULT 'pending',
        "month"          INTEGER,
        "year"           INTEGER,
        "net_units"      DOUBLE PRECISION
    )
    """,
    'CREATE INDEX IF NOT EXISTS idx_mr_period ON meter_readings ("year", "month", "status")',
    'CREATE INDEX IF NOT EXISTS idx_mr_customer ON meter_readings ("customer_id")',
    """
    CREATE TABLE IF NOT EXISTS invoices (
        "id"             TEXT PRIMARY KEY,
        "application_id" TEXT,
        "customer_id"    TEXT NOT NULL,
        "type"           TEXT NOT NULL,
        "description"    TEXT NOT NULL,
        "amount"         DOUBLE PRECISION NOT NULL,
        "status"         TEXT NOT NULL DEFAULT 'pending',
        "due_date"       TEXT NOT NULL,
        "paid_at"        TEXT,
        "line_items"     TEXT,
        "created_at"     TEXT NOT NULL,
        "updated_at"     TEXT NOT NULL
    )
    """,
    'CREATE INDEX IF NOT EXISTS idx_inv_customer ON invoices ("customer_id")',
    """
    CREATE TABLE IF NOT EXISTS monthly_bills (
        "id"             TEXT PRIMARY KEY,
        "invoice_id"     TEXT NOT NULL,
        "customer_id"    TEXT NOT NULL,
        "application_id" TEXT,
        "month"          INTEGER NOT NULL,
        "year"           INTEGER NOT NULL,
        "kwh_generated"  DOUBLE PRECISION NOT NULL,
        "kwh_exported"   DOUBLE PRECISION NOT NULL,
        "kwh_imported"   DOUBLE PRECISION NOT NULL,
        "net_amount"     DOUBLE PRECISION NOT NULL,
        "created_at"     TEXT NOT NULL
    )
    """,
    'CREATE INDEX IF NOT EXISTS idx_mb_invoice ON monthly_bills ("invoice_id")',
    'CREATE INDEX IF NOT EXISTS idx_mb_customer ON monthly_bills ("customer_id")',
]


class Table:
    """Repository for one record type."""

    def __init__(
        self,
        store: "Store",
        name: str,
        model: Type[Record],
        id_prefix: str,
        json_fields: Sequence[str] = (),
    ):
        self.store = store
        self.name = name
        self.model = model
        self.id_prefix = id_prefix
        self.json_fields = set(json_fields)
        self.columns = list(model.model_fields)

    # -- row mapping -------------------------------------------------------

    def _to_row(self, record: Record) -> Dict[str, Any]:
        row = record.model_dump(mode="json")
        for f in self.json_fields:
            row[f] = json.dumps(row[f]) if row[f] is not None else None
        return row

    def _from_row(self, row: Dict[str, Any]) -> Record:
        row = dict(row)
        for f in self.json_fields:
            if row.get(f) is not None:
                row[f] = json.loads(row[f])
            else:
                row[f] = []
        return self.model.model_validate(row)

    def _check_columns(self, names) -> None:
        unknown = [n for n in names if n not in self.columns]
        if unknown:
            raise ValueError(f"Unknown {self.name} column(s): {', '.join(unknown)}")

    # -- queries -----------------------------------------------------------

    def find_many(
        self,
        where: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
        conn=None,
    ) -> List[Record]:
        """Rows matching every key in *where* (None matches NULL).

        *order_by* is a column name, prefixed with '-' for descending.
        Without it rows come back in insertion order.
        """
        ph = self.store.placeholder
        where = where or {}
        self._check_columns(where)

        parts, params = [], []
        for col, value in where.items():
            if value is None:
                parts.append(f'"{col}" IS NULL')
            else:
                parts.append(f'"{col}" = {ph}')
                params.append(value.value if hasattr(value, "value") else value)
        sql = f"SELECT * FROM {self.name}"
        if parts:
            sql += " WHERE " + " AND ".join(parts)

        if order_by:
            desc = order_by.startswith("-")
            col = order_by.lstrip("-")
            self._check_columns([col])
            sql += f' ORDER BY "{col}" {"DESC" if desc else "ASC"}'
        else:
            sql += f" ORDER BY {self.store.insertion_order}"
        if limit is not None:
            sql += f" LIMIT {int(limit)}"

        with self.store.using(conn) as c:
            rows = self.store.fetch_dicts(c, sql, params)
        return [self._from_row(r) for r in rows]

    def find_unique(self, record_id: str, conn=None) -> Optional[Record]:
        ph = self.store.placeholder
        with self.store.using(conn) as c:
            rows = self.store.fetch_dicts(c, f'SELECT * FROM {self.name} WHERE "id" = {ph}', [record_id])
        return self._from_row(rows[0]) if rows else None

    def create(self, data: Dict[str, Any], conn=None) -> Record:
        """Insert a new record.  id/created_at/updated_at are filled in when absent."""
        data = dict(data)
        now = utc_now_iso()
        data.setdefault("id", generate_id(self.id_prefix))
        if "created_at" in self.columns:
            data.setdefault("created_at", now)
        if "updated_at" in self.columns:
            data.setdefault("updated_at", now)
        record = self.model.model_validate(data)

        row = self._to_row(record)
        cols = ", ".join(f'"{c}"' for c in row)
        marks = ", ".join([self.store.placeholder] * len(row))
        with self.store.using(conn) as c:
            cur = c.cursor()
            cur.execute(f"INSERT INTO {self.name} ({cols}) VALUES ({marks})", list(row.values()))
        return record

    def update(self, record_id: str, data: Dict[str, Any], conn=None) -> Optional[Record]:
        """Apply *data* to one record.  Returns the updated record, or None if absent."""
        with self.store.using(conn) as c:
            current = self.find_unique(record_id, conn=c)
            if current is None:
                return None
            merged = current.model_dump()
            merged.update(data)
            if "updated_at" in self.columns:
                merged["updated_at"] = utc_now_iso()
            record = self.model.model_validate(merged)

            row = self._to_row(record)
            row.pop("id")
            ph = self.store.placeholder
            assignments = ", ".join(f'"{col}" = {ph}' for col in row)
            cur = c.cursor()
            cur.execute(
                f'UPDATE {self.name} SET {assignments} WHERE "id" = {ph}',
                list(row.values()) + [record_id],
            )
        return record


class Store:
    """Connection management plus one Table per entity."""

    def __init__(self, url: str):
        self.url = url
        self._pool: Optional[psycopg2.pool.ThreadedConnectionPool] = None

        if url.startswith("sqlite:///"):
            self.backend = "sqlite"
            self.path = url[len("sqlite:///"):]
            if not self.path or self.path == ":memory:":
                raise ValueError("SQLite store needs a file path, e.g. sqlite:///./netmeter.db")
            self._ensure_sqlite_dir()
            self.placeholder = "?"
            self.insertion_order = "rowid"
        elif url.startswith(("postgresql://", "postgres://")):
            self.backend = "postgresql"
            self.placeholder = "%s"
            self.insertion_order = '"created_at", "id"'
        else:
            raise ValueError(f"Unsupported DATABASE_URL scheme: {url.split(':', 1)[0]}")

        self.meter_readings = Table(self, "meter_readings", MeterReading, "mr")
        self.invoices = Table(self, "invoices", Invoice, "inv", json_fields=("line_items",))
        self.monthly_bills = Table(self, "monthly_bills", MonthlyBill, "bill")

    def _ensure_sqlite_dir(self) -> None:
        Path(self.path).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)

    # -- connections -------------------------------------------------------

    def _get_pool(self) -> psycopg2.pool.ThreadedConnectionPool:
        if self._pool is None or self._pool.closed:
            self._pool = psycopg2.pool.ThreadedConnectionPool(minconn=1, maxconn=10, dsn=self.url)
        return self._pool

    def _connect(self):
        if self.backend == "sqlite":
            conn = sqlite3.connect(self.path, timeout=10)
            conn.execute("PRAGMA journal_mode=WAL")
            return conn
        return self._get_pool().getconn()

    def _release(self, conn) -> None:
        if self.backend == "sqlite":
            conn.close()
        else:
            self._get_pool().putconn(conn)

    @contextmanager
    def transaction(self) -> Iterator[Any]:
        """Connection whose writes commit together on exit, or roll back on error."""
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._release(conn)

    @contextmanager
    def using(self, conn=None) -> Iterator[Any]:
        """Reuse *conn* if given, otherwise run in a fresh transaction."""
        if conn is not None:
            yield conn
            return
        with self.transaction() as c:
            yield c

    @staticmethod
    def fetch_dicts(conn, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        cur = conn.cursor()
        cur.execute(sql, list(params))
        columns = [desc[0] for desc in cur.description]
        return [dict(zip(columns, row)) for row in cur.fetchall()]

    # -- lifecycle ---------------------------------------------------------

    def init_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        with self.transaction() as conn:
            cur = conn.cursor()
            for stmt in SCHEMA:
                cur.execute(stmt)
        logger.info("Store initialized (%s)", self.backend)

    def ping(self) -> Dict[str, int]:
        """Row counts per table; raises if the database is unreachable."""
        counts = {}
        with self.transaction() as conn:
            cur = conn.cursor()
            for table in (self.meter_readings, self.invoices, self.monthly_bills):
                cur.execute(f"SELECT COUNT(*) FROM {table.name}")
                counts[table.name] = cur.fetchone()[0]
        return counts

    def close(self) -> None:
        if self._pool is not None and not self._pool.closed:
            self._pool.closeall()


_store: Optional[Store] = None


def get_store() -> Store:
    """Lazy-initialize the process-wide store from DATABASE_URL."""
    global _store
    if _store is None:
        from config import CONFIG

        _store = Store(CONFIG.database_url)
        _store.init_schema()
    return _store
