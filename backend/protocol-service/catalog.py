"""
Odontoplan Protocol Service - Reference Catalog Backends

Provides repository implementations for resin catalog reads:
- SqliteCatalogRepository (runtime default when ODP_CATALOG_DB_PATH is set)
- InMemoryCatalogRepository (seed data and tests)

Each case performs exactly one batched read and wraps the rows in a
request-scoped CatalogIndex; nothing is cached across requests.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from threading import Lock
from typing import Dict, Iterable, List, Optional, Sequence

from models import CatalogEntry
from vocabulary import fold_token

logger = logging.getLogger(__name__)

SEED_CATALOG_PATH = Path(__file__).resolve().parent / "reference_data" / "resin_catalog.json"

# Product lines offered as substitutes even when the protocol never names them.
ALWAYS_CONSIDERED_LINES = ("Harmonize", "Empress Direct")

_LAYER_TYPE_ALIASES = {
    "esmalte": "enamel",
    "enamel": "enamel",
    "esmalte translucido": "translucent",
    "translucido": "translucent",
    "translucent": "translucent",
    "trans": "translucent",
    "dentina": "dentin",
    "dentin": "dentin",
    "corpo": "body",
    "body": "body",
    "universal": "universal",
    "opaco": "opaque",
    "opaque": "opaque",
    "efeito": "effect",
    "effect": "effect",
}


def normalize_layer_type(raw: str) -> str:
    folded = fold_token(raw or "")
    return _LAYER_TYPE_ALIASES.get(folded, folded or "universal")


def product_line_of(resin_brand: str) -> str:
    _, sep, line = (resin_brand or "").partition(" - ")
    return (line if sep else resin_brand or "").strip()


def load_seed_rows(path: Optional[Path] = None) -> List[CatalogEntry]:
    seed_path = Path(path) if path else SEED_CATALOG_PATH
    with seed_path.open("r", encoding="utf-8") as f:
        payload = json.load(f)
    return [CatalogEntry.model_validate(row) for row in payload]


class CatalogRepository:
    def fetch_rows(self, product_lines: Iterable[str]) -> List[CatalogEntry]:
        """One batched read: every row whose product line contains any filter (case-insensitive)."""
        raise NotImplementedError


class InMemoryCatalogRepository(CatalogRepository):
    def __init__(self, rows: Optional[Sequence[CatalogEntry]] = None) -> None:
        self._rows: List[CatalogEntry] = list(rows or [])
        self.read_count = 0

    @classmethod
    def from_seed(cls, path: Optional[Path] = None) -> "InMemoryCatalogRepository":
        return cls(load_seed_rows(path))

    def fetch_rows(self, product_lines: Iterable[str]) -> List[CatalogEntry]:
        self.read_count += 1
        filters = [x.lower() for x in product_lines if x]
        if not filters:
            return []
        return [r for r in self._rows if any(f in r.product_line.lower() for f in filters)]


class SqliteCatalogRepository(CatalogRepository):
    def __init__(self, db_path: str) -> None:
        if not db_path:
            raise RuntimeError("SQLite catalog requires a non-empty db_path.")
        self.db_path = str(Path(db_path).expanduser().resolve())
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS resin_catalog (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    product_line TEXT NOT NULL,
                    shade TEXT NOT NULL,
                    layer_type TEXT NOT NULL,
                    UNIQUE (product_line, shade)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_resin_catalog_line ON resin_catalog(product_line)"
            )

    def upsert_rows(self, rows: Iterable[CatalogEntry]) -> int:
        count = 0
        with self._lock, self._connect() as conn:
            for row in rows:
                conn.execute(
                    """
                    INSERT INTO resin_catalog (product_line, shade, layer_type)
                    VALUES (?, ?, ?)
                    ON CONFLICT(product_line, shade) DO UPDATE SET
                        layer_type = excluded.layer_type
                    """,
                    (row.product_line, row.shade, row.layer_type),
                )
                count += 1
        return count

    def seed_if_empty(self, path: Optional[Path] = None) -> int:
        with self._connect() as conn:
            existing = conn.execute("SELECT COUNT(*) AS n FROM resin_catalog").fetchone()["n"]
        if existing:
            return 0
        inserted = self.upsert_rows(load_seed_rows(path))
        logger.info("Seeded resin catalog with %d rows at %s.", inserted, self.db_path)
        return inserted

    def fetch_rows(self, product_lines: Iterable[str]) -> List[CatalogEntry]:
        filters = [x.lower() for x in product_lines if x]
        if not filters:
            return []
        clause = " OR ".join("lower(product_line) LIKE ?" for _ in filters)
        params = [f"%{x}%" for x in filters]
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT product_line, shade, layer_type FROM resin_catalog WHERE {clause} ORDER BY id",
                params,
            ).fetchall()
        return [
            CatalogEntry(product_line=r["product_line"], shade=r["shade"], layer_type=r["layer_type"])
            for r in rows
        ]


class CatalogIndex:
    """Request-scoped lookup over the rows returned by one batched read."""

    def __init__(self, rows: Iterable[CatalogEntry]) -> None:
        self.rows: List[CatalogEntry] = [
            CatalogEntry(
                product_line=r.product_line,
                shade=r.shade,
                layer_type=normalize_layer_type(r.layer_type),
            )
            for r in rows
        ]
        self._by_line: Dict[str, List[CatalogEntry]] = {}

    @classmethod
    def load(cls, repository: CatalogRepository, product_lines: Iterable[str]) -> "CatalogIndex":
        wanted = {x.strip() for x in product_lines if x and x.strip()}
        wanted.update(ALWAYS_CONSIDERED_LINES)
        rows = repository.fetch_rows(sorted(wanted))
        logger.info("Loaded %d catalog rows for %d product line(s).", len(rows), len(wanted))
        return cls(rows)

    def rows_for_line(self, product_line: str) -> List[CatalogEntry]:
        key = (product_line or "").strip().lower()
        if not key:
            return []
        if key not in self._by_line:
            self._by_line[key] = [r for r in self.rows if key in r.product_line.lower()]
        return self._by_line[key]

    def find(self, product_line: str, shade: str) -> Optional[CatalogEntry]:
        for row in self.rows_for_line(product_line):
            if row.shade == shade:
                return row
        return None

    def has_bleach_shades(self, product_line: str) -> bool:
        return any(
            row.shade.upper().startswith("BL") or "bianco" in row.shade.lower()
            for row in self.rows_for_line(product_line)
        )
