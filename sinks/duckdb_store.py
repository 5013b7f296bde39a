"""DuckDB columnar store: one table per artifact kind.

Rows carry the envelope columns (fingerprint, kind, source, timestamps,
batch id) followed by the kind's fields. ``fingerprint`` is the primary key
and inserts use ``INSERT OR IGNORE``, so a re-delivered batch adds nothing.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import Any

import duckdb
import pyarrow as pa

from contracts.artifacts import ArtifactKind, Batch, DeliveryReceipt
from contracts.errors import DeliveryError
from contracts.schema import DEFAULT_SCHEMAS, KindSchema
from sinks.rows import records_to_table
from version import SCHEMA_VERSION

logger = logging.getLogger(__name__)

TABLES_CATALOG = "artifactstream_tables"

_DUCKDB_TYPES: dict[pa.DataType, str] = {
    pa.string(): "VARCHAR",
    pa.int64(): "BIGINT",
    pa.float64(): "DOUBLE",
    pa.bool_(): "BOOLEAN",
    pa.binary(): "BLOB",
}

# Errors a retry may fix; everything else (constraint, conversion, catalog) is fatal.
_RETRYABLE = (duckdb.IOException, duckdb.TransactionException)


def duckdb_type(arrow_type: pa.DataType) -> str:
    if pa.types.is_timestamp(arrow_type):
        return "TIMESTAMPTZ" if arrow_type.tz else "TIMESTAMP"
    try:
        return _DUCKDB_TYPES[arrow_type]
    except KeyError:
        raise ValueError(f"No DuckDB type for Arrow type {arrow_type}") from None


def _quote(ident: str) -> str:
    return '"' + ident.replace('"', '""') + '"'


def _as_jsonable_row(row: Mapping[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k, v in row.items():
        if isinstance(v, (datetime, date)):
            out[k] = v.isoformat()
        else:
            out[k] = v
    return out


@dataclass(frozen=True)
class DuckDBConfig:
    database: str = ":memory:"
    threads: int | None = None


class DuckDBStore:
    """Batched Arrow inserts into per-kind DuckDB tables."""

    def __init__(
        self,
        cfg: DuckDBConfig,
        schemas: Mapping[ArtifactKind, KindSchema] | None = None,
        *,
        create_tables: bool = True,
    ) -> None:
        self._cfg = cfg
        self._schemas = dict(schemas or DEFAULT_SCHEMAS)
        self._lock = threading.Lock()
        self._con = duckdb.connect(cfg.database, read_only=False)
        if cfg.threads:
            self._con.execute(f"PRAGMA threads={int(cfg.threads)};")
        if create_tables:
            self.init_tables()

    def sink_name(self) -> str:
        return "duckdb"

    def close(self) -> None:
        with self._lock:
            self._con.close()

    # -------------------------
    # Schema management
    # -------------------------

    def create_table_sql(self, schema: KindSchema) -> str:
        cols = []
        for f in schema.arrow_schema():
            not_null = " NOT NULL" if f.name == "fingerprint" else ""
            cols.append(f"{_quote(f.name)} {duckdb_type(f.type)}{not_null}")
        cols.append("PRIMARY KEY (fingerprint)")
        return f"CREATE TABLE IF NOT EXISTS {_quote(schema.table_name)} (\n  " + ",\n  ".join(cols) + "\n);"

    def init_tables(self) -> list[str]:
        """Create the catalog table and one table per kind. Returns the kind table names."""
        created: list[str] = []
        with self._lock:
            self._con.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {TABLES_CATALOG} (
                    table_name VARCHAR PRIMARY KEY,
                    kind VARCHAR NOT NULL,
                    sort_field VARCHAR,
                    schema_version INTEGER NOT NULL
                );
                """
            )
            for schema in self._schemas.values():
                self._con.execute(self.create_table_sql(schema))
                self._con.execute(
                    f"INSERT OR REPLACE INTO {TABLES_CATALOG} VALUES (?, ?, ?, ?);",
                    [schema.table_name, schema.kind.value, schema.sort_field, SCHEMA_VERSION],
                )
                created.append(schema.table_name)
        logger.info("DuckDB tables ready: %s", ", ".join(created))
        return created

    # -------------------------
    # Delivery
    # -------------------------

    def deliver(self, batch: Batch) -> DeliveryReceipt:
        ingested = datetime.now(UTC)
        groups = batch.by_kind()
        with self._lock:
            try:
                self._con.execute("BEGIN TRANSACTION;")
                for kind, records in groups.items():
                    schema = self._schemas.get(kind)
                    if schema is None:
                        raise DeliveryError(f"no table for kind {kind.value!r}", retryable=False)
                    self._insert(schema, records_to_table(schema, records, ingested_ts=ingested))
                self._con.execute("COMMIT;")
            except DeliveryError:
                self._rollback()
                raise
            except (duckdb.Error, pa.ArrowException) as exc:
                self._rollback()
                retryable = isinstance(exc, _RETRYABLE)
                raise DeliveryError(f"duckdb insert failed: {exc}", retryable=retryable) from exc
        return DeliveryReceipt.success(len(batch), sink=self.sink_name())

    def _insert(self, schema: KindSchema, table: pa.Table) -> None:
        cols = ", ".join(_quote(n) for n in table.schema.names)
        view = f"incoming_{schema.kind.value}"
        self._con.register(view, table)
        try:
            self._con.execute(
                f"INSERT OR IGNORE INTO {_quote(schema.table_name)} ({cols}) SELECT {cols} FROM {view};"
            )
        finally:
            self._con.unregister(view)

    def _rollback(self) -> None:
        try:
            self._con.execute("ROLLBACK;")
        except duckdb.Error as exc:
            logger.debug("Rollback after failed insert did not apply: %s", exc)

    # -------------------------
    # Queries (CLI summaries and tests)
    # -------------------------

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        with self._lock:
            cur = self._con.execute(sql, list(params))
            cols = [d[0] for d in cur.description]
            rows = cur.fetchall()
        return [_as_jsonable_row(dict(zip(cols, r, strict=False))) for r in rows]

    def count(self, kind: ArtifactKind) -> int:
        schema = self._schemas[kind]
        rows = self.query(f"SELECT count(*) AS n FROM {_quote(schema.table_name)};")
        return int(rows[0]["n"])

    def tables(self) -> list[dict[str, Any]]:
        return self.query(f"SELECT table_name, kind, sort_field, schema_version FROM {TABLES_CATALOG} ORDER BY 1;")


__all__ = ["DuckDBConfig", "DuckDBStore", "duckdb_type"]
