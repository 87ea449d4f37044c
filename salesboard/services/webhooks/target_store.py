"""
Narrow read/write interface over the enrichment target tables.

Enrichment rules name their target table and columns as plain strings. Those
names are only ever resolved through TARGET_TABLES, so a rule can never reach
a table or column outside this allow-list. Values are coerced to the column's
Python type before they are bound: ISO strings to datetimes, "false" to False,
and JSON text form (1001, true) for string columns.
"""

from datetime import datetime, timezone
from typing import Any, Iterable, Optional

import structlog
from sqlalchemy import Boolean, DateTime, Float, Integer, UniqueConstraint, insert, select, update

from salesboard.services.shared.database import dialect_insert
from salesboard.services.shared.models import Closer, Lead, Payment, SalesEvent
from salesboard.services.webhooks.extraction import to_text

logger = structlog.get_logger()

TARGET_TABLES = {
    "leads":    Lead,
    "closers":  Closer,
    "events":   SalesEvent,
    "payments": Payment,
}

# Managed by the store itself; rules may not map onto these
PROTECTED_COLUMNS = frozenset({"id", "organization_id", "created_at", "updated_at"})


class EnrichmentConfigError(ValueError):
    """Rule references a table or column outside the allow-list."""


def _table(name: str):
    model = TARGET_TABLES.get(name)
    if model is None:
        raise EnrichmentConfigError(f"Unknown target table: {name}")
    return model.__table__


def validate_target(table: str, columns: Iterable[str]) -> None:
    """Raise EnrichmentConfigError unless every column is a writable column of `table`."""
    tbl = _table(table)
    for column in columns:
        if column not in tbl.c or column in PROTECTED_COLUMNS:
            raise EnrichmentConfigError(f"Unknown column {column!r} on target table {table!r}")


_TRUE_STRINGS = frozenset({"true", "t", "1", "yes", "y", "on"})
_FALSE_STRINGS = frozenset({"false", "f", "0", "no", "n", "off"})


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    raise ValueError(f"invalid boolean value: {value!r}")


def _coerce(column, value: Any) -> Any:
    if value is None:
        return None
    col_type = column.type
    if isinstance(col_type, DateTime):
        if isinstance(value, datetime):
            parsed = value
        else:
            text = str(value).strip()
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            parsed = datetime.fromisoformat(text)
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    if isinstance(col_type, Boolean):
        return _to_bool(value)
    if isinstance(col_type, Float):
        return float(value)
    if isinstance(col_type, Integer):
        return int(float(value))
    return to_text(value)


class TargetStore:
    """
    find_one / update / upsert / insert against one allow-listed table at a time.
    Every call is scoped to a single organization_id.
    """

    def __init__(self, db):
        self.db = db

    def _row(self, tbl, row: dict[str, Any]) -> dict[str, Any]:
        values = {}
        for name, value in row.items():
            if name not in tbl.c:
                raise EnrichmentConfigError(f"Unknown column {name!r} on target table {tbl.name!r}")
            values[name] = _coerce(tbl.c[name], value)
        return values

    def find_one(self, table: str, column: str, value: Any, organization_id: str) -> Optional[int]:
        tbl = _table(table)
        if column not in tbl.c:
            raise EnrichmentConfigError(f"Unknown column {column!r} on target table {table!r}")
        return self.db.execute(
            select(tbl.c.id)
            .where(tbl.c[column] == _coerce(tbl.c[column], value), tbl.c.organization_id == organization_id)
            .limit(1)
        ).scalar_one_or_none()

    def update(self, table: str, row_id: int, values: dict[str, Any]) -> None:
        tbl = _table(table)
        protected = PROTECTED_COLUMNS.intersection(values)
        if protected:
            raise EnrichmentConfigError(f"Cannot update managed column(s) {sorted(protected)} on {table!r}")
        row = self._row(tbl, values)
        row["updated_at"] = datetime.now(timezone.utc).replace(tzinfo=None)
        self.db.execute(update(tbl).where(tbl.c.id == row_id).values(**row))

    def insert(self, table: str, row: dict[str, Any]) -> int:
        tbl = _table(table)
        result = self.db.execute(insert(tbl).values(**self._row(tbl, row)).returning(tbl.c.id))
        return result.scalar_one()

    def has_unique(self, table: str, columns: Iterable[str]) -> bool:
        """True when `table` carries a unique constraint on exactly `columns`."""
        wanted = set(columns)
        for constraint in _table(table).constraints:
            if isinstance(constraint, UniqueConstraint) and {c.name for c in constraint.columns} == wanted:
                return True
        return False

    def upsert(self, table: str, conflict_columns: list[str], row: dict[str, Any]) -> Optional[int]:
        """
        Insert `row`, or overwrite the existing row that collides on
        `conflict_columns` with the non-key values of `row`. Returns the row
        id. Raises LookupError when the table has no unique constraint on
        those columns or the dialect has no ON CONFLICT support.
        """
        tbl = _table(table)
        if not self.has_unique(table, conflict_columns):
            raise LookupError(f"No unique constraint on {table}({', '.join(conflict_columns)})")
        stmt = dialect_insert(self.db, tbl)
        if stmt is None:
            raise LookupError(f"ON CONFLICT unsupported on {self.db.get_bind().dialect.name}")

        values = self._row(tbl, row)
        conflict_set = {
            name: stmt.excluded[name]
            for name in values
            if name not in PROTECTED_COLUMNS and name not in conflict_columns
        }
        conflict_set["updated_at"] = datetime.now(timezone.utc).replace(tzinfo=None)
        stmt = (
            stmt.values(**values)
                .on_conflict_do_update(index_elements=conflict_columns, set_=conflict_set)
                .returning(tbl.c.id)
        )
        return self.db.execute(stmt).scalar_one()
