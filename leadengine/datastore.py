"""Schema-aware Airtable datastore with an in-memory fallback backend."""

from __future__ import annotations

import itertools
import os
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import requests
from pyairtable import Api

from leadengine import schema
from leadengine.config import settings
from leadengine.errors import PersistenceError
from leadengine.runtime import get_logger, iso, iso_now, parse_ts, retry

logger = get_logger(__name__)
DEBUG = os.getenv("DEBUG", "").lower() in {"1", "true", "yes"}

TRANSIENT_ERRORS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    ConnectionResetError,
)


# ============================================================
# QUERY
# ============================================================


def _formula_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "TRUE()" if value else "FALSE()"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, datetime):
        return f"'{iso(value)}'"
    text = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{text}'"


def _same(stored: Any, expected: Any) -> bool:
    if isinstance(stored, (list, tuple)):
        return any(_same(item, expected) for item in stored)
    if stored == expected:
        return True
    if isinstance(expected, bool) or isinstance(stored, bool):
        return False
    return stored is not None and str(stored) == str(expected)


def _comparable(stored: Any, bound: Any) -> Tuple[Any, Any]:
    if isinstance(bound, datetime):
        return parse_ts(stored), parse_ts(bound)
    if isinstance(bound, (int, float, Decimal)):
        try:
            return Decimal(str(stored)), Decimal(str(bound))
        except Exception:
            return None, bound
    return stored, bound


class Query:
    """
    Conjunction of column conditions.

    The same object compiles to an Airtable ``filterByFormula`` string for the
    remote backend and evaluates directly against in-memory records, so the
    domain modules express a filter once.
    """

    def __init__(self) -> None:
        self.conditions: List[Tuple[str, str, Any]] = []

    def _add(self, op: str, column: str, value: Any = None) -> "Query":
        self.conditions.append((op, column, value))
        return self

    def eq(self, column: str, value: Any) -> "Query":
        return self._add("eq", column, value)

    def isin(self, column: str, values: Iterable[Any]) -> "Query":
        return self._add("in", column, tuple(values))

    def is_null(self, column: str) -> "Query":
        return self._add("null", column)

    def not_null(self, column: str) -> "Query":
        return self._add("notnull", column)

    def gte(self, column: str, value: Any) -> "Query":
        return self._add("gte", column, value)

    def lte(self, column: str, value: Any) -> "Query":
        return self._add("lte", column, value)

    def lt(self, column: str, value: Any) -> "Query":
        return self._add("lt", column, value)

    # -- remote -------------------------------------------------------
    @staticmethod
    def _clause(op: str, column: str, value: Any) -> str:
        ref = f"{{{column}}}"
        if op == "eq":
            return f"{ref}={_formula_literal(value)}"
        if op == "in":
            if not value:
                return "FALSE()"
            return "OR(" + ",".join(f"{ref}={_formula_literal(v)}" for v in value) + ")"
        if op == "null":
            return f"{ref}=BLANK()"
        if op == "notnull":
            return f"NOT({ref}=BLANK())"
        if isinstance(value, datetime):
            literal = _formula_literal(value)
            if op == "gte":
                return f"NOT(IS_BEFORE({ref},{literal}))"
            if op == "lte":
                return f"NOT(IS_AFTER({ref},{literal}))"
            return f"IS_BEFORE({ref},{literal})"
        symbol = {"gte": ">=", "lte": "<=", "lt": "<"}[op]
        return f"{ref}{symbol}{_formula_literal(value)}"

    def to_formula(self) -> Optional[str]:
        clauses = [self._clause(op, column, value) for op, column, value in self.conditions]
        if not clauses:
            return None
        if len(clauses) == 1:
            return clauses[0]
        return "AND(" + ",".join(clauses) + ")"

    # -- in-memory ----------------------------------------------------
    def matches(self, fields: Dict[str, Any]) -> bool:
        for op, column, value in self.conditions:
            stored = fields.get(column)
            if op == "eq" and not _same(stored, value):
                return False
            if op == "in" and not any(_same(stored, v) for v in value):
                return False
            if op == "null" and stored not in (None, ""):
                return False
            if op == "notnull" and stored in (None, ""):
                return False
            if op in ("gte", "lte", "lt"):
                left, right = _comparable(stored, value)
                if left is None or right is None:
                    return False
                if op == "gte" and not left >= right:
                    return False
                if op == "lte" and not left <= right:
                    return False
                if op == "lt" and not left < right:
                    return False
        return True

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return f"Query({self.to_formula()!r})"


# ============================================================
# IN-MEMORY BACKEND
# ============================================================


def _sort_records(records: List[Dict[str, Any]], sort: Sequence[str]) -> List[Dict[str, Any]]:
    ordered = list(records)
    for order in reversed(list(sort or ())):
        desc = order.startswith("-")
        column = order[1:] if desc else order
        present = [r for r in ordered if r["fields"].get(column) not in (None, "")]
        missing = [r for r in ordered if r["fields"].get(column) in (None, "")]
        present.sort(key=lambda r: r["fields"][column], reverse=desc)
        ordered = present + missing
    return ordered


class InMemoryTable:
    """Minimal Airtable drop-in replacement used for local runs and tests."""

    def __init__(self, name: str):
        self.name = name
        self._records: Dict[str, Dict[str, Any]] = {}
        self._sequence = itertools.count(1)

    def create(self, fields: Dict[str, Any]):
        record_id = f"rec_{next(self._sequence)}"
        record = {
            "id": record_id,
            "createdTime": iso_now(),
            "fields": {k: v for k, v in fields.items() if v is not None},
        }
        self._records[record_id] = record
        return _copy(record)

    def update(self, record_id: str, fields: Dict[str, Any]):
        if record_id not in self._records:
            raise KeyError(f"Unknown record id {record_id} in {self.name}")
        stored = self._records[record_id]["fields"]
        for key, value in fields.items():
            if value is None:
                stored.pop(key, None)
            else:
                stored[key] = value
        return _copy(self._records[record_id])

    def get(self, record_id: str):
        record = self._records.get(record_id)
        return _copy(record) if record else None

    def delete(self, record_id: str):
        if self._records.pop(record_id, None) is None:
            raise KeyError(f"Unknown record id {record_id} in {self.name}")
        return {"id": record_id, "deleted": True}

    def all(self, query: Optional[Query] = None, sort: Sequence[str] = (), max_records: Optional[int] = None):
        records = list(self._records.values())
        if query is not None:
            records = [rec for rec in records if query.matches(rec["fields"])]
        records = _sort_records(records, sort)
        if max_records is not None:
            records = records[: int(max_records)]
        return [_copy(rec) for rec in records]


def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
    return {**record, "fields": dict(record.get("fields") or {})}


@dataclass
class TableHandle:
    table: Any
    in_memory: bool
    base_id: Optional[str]
    table_name: str
    last_error: Optional[Dict[str, Any]] = None


# ============================================================
# CONNECTOR
# ============================================================


class DataConnector:
    """Lazy pyairtable connector with in-memory fallback."""

    def __init__(self) -> None:
        self._tables: Dict[Tuple[str, str], TableHandle] = {}
        self._api: Optional[Api] = None

    def _table(self, table_name: str) -> TableHandle:
        s = settings()
        base = s.AIRTABLE_BASE_ID
        key = (base or "memory", table_name)
        if key in self._tables:
            return self._tables[key]

        if not s.FORCE_IN_MEMORY and base and s.AIRTABLE_API_KEY:
            try:
                if self._api is None:
                    self._api = Api(s.AIRTABLE_API_KEY)
                handle = TableHandle(self._api.table(base, table_name), False, base, table_name)
                self._tables[key] = handle
                return handle
            except Exception:
                logger.warning("Falling back to in-memory table for %s", table_name, exc_info=True)

        handle = TableHandle(InMemoryTable(table_name), True, base, table_name)
        self._tables[key] = handle
        return handle

    def table(self, definition: schema.TableDefinition) -> TableHandle:
        return self._table(definition.name())

    def leads(self) -> TableHandle:
        return self.table(schema.LEADS)

    def conversations(self) -> TableHandle:
        return self.table(schema.CONVERSATIONS)

    def conversation_messages(self) -> TableHandle:
        return self.table(schema.CONVERSATION_MESSAGES)

    def partners(self) -> TableHandle:
        return self.table(schema.PARTNERS)

    def referrals(self) -> TableHandle:
        return self.table(schema.REFERRALS)

    def credit_ledger(self) -> TableHandle:
        return self.table(schema.CREDIT_LEDGER)

    def station_alerts(self) -> TableHandle:
        return self.table(schema.STATION_ALERTS)

    def sms_log(self) -> TableHandle:
        return self.table(schema.SMS_LOG)

    def run_logs(self) -> TableHandle:
        return self.table(schema.RUN_LOGS)


CONNECTOR = DataConnector()


# ============================================================
# LOW LEVEL HELPERS
# ============================================================


def _compact(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in (payload or {}).items() if v not in (None, "", [], {}, ())}


def _log_airtable_exception(handle: TableHandle, exc: Exception, action: str) -> None:
    response = getattr(exc, "response", None)
    payload: Dict[str, Any] = {"action": action, "error": str(exc), "timestamp": iso_now()}
    if DEBUG and response is not None:
        try:
            body = response.text
        except Exception:
            body = repr(response)
        status = getattr(response, "status_code", "unknown")
        payload.update({"status": status, "body": body})
        logger.error("Airtable %s failed [%s] status=%s body=%s", action, handle.table_name, status, body)
    else:
        logger.error("Airtable %s failed [%s]: %s", action, handle.table_name, exc)
    handle.last_error = payload


def _status_of(exc: Exception) -> Optional[int]:
    response = getattr(exc, "response", None)
    return getattr(response, "status_code", None)


def _call(handle: TableHandle, action: str, func: Callable[[], Any]) -> Any:
    """Run a table call with transient retries; failures become PersistenceError."""
    try:
        return retry(func, retries=3, base_delay=0.5, exceptions=TRANSIENT_ERRORS, logger=logger)
    except Exception as exc:
        _log_airtable_exception(handle, exc, action)
        raise PersistenceError(f"{action} failed on {handle.table_name}") from exc


# ============================================================
# ROW OPERATIONS
# ============================================================


def select(
    handle: TableHandle,
    query: Optional[Query] = None,
    *,
    sort: Sequence[str] = (),
    max_records: Optional[int] = None,
) -> List[Dict[str, Any]]:
    if handle.in_memory:
        return handle.table.all(query=query, sort=sort, max_records=max_records)

    kwargs: Dict[str, Any] = {}
    formula = query.to_formula() if query is not None else None
    if formula:
        kwargs["formula"] = formula
    if sort:
        kwargs["sort"] = list(sort)
    if max_records is not None:
        kwargs["max_records"] = max_records
    return list(_call(handle, "select", lambda: handle.table.all(**kwargs)))


def first(handle: TableHandle, query: Optional[Query] = None, *, sort: Sequence[str] = ()) -> Optional[Dict[str, Any]]:
    rows = select(handle, query, sort=sort, max_records=1)
    return rows[0] if rows else None


def count(handle: TableHandle, query: Optional[Query] = None) -> int:
    return len(select(handle, query))


def get(handle: TableHandle, record_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if not record_id:
        return None
    if handle.in_memory:
        return handle.table.get(record_id)
    try:
        return retry(lambda: handle.table.get(record_id), retries=3, base_delay=0.5, exceptions=TRANSIENT_ERRORS, logger=logger)
    except requests.exceptions.HTTPError as exc:
        if _status_of(exc) in (403, 404):
            return None
        _log_airtable_exception(handle, exc, "get")
        raise PersistenceError(f"get failed on {handle.table_name}") from exc
    except Exception as exc:
        _log_airtable_exception(handle, exc, "get")
        raise PersistenceError(f"get failed on {handle.table_name}") from exc


def create(handle: TableHandle, fields: Dict[str, Any]) -> Dict[str, Any]:
    body = _compact(fields)
    if handle.in_memory:
        return handle.table.create(body)
    return _call(handle, "create", lambda: handle.table.create(body))


def update(handle: TableHandle, record_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    """Partial update; ``None`` values clear the column."""
    if not record_id:
        raise PersistenceError(f"update on {handle.table_name} without record id")
    if handle.in_memory:
        try:
            return handle.table.update(record_id, dict(fields))
        except KeyError as exc:
            raise PersistenceError(str(exc)) from exc
    return _call(handle, "update", lambda: handle.table.update(record_id, dict(fields)))


def delete(handle: TableHandle, record_id: str) -> bool:
    if handle.in_memory:
        try:
            handle.table.delete(record_id)
            return True
        except KeyError:
            return False
    try:
        retry(lambda: handle.table.delete(record_id), retries=3, base_delay=0.5, exceptions=TRANSIENT_ERRORS, logger=logger)
    except requests.exceptions.HTTPError as exc:
        if _status_of(exc) == 404:
            return False
        _log_airtable_exception(handle, exc, "delete")
        raise PersistenceError(f"delete failed on {handle.table_name}") from exc
    except Exception as exc:
        _log_airtable_exception(handle, exc, "delete")
        raise PersistenceError(f"delete failed on {handle.table_name}") from exc
    return True


# ============================================================
# PUBLIC HELPERS
# ============================================================


def reset_state() -> None:
    CONNECTOR._tables.clear()
    CONNECTOR._api = None
    logger.info("🧹 Datastore state and caches cleared.")
