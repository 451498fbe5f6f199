"""
Persistent Ledger Client

Row-level access to the tabular store that holds every piece of state the
engine needs between invocations. The store is a plain table per entity with
no secondary index, so keyed lookups scan from the newest row backwards.

Backends:
- SheetsLedgerBackend: Google Sheets v4 REST (production system of record)
- JsonFileLedgerBackend: local JSON file with atomic writes (paper/dev)
- MemoryLedgerBackend: in-process lists (tests, DRY_RUN)

Deleted rows are blanked in place rather than removed so row positions stay
stable for concurrent readers; blank rows are skipped on every read.
"""

import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import requests

from infra.rate_limiter import RateLimiter
from infra.symbols import normalize_symbol

logger = logging.getLogger(__name__)

SHEETS_BASE = "https://sheets.googleapis.com/v4/spreadsheets"
SHEETS_SCOPES = ("https://www.googleapis.com/auth/spreadsheets",)


class LedgerError(RuntimeError):
    """Transport or storage failure talking to the ledger."""

    def __init__(self, message: str, table: Optional[str] = None,
                 original: Optional[Exception] = None):
        super().__init__(message)
        self.table = table
        self.original = original


@dataclass(frozen=True)
class TableSchema:
    """Column layout of one ledger table. `key` names the lookup column."""
    name: str
    columns: Tuple[str, ...]
    key: str = "symbol"

    @property
    def width(self) -> int:
        return len(self.columns)

    @property
    def key_index(self) -> int:
        return self.columns.index(self.key)


POSITION_LEVELS = TableSchema(
    "PositionLevels",
    ("created_at", "symbol", "stop_loss", "take_profit", "entry_price",
     "side", "quantity", "strategy", "order_id", "expires_at"),
)
TRADE_STATE = TableSchema(
    "TradeState",
    ("timestamp", "symbol", "side", "quantity", "price", "strategy",
     "order_id", "stop_loss", "take_profit", "status"),
)
SIGNAL_STRENGTH = TableSchema(
    "SignalStrength",
    ("timestamp", "symbol", "side", "strategy", "signal_strength", "order_id"),
)

TABLES: Dict[str, TableSchema] = {
    schema.name: schema for schema in (POSITION_LEVELS, TRADE_STATE, SIGNAL_STRENGTH)
}


def _encode_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _is_blank(values: List[str]) -> bool:
    return not any(str(v).strip() for v in values)


# ===== Backends =====

class LedgerBackend:
    """
    Storage primitive used by Ledger.

    Row indexes are zero-based positions among data rows (headers excluded).
    Implementations raise LedgerError on transport failures.
    """

    def read_rows(self, schema: TableSchema) -> List[List[str]]:
        raise NotImplementedError

    def append_row(self, schema: TableSchema, values: List[str]) -> None:
        raise NotImplementedError

    def write_row(self, schema: TableSchema, index: int, values: List[str]) -> None:
        raise NotImplementedError

    def clear_row(self, schema: TableSchema, index: int) -> None:
        raise NotImplementedError

    def ensure_table(self, schema: TableSchema) -> bool:
        """Create the table/header if missing. Returns True if anything was created."""
        return False


class MemoryLedgerBackend(LedgerBackend):
    """In-process tables. Contents vanish with the process."""

    def __init__(self):
        self.tables: Dict[str, List[List[str]]] = {}

    def read_rows(self, schema: TableSchema) -> List[List[str]]:
        return [list(row) for row in self.tables.get(schema.name, [])]

    def append_row(self, schema: TableSchema, values: List[str]) -> None:
        self.tables.setdefault(schema.name, []).append(list(values))

    def write_row(self, schema: TableSchema, index: int, values: List[str]) -> None:
        rows = self.tables.setdefault(schema.name, [])
        if index >= len(rows):
            raise LedgerError(f"Row {index} out of range", table=schema.name)
        rows[index] = list(values)

    def clear_row(self, schema: TableSchema, index: int) -> None:
        self.write_row(schema, index, [""] * schema.width)


class JsonFileLedgerBackend(LedgerBackend):
    """
    Ledger tables persisted to one JSON file.

    Every mutation rewrites the file atomically (temp file + os.replace), so
    a crash mid-write leaves the previous version intact.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized JsonFileLedgerBackend at {self.path}")

    def _load(self) -> Dict[str, List[List[str]]]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise LedgerError(f"Failed to read ledger file {self.path}: {e}", original=e)
        tables = data.get("tables") if isinstance(data, dict) else None
        if not isinstance(tables, dict):
            raise LedgerError(f"Malformed ledger file {self.path}")
        return tables

    def _save(self, tables: Dict[str, List[List[str]]]) -> None:
        try:
            temp_fd, temp_path = tempfile.mkstemp(
                dir=self.path.parent,
                prefix=".ledger_",
                suffix=".json.tmp",
            )
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump({"tables": tables}, f, indent=2)
            os.replace(temp_path, self.path)
        except OSError as e:
            raise LedgerError(f"Failed to write ledger file {self.path}: {e}", original=e)

    def read_rows(self, schema: TableSchema) -> List[List[str]]:
        return [list(row) for row in self._load().get(schema.name, [])]

    def append_row(self, schema: TableSchema, values: List[str]) -> None:
        tables = self._load()
        tables.setdefault(schema.name, []).append(list(values))
        self._save(tables)

    def write_row(self, schema: TableSchema, index: int, values: List[str]) -> None:
        tables = self._load()
        rows = tables.setdefault(schema.name, [])
        if index >= len(rows):
            raise LedgerError(f"Row {index} out of range", table=schema.name)
        rows[index] = list(values)
        self._save(tables)

    def clear_row(self, schema: TableSchema, index: int) -> None:
        self.write_row(schema, index, [""] * schema.width)


class SheetsLedgerBackend(LedgerBackend):
    """
    Google Sheets v4 backend. One sheet per table, first row holds headers.

    Transient failures (429, 5xx, timeouts, connection errors) are retried a
    fixed number of times with a fixed delay; anything else raises LedgerError.
    """

    HEADER_ROWS = 1

    def __init__(self, spreadsheet_id: str, session: requests.Session,
                 max_retries: int = 3, retry_delay_seconds: float = 1.0,
                 timeout: float = 10.0):
        if not spreadsheet_id:
            raise ValueError("spreadsheet_id is required for the Sheets ledger")
        self.spreadsheet_id = spreadsheet_id
        self.session = session
        self.max_retries = max(1, int(max_retries))
        self.retry_delay_seconds = float(retry_delay_seconds)
        self.timeout = timeout
        logger.info(f"Initialized SheetsLedgerBackend (spreadsheet={spreadsheet_id[:8]}...)")

    @classmethod
    def from_service_account(cls, spreadsheet_id: str, client_email: str, private_key: str,
                             **kwargs) -> "SheetsLedgerBackend":
        """Build an authorized session from service-account credentials."""
        from google.auth.transport.requests import AuthorizedSession
        from google.oauth2 import service_account

        info = {
            "type": "service_account",
            "client_email": client_email,
            "private_key": private_key.replace("\\n", "\n"),
            "token_uri": "https://oauth2.googleapis.com/token",
        }
        credentials = service_account.Credentials.from_service_account_info(
            info, scopes=list(SHEETS_SCOPES)
        )
        return cls(spreadsheet_id, AuthorizedSession(credentials), **kwargs)

    @staticmethod
    def _last_column(schema: TableSchema) -> str:
        return chr(ord("A") + schema.width - 1)

    def _row_range(self, schema: TableSchema, index: int) -> str:
        row_number = index + 1 + self.HEADER_ROWS
        return f"{schema.name}!A{row_number}:{self._last_column(schema)}{row_number}"

    def _req(self, method: str, path: str, schema: TableSchema,
             params: Optional[Dict[str, Any]] = None,
             body: Optional[dict] = None) -> dict:
        url = f"{SHEETS_BASE}/{self.spreadsheet_id}{path}"
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries):
            try:
                response = self.session.request(
                    method, url, params=params, json=body, timeout=self.timeout
                )
                response.raise_for_status()
                return response.json() if response.content else {}

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else 0
                if 400 <= status_code < 500 and status_code != 429:
                    logger.error(f"Sheets API client error on {schema.name}: {status_code}")
                    raise LedgerError(
                        f"Sheets API rejected {method} {path}: {status_code}",
                        table=schema.name, original=e,
                    )
                logger.warning(
                    f"Sheets API {status_code} on {schema.name}, attempt {attempt + 1}/{self.max_retries}"
                )
                last_exception = e

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(
                    f"Network error on {schema.name}: {e}, attempt {attempt + 1}/{self.max_retries}"
                )
                last_exception = e

            if attempt < self.max_retries - 1:
                time.sleep(self.retry_delay_seconds)

        raise LedgerError(
            f"Sheets request {method} {path} failed after {self.max_retries} attempts",
            table=schema.name, original=last_exception,
        )

    def read_rows(self, schema: TableSchema) -> List[List[str]]:
        data = self._req(
            "GET", f"/values/{schema.name}!A:{self._last_column(schema)}", schema
        )
        values = data.get("values") or []
        rows = []
        for raw in values[self.HEADER_ROWS:]:
            row = [str(cell) for cell in raw[:schema.width]]
            row.extend([""] * (schema.width - len(row)))
            rows.append(row)
        return rows

    def append_row(self, schema: TableSchema, values: List[str]) -> None:
        self._req(
            "POST",
            f"/values/{schema.name}!A:{self._last_column(schema)}:append",
            schema,
            params={"valueInputOption": "RAW", "insertDataOption": "INSERT_ROWS"},
            body={"values": [values]},
        )

    def write_row(self, schema: TableSchema, index: int, values: List[str]) -> None:
        self._req(
            "PUT",
            f"/values/{self._row_range(schema, index)}",
            schema,
            params={"valueInputOption": "RAW"},
            body={"values": [values]},
        )

    def clear_row(self, schema: TableSchema, index: int) -> None:
        self._req("POST", f"/values/{self._row_range(schema, index)}:clear", schema)

    def ensure_table(self, schema: TableSchema) -> bool:
        data = self._req("GET", f"/values/{schema.name}!A1:{self._last_column(schema)}1", schema)
        if data.get("values"):
            return False
        self._req(
            "PUT",
            f"/values/{schema.name}!A1:{self._last_column(schema)}1",
            schema,
            params={"valueInputOption": "RAW"},
            body={"values": [list(schema.columns)]},
        )
        logger.info(f"Wrote header row for ledger table {schema.name}")
        return True


# ===== Ledger facade =====

class Ledger:
    """
    Keyed row access over a LedgerBackend.

    - get: most recent row whose key (and optional extra columns) match
    - put: overwrite the most recent matching row in place, else append
    - append: always add a row (audit tables)
    - delete: blank every row matching the key
    - scan_all: every non-blank row, oldest first

    With `read_through_cache` enabled each table is read at most once per
    invocation and kept in step with this process's own writes. Call
    `begin_invocation()` at the start of every invocation; the cache is never
    trusted across invocations.
    """

    def __init__(self, backend: LedgerBackend, rate_limiter: Optional[RateLimiter] = None,
                 read_through_cache: bool = True):
        self.backend = backend
        self.rate_limiter = rate_limiter
        self.read_through_cache = read_through_cache
        self._cache: Dict[str, List[List[str]]] = {}

    @staticmethod
    def schema(table: str) -> TableSchema:
        schema = TABLES.get(table)
        if schema is None:
            raise ValueError(f"Unknown ledger table: {table}")
        return schema

    def begin_invocation(self) -> None:
        self._cache.clear()

    def initialize(self) -> List[str]:
        """Ensure every table exists with its header row. Returns tables created."""
        created = []
        for schema in TABLES.values():
            self._throttle("ledger_write", schema.name)
            if self.backend.ensure_table(schema):
                created.append(schema.name)
        return created

    def _throttle(self, channel: str, table: str) -> None:
        if self.rate_limiter is not None:
            self.rate_limiter.acquire(channel, endpoint=table)

    def _rows(self, schema: TableSchema) -> List[List[str]]:
        if self.read_through_cache and schema.name in self._cache:
            return self._cache[schema.name]
        self._throttle("ledger_read", schema.name)
        rows = self.backend.read_rows(schema)
        if self.read_through_cache:
            self._cache[schema.name] = rows
        return rows

    def _encode(self, schema: TableSchema, row: Mapping[str, Any]) -> List[str]:
        unknown = set(row) - set(schema.columns)
        if unknown:
            raise ValueError(f"Unknown columns for {schema.name}: {sorted(unknown)}")
        return [_encode_cell(row.get(column)) for column in schema.columns]

    @staticmethod
    def _decode(schema: TableSchema, values: List[str]) -> Dict[str, Optional[str]]:
        decoded: Dict[str, Optional[str]] = {}
        for column, value in zip(schema.columns, values):
            text = str(value).strip() if value is not None else ""
            decoded[column] = text or None
        return decoded

    def _matches(self, schema: TableSchema, values: List[str], key: str,
                 match: Optional[Mapping[str, Any]]) -> bool:
        if _is_blank(values):
            return False
        if normalize_symbol(values[schema.key_index]) != key:
            return False
        if match:
            for column, expected in match.items():
                actual = values[schema.columns.index(column)]
                if str(actual).strip().lower() != _encode_cell(expected).strip().lower():
                    return False
        return True

    def _find_indexes(self, schema: TableSchema, key: str,
                      match: Optional[Mapping[str, Any]] = None) -> List[int]:
        """Matching row indexes, newest first."""
        rows = self._rows(schema)
        return [
            index for index in range(len(rows) - 1, -1, -1)
            if self._matches(schema, rows[index], key, match)
        ]

    def _invalidate(self, schema: TableSchema) -> None:
        self._cache.pop(schema.name, None)

    def get(self, table: str, key: str,
            match: Optional[Mapping[str, Any]] = None) -> Optional[Dict[str, Optional[str]]]:
        schema = self.schema(table)
        key = normalize_symbol(key)
        indexes = self._find_indexes(schema, key, match)
        if not indexes:
            return None
        return self._decode(schema, self._rows(schema)[indexes[0]])

    def put(self, table: str, key: str, row: Mapping[str, Any]) -> None:
        schema = self.schema(table)
        key = normalize_symbol(key)
        values = self._encode(schema, {**row, schema.key: key})
        indexes = self._find_indexes(schema, key)

        self._throttle("ledger_write", schema.name)
        try:
            if indexes:
                self.backend.write_row(schema, indexes[0], values)
            else:
                self.backend.append_row(schema, values)
        except LedgerError:
            self._invalidate(schema)
            raise

        if self.read_through_cache and schema.name in self._cache:
            if indexes:
                self._cache[schema.name][indexes[0]] = values
            else:
                self._cache[schema.name].append(values)

    def append(self, table: str, row: Mapping[str, Any]) -> None:
        schema = self.schema(table)
        key = normalize_symbol(row.get(schema.key))
        if not key:
            raise ValueError(f"Row for {schema.name} is missing its {schema.key}")
        values = self._encode(schema, {**row, schema.key: key})

        self._throttle("ledger_write", schema.name)
        try:
            self.backend.append_row(schema, values)
        except LedgerError:
            self._invalidate(schema)
            raise

        if self.read_through_cache and schema.name in self._cache:
            self._cache[schema.name].append(values)

    def delete(self, table: str, key: str) -> int:
        """Blank every row for `key`. Returns rows cleared (0 when none existed)."""
        schema = self.schema(table)
        key = normalize_symbol(key)
        indexes = self._find_indexes(schema, key)

        for index in indexes:
            self._throttle("ledger_write", schema.name)
            try:
                self.backend.clear_row(schema, index)
            except LedgerError:
                self._invalidate(schema)
                raise
            if self.read_through_cache and schema.name in self._cache:
                self._cache[schema.name][index] = [""] * schema.width
        return len(indexes)

    def scan_all(self, table: str) -> List[Dict[str, Optional[str]]]:
        schema = self.schema(table)
        return [
            self._decode(schema, values)
            for values in self._rows(schema)
            if not _is_blank(values)
        ]


def create_ledger_from_config(config: Optional[Dict[str, Any]] = None,
                              rate_limiter: Optional[RateLimiter] = None) -> Ledger:
    """
    Build a Ledger from the `ledger` section of app.yaml.

    backend: sheets | json | memory
    """
    config = config or {}
    backend_name = str(config.get("backend", "memory")).lower()

    if backend_name == "sheets":
        spreadsheet_id = os.getenv(config.get("spreadsheet_id_env", "GOOGLE_SPREADSHEET_ID"), "")
        client_email = os.getenv(config.get("client_email_env", "GOOGLE_CLIENT_EMAIL"), "")
        private_key = os.getenv(config.get("private_key_env", "GOOGLE_PRIVATE_KEY"), "")
        if not (spreadsheet_id and client_email and private_key):
            raise ValueError(
                "Sheets ledger requires GOOGLE_SPREADSHEET_ID, GOOGLE_CLIENT_EMAIL and GOOGLE_PRIVATE_KEY"
            )
        backend: LedgerBackend = SheetsLedgerBackend.from_service_account(
            spreadsheet_id,
            client_email,
            private_key,
            max_retries=int(config.get("max_retries", 3)),
            retry_delay_seconds=float(config.get("retry_delay_seconds", 1.0)),
            timeout=float(config.get("timeout_seconds", 10.0)),
        )
    elif backend_name == "json":
        backend = JsonFileLedgerBackend(Path(config.get("json_path", "data/ledger.json")))
    elif backend_name == "memory":
        backend = MemoryLedgerBackend()
    else:
        raise ValueError(f"Unknown ledger backend: {backend_name}")

    logger.info(f"Ledger backend: {backend_name}")
    return Ledger(
        backend,
        rate_limiter=rate_limiter,
        read_through_cache=bool(config.get("read_through_cache", True)),
    )
