import json
import logging
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Iterator, Optional

import gspread
from google.auth.exceptions import GoogleAuthError
from gspread.utils import rowcol_to_a1

from models import (
    CORE_TABLES,
    SETTINGS,
    TABLES_BY_NAME,
    USERS,
    ImportMode,
    ShareRole,
    TableSchema,
)

logger = logging.getLogger(__name__)

Record = dict[str, Any]

HEADER_FORMAT = {
    "backgroundColor": {"red": 0.26, "green": 0.52, "blue": 0.96},
    "textFormat": {
        "bold": True,
        "foregroundColor": {"red": 1.0, "green": 1.0, "blue": 1.0},
    },
}

SHARE_ROLES = {
    ShareRole.viewer: "reader",
    ShareRole.editor: "writer",
    ShareRole.owner: "owner",
}


class SheetsError(RuntimeError):
    pass


class RecordNotFound(ValueError):
    pass


class TableNotFound(ValueError):
    pass


def now_iso() -> str:
    stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    return stamp.replace("+00:00", "Z")


def database_title(email: str) -> str:
    return f"Budget Manager - {email}"


def spreadsheet_url(spreadsheet_id: str) -> str:
    return f"https://docs.google.com/spreadsheets/d/{spreadsheet_id}"


def to_cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def render_cell(value: Any) -> str:
    """Text a cell shows after a RAW write, used for equality filters."""
    value = to_cell(value)
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


@contextmanager
def remote_call(action: str) -> Iterator[None]:
    try:
        yield
    except (
        gspread.exceptions.WorksheetNotFound,
        gspread.exceptions.SpreadsheetNotFound,
    ):
        raise
    except (gspread.exceptions.GSpreadException, GoogleAuthError) as exc:
        logger.error(f"sheets_error: action={action} error={exc}")
        raise SheetsError(f"Failed to {action}") from exc


class SheetsDatabase:
    def __init__(self, spreadsheet: gspread.Spreadsheet) -> None:
        self.spreadsheet = spreadsheet
        self._worksheets: dict[str, gspread.Worksheet] = {}

    @property
    def spreadsheet_id(self) -> str:
        return self.spreadsheet.id

    def _worksheet(self, table: str) -> gspread.Worksheet:
        if table in self._worksheets:
            return self._worksheets[table]
        try:
            with remote_call(f"open table {table}"):
                worksheet = self.spreadsheet.worksheet(table)
        except gspread.exceptions.WorksheetNotFound as exc:
            raise TableNotFound(f"Table '{table}' does not exist") from exc
        self._worksheets[table] = worksheet
        return worksheet

    def _key_for(self, table: str) -> str:
        schema = TABLES_BY_NAME.get(table)
        return schema.key if schema else "id"

    def _rows(self, table: str) -> tuple[list[str], list[list[str]]]:
        with remote_call(f"read {table}"):
            values = self._worksheet(table).get_all_values()
        if not values:
            return [], []
        return values[0], values[1:]

    @staticmethod
    def _to_record(headers: list[str], row: list[str]) -> Record:
        return {
            header: (row[idx] if idx < len(row) else "")
            for idx, header in enumerate(headers)
        }

    def headers(self, table: str) -> list[str]:
        with remote_call(f"read headers of {table}"):
            return self._worksheet(table).row_values(1)

    def insert(self, table: str, data: Record) -> Record:
        key = self._key_for(table)
        record = dict(data)
        if key == "id" and not record.get("id"):
            record["id"] = str(uuid.uuid4())
        stamp = now_iso()
        record.setdefault("created_at", stamp)
        record["updated_at"] = stamp
        headers = self.headers(table)
        if not headers:
            raise SheetsError(f"Table '{table}' has no headers")
        values = [to_cell(record.get(header)) for header in headers]
        with remote_call(f"insert into {table}"):
            self._worksheet(table).append_row(values, value_input_option="RAW")
        logger.info(f"sheet_insert: table={table} key={record.get(key)}")
        return {header: record.get(header) for header in headers}

    def find(self, table: str, filters: Optional[dict[str, Any]] = None) -> list[Record]:
        headers, rows = self._rows(table)
        key = self._key_for(table)
        expected = {k: render_cell(v) for k, v in (filters or {}).items()}
        records = []
        for row in rows:
            record = self._to_record(headers, row)
            if not record.get(key):
                continue
            if all(record.get(k, "") == v for k, v in expected.items()):
                records.append(record)
        return records

    def find_by_id(self, table: str, record_id: str) -> Optional[Record]:
        matches = self.find(table, {self._key_for(table): record_id})
        return matches[0] if matches else None

    def _locate(self, table: str, record_id: str) -> tuple[list[str], int, Record]:
        headers, rows = self._rows(table)
        key = self._key_for(table)
        for idx, row in enumerate(rows):
            record = self._to_record(headers, row)
            if record.get(key) == str(record_id):
                return headers, idx, record
        raise RecordNotFound(f"Record with ID {record_id} not found in {table}")

    def update(self, table: str, record_id: str, data: Record) -> Record:
        headers, idx, current = self._locate(table, record_id)
        key = self._key_for(table)
        merged: Record = {**current, **data, key: current[key]}
        merged["updated_at"] = now_iso()
        values = [to_cell(merged.get(header)) for header in headers]
        row_number = idx + 2
        with remote_call(f"update {table}"):
            self._worksheet(table).update(
                range_name=f"A{row_number}:{rowcol_to_a1(row_number, len(headers))}",
                values=[values],
                value_input_option="RAW",
            )
        logger.info(f"sheet_update: table={table} key={record_id}")
        return {header: merged.get(header) for header in headers}

    def delete(self, table: str, record_id: str) -> None:
        _, idx, _ = self._locate(table, record_id)
        with remote_call(f"delete from {table}"):
            self._worksheet(table).delete_rows(idx + 2)
        logger.info(f"sheet_delete: table={table} key={record_id}")

    def _write_headers(self, worksheet: gspread.Worksheet, columns: list[str]) -> None:
        worksheet.update(
            range_name=f"A1:{rowcol_to_a1(1, len(columns))}",
            values=[columns],
            value_input_option="RAW",
        )
        worksheet.format(f"A1:{rowcol_to_a1(1, len(columns))}", HEADER_FORMAT)
        worksheet.freeze(rows=1)

    def _create_table(
        self, schema: TableSchema, worksheet: Optional[gspread.Worksheet] = None
    ) -> gspread.Worksheet:
        with remote_call(f"create table {schema.name}"):
            if worksheet is None:
                worksheet = self.spreadsheet.add_worksheet(
                    title=schema.name, rows=1000, cols=max(len(schema.columns), 26)
                )
            self._write_headers(worksheet, list(schema.columns))
        self._worksheets[schema.name] = worksheet
        logger.info(f"sheet_table_created: table={schema.name}")
        return worksheet

    def ensure_table(self, schema: TableSchema) -> list[str]:
        """Create the tab if needed, otherwise append missing header columns."""
        try:
            worksheet = self._worksheet(schema.name)
        except TableNotFound:
            self._create_table(schema)
            return list(schema.columns)
        headers = self.headers(schema.name)
        if not headers:
            with remote_call(f"write headers of {schema.name}"):
                self._write_headers(worksheet, list(schema.columns))
            return list(schema.columns)
        missing = [column for column in schema.columns if column not in headers]
        if missing:
            with remote_call(f"extend headers of {schema.name}"):
                self._write_headers(worksheet, headers + missing)
            logger.info(
                f"sheet_columns_added: table={schema.name} columns={','.join(missing)}"
            )
        return missing

    def _titles(self) -> list[str]:
        with remote_call("list tables"):
            return [worksheet.title for worksheet in self.spreadsheet.worksheets()]

    def setup_schema(self) -> list[str]:
        existing = set(self._titles())
        created = []
        for schema in CORE_TABLES:
            if schema.name in existing:
                self.ensure_table(schema)
                continue
            self._create_table(schema)
            created.append(schema.name)
        return created

    def validate_schema(self) -> dict[str, Any]:
        titles = self._titles()
        required = [schema.name for schema in CORE_TABLES]
        missing = [name for name in required if name not in titles]
        existing = [name for name in required if name in titles]
        issues = []
        if missing:
            issues.append(f"Missing tables: {', '.join(missing)}")
        for name in existing:
            if not self.headers(name):
                issues.append(f"Table '{name}' has no headers")
        return {
            "isValid": not issues,
            "missingTables": missing,
            "existingTables": existing,
            "issues": issues,
        }

    def is_accessible(self) -> bool:
        try:
            self.spreadsheet.fetch_sheet_metadata()
        except (gspread.exceptions.GSpreadException, GoogleAuthError) as exc:
            logger.warning(f"sheet_unreachable: id={self.spreadsheet_id} error={exc}")
            return False
        return True

    def provision(self, email: str, name: str) -> Record:
        """Turn a fresh spreadsheet into a user database."""
        with remote_call("read first table"):
            first = self.spreadsheet.get_worksheet(0)
            if first.title != USERS.name:
                first.update_title(USERS.name)
        self._worksheets = {}
        self._create_table(USERS, first)
        self.setup_schema()
        user = self.insert(
            USERS.name,
            {
                "name": name,
                "email": email,
                "password_hash": "",
                "telegram_username": "",
                "chatId": "",
            },
        )
        self.insert(SETTINGS.name, default_settings_row(email))
        return user

    def recreate(self, email: str, name: str) -> Record:
        with remote_call("reset spreadsheet"):
            worksheets = self.spreadsheet.worksheets()
            for worksheet in worksheets[1:]:
                self.spreadsheet.del_worksheet(worksheet)
            worksheets[0].clear()
        logger.info(f"sheet_recreate: id={self.spreadsheet_id} email={email}")
        return self.provision(email, name)

    def info(self) -> dict[str, Any]:
        with remote_call("read spreadsheet info"):
            worksheets = self.spreadsheet.worksheets()
        return {
            "spreadsheet_id": self.spreadsheet_id,
            "title": self.spreadsheet.title,
            "url": spreadsheet_url(self.spreadsheet_id),
            "sheets": [
                {
                    "title": worksheet.title,
                    "sheet_id": worksheet.id,
                    "row_count": worksheet.row_count,
                }
                for worksheet in worksheets
            ],
        }

    def share(self, email: str, role: ShareRole) -> None:
        with remote_call(f"share spreadsheet with {email}"):
            self.spreadsheet.share(
                email, perm_type="user", role=SHARE_ROLES[role], notify=True
            )
        logger.info(f"sheet_share: id={self.spreadsheet_id} role={role.value}")

    @staticmethod
    def _known(table: str) -> TableSchema:
        schema = TABLES_BY_NAME.get(table)
        if schema is None:
            raise ValueError(f"Unknown table '{table}'")
        return schema

    def import_rows(self, table: str, rows: list[list[Any]], mode: ImportMode) -> int:
        schema = self._known(table)
        self.ensure_table(schema)
        headers = self.headers(table)
        values = [[to_cell(cell) for cell in row] for row in rows]
        if values and [str(cell) for cell in values[0]] == headers:
            values = values[1:]
        if not values:
            return 0
        worksheet = self._worksheet(table)
        with remote_call(f"import into {table}"):
            if mode == ImportMode.overwrite:
                worksheet.clear()
                self._write_headers(worksheet, headers)
                worksheet.append_rows(values, value_input_option="RAW")
            elif mode == ImportMode.insert:
                worksheet.insert_rows(values, row=2, value_input_option="RAW")
            else:
                worksheet.append_rows(values, value_input_option="RAW")
        logger.info(f"sheet_import: table={table} mode={mode.value} rows={len(values)}")
        return len(values)

    def export(self, tables: list[str]) -> dict[str, list[Record]]:
        result = {}
        for table in tables:
            self._known(table)
            try:
                result[table] = self.find(table)
            except TableNotFound:
                result[table] = []
        return result


def default_settings_row(email: str) -> Record:
    return {
        "user_id": email,
        "currency": "USD",
        "language": "en",
        "dark_mode": False,
        "telegram_notifications": False,
        "telegram_chat_id": "",
    }


def find_user_spreadsheet(client: gspread.Client, email: str) -> Optional[str]:
    with remote_call("search user spreadsheet"):
        files = client.list_spreadsheet_files(title=database_title(email))
    return files[0]["id"] if files else None


def create_user_database(client: gspread.Client, email: str, name: str) -> SheetsDatabase:
    with remote_call("create user spreadsheet"):
        spreadsheet = client.create(database_title(email))
    db = SheetsDatabase(spreadsheet)
    db.provision(email, name)
    logger.info(f"sheet_database_created: id={spreadsheet.id} email={email}")
    return db


def open_database(client: gspread.Client, spreadsheet_id: str) -> SheetsDatabase:
    try:
        with remote_call("open user spreadsheet"):
            spreadsheet = client.open_by_key(spreadsheet_id)
    except gspread.exceptions.SpreadsheetNotFound as exc:
        raise SheetsError("User spreadsheet not found") from exc
    return SheetsDatabase(spreadsheet)


def get_or_create_user_database(
    client: gspread.Client, email: str, name: str
) -> SheetsDatabase:
    spreadsheet_id = find_user_spreadsheet(client, email)
    if spreadsheet_id:
        logger.info(f"sheet_database_found: id={spreadsheet_id} email={email}")
        return open_database(client, spreadsheet_id)
    return create_user_database(client, email, name)


def backup(client: gspread.Client, db: SheetsDatabase) -> dict[str, str]:
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
    title = f"{db.spreadsheet.title} - Backup {stamp}"
    with remote_call("copy spreadsheet"):
        copy = client.copy(db.spreadsheet_id, title=title, copy_permissions=False)
    logger.info(f"sheet_backup: source={db.spreadsheet_id} backup={copy.id}")
    return {
        "backup_spreadsheet_id": copy.id,
        "backup_url": spreadsheet_url(copy.id),
        "title": title,
    }
