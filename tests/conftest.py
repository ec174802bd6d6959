import itertools
import re
from typing import Any, Optional

import gspread
import pytest

from config import get_settings
from database import SheetsDatabase, create_user_database, render_cell
from telegram import TelegramError, connection_store

_ids = itertools.count(1)


class FakeWorksheet:
    def __init__(self, title: str, rows: int = 1000, cols: int = 26) -> None:
        self.title = title
        self.id = next(_ids)
        self.row_count = rows
        self.col_count = cols
        self.values: list[list[str]] = []
        self.formats: list[str] = []
        self.frozen_rows = 0

    def _pad(self, number: int) -> None:
        while len(self.values) < number:
            self.values.append([])

    def row_values(self, number: int) -> list[str]:
        if number > len(self.values):
            return []
        row = list(self.values[number - 1])
        while row and row[-1] == "":
            row.pop()
        return row

    def get_all_values(self) -> list[list[str]]:
        width = max((len(r) for r in self.values), default=0)
        return [list(r) + [""] * (width - len(r)) for r in self.values]

    def append_row(self, values: list[Any], value_input_option: str = "RAW") -> None:
        self.values.append([render_cell(v) for v in values])

    def append_rows(self, values: list[list[Any]], value_input_option: str = "RAW") -> None:
        for row in values:
            self.append_row(row)

    def insert_rows(self, values: list[list[Any]], row: int = 1, value_input_option: str = "RAW") -> None:
        for offset, new_row in enumerate(values):
            self.values.insert(row - 1 + offset, [render_cell(v) for v in new_row])

    def update(self, range_name: str, values: list[list[Any]], value_input_option: str = "RAW") -> None:
        start = re.match(r"^[A-Z]+(\d+)", range_name)
        number = int(start.group(1))
        self._pad(number)
        self.values[number - 1] = [render_cell(v) for v in values[0]]

    def delete_rows(self, number: int) -> None:
        del self.values[number - 1]

    def clear(self) -> None:
        self.values = []

    def format(self, range_name: str, fmt: dict[str, Any]) -> None:
        self.formats.append(range_name)

    def freeze(self, rows: int = 0) -> None:
        self.frozen_rows = rows

    def update_title(self, title: str) -> None:
        self.title = title


class FakeSpreadsheet:
    def __init__(self, title: str, spreadsheet_id: Optional[str] = None) -> None:
        self.title = title
        self.id = spreadsheet_id or f"sheet-{next(_ids)}"
        self._worksheets = [FakeWorksheet("Sheet1")]
        self.shared: list[tuple[str, str]] = []
        self.reachable = True

    def worksheet(self, title: str) -> FakeWorksheet:
        for ws in self._worksheets:
            if ws.title == title:
                return ws
        raise gspread.exceptions.WorksheetNotFound(title)

    def worksheets(self) -> list[FakeWorksheet]:
        return list(self._worksheets)

    def get_worksheet(self, index: int) -> FakeWorksheet:
        return self._worksheets[index]

    def add_worksheet(self, title: str, rows: int, cols: int) -> FakeWorksheet:
        ws = FakeWorksheet(title, rows, cols)
        self._worksheets.append(ws)
        return ws

    def del_worksheet(self, worksheet: FakeWorksheet) -> None:
        self._worksheets.remove(worksheet)

    def fetch_sheet_metadata(self) -> dict[str, Any]:
        if not self.reachable:
            raise gspread.exceptions.GSpreadException("unreachable")
        return {"properties": {"title": self.title}}

    def share(self, email: str, perm_type: str, role: str, notify: bool = True) -> None:
        self.shared.append((email, role))


class FakeClient:
    def __init__(self) -> None:
        self.spreadsheets: dict[str, FakeSpreadsheet] = {}

    def list_spreadsheet_files(self, title: Optional[str] = None) -> list[dict[str, str]]:
        return [
            {"id": s.id, "name": s.title}
            for s in self.spreadsheets.values()
            if title is None or s.title == title
        ]

    def create(self, title: str) -> FakeSpreadsheet:
        spreadsheet = FakeSpreadsheet(title)
        self.spreadsheets[spreadsheet.id] = spreadsheet
        return spreadsheet

    def open_by_key(self, key: str) -> FakeSpreadsheet:
        if key not in self.spreadsheets:
            raise gspread.exceptions.SpreadsheetNotFound(key)
        return self.spreadsheets[key]

    def copy(self, file_id: str, title: Optional[str] = None, copy_permissions: bool = False) -> FakeSpreadsheet:
        source = self.open_by_key(file_id)
        clone = self.create(title or source.title)
        clone._worksheets = source._worksheets
        return clone


class RecordingBot:
    def __init__(self, fail: bool = False) -> None:
        self.token = "test-token"
        self.fail = fail
        self.sent: list[dict[str, Any]] = []
        self.answers: list[tuple[str, Optional[str]]] = []

    @property
    def configured(self) -> bool:
        return True

    def send_message(self, chat_id: str, text: str, reply_markup: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        if self.fail:
            raise TelegramError("Telegram API error: chat not found")
        self.sent.append({"chat_id": chat_id, "text": text, "reply_markup": reply_markup})
        return {"message_id": len(self.sent)}

    def answer_callback_query(self, callback_query_id: str, text: Optional[str] = None) -> None:
        self.answers.append((callback_query_id, text))


USER_EMAIL = "ada@example.com"


@pytest.fixture(autouse=True)
def _isolated(monkeypatch):
    monkeypatch.setenv("BUDGET_ENV", "development")
    monkeypatch.setenv("BUDGET_TIMEZONE", "UTC")
    monkeypatch.setenv("JWT_SECRET", "test-jwt-secret")
    monkeypatch.setenv("STATE_SECRET", "test-state-secret")
    monkeypatch.setenv("FRONTEND_URL", "https://budget.example.com")
    get_settings.cache_clear()
    connection_store.clear()
    yield
    get_settings.cache_clear()
    connection_store.clear()


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def db(client) -> SheetsDatabase:
    return create_user_database(client, USER_EMAIL, "Ada")


@pytest.fixture
def bot() -> RecordingBot:
    return RecordingBot()
