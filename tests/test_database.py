import pytest

from conftest import USER_EMAIL, FakeClient
from database import (
    RecordNotFound,
    SheetsError,
    TableNotFound,
    backup,
    database_title,
    get_or_create_user_database,
    open_database,
    render_cell,
)
from models import ACCOUNTS, CATEGORIES, CORE_TABLES, ImportMode, ShareRole


def test_new_database_has_core_tables_user_and_settings(db) -> None:
    titles = [ws.title for ws in db.spreadsheet.worksheets()]
    assert titles == [schema.name for schema in CORE_TABLES]

    users = db.find("users")
    assert len(users) == 1
    assert users[0]["email"] == USER_EMAIL
    assert users[0]["name"] == "Ada"

    settings = db.find_by_id("settings", USER_EMAIL)
    assert settings["currency"] == "USD"
    assert settings["dark_mode"] == "FALSE"

    assert db.validate_schema() == {
        "isValid": True,
        "missingTables": [],
        "existingTables": [schema.name for schema in CORE_TABLES],
        "issues": [],
    }


def test_get_or_create_reuses_spreadsheet_by_title(client) -> None:
    first = get_or_create_user_database(client, USER_EMAIL, "Ada")
    second = get_or_create_user_database(client, USER_EMAIL, "Ada")

    assert first.spreadsheet_id == second.spreadsheet_id
    assert list(client.spreadsheets.values())[0].title == database_title(USER_EMAIL)


def test_insert_find_update_delete_roundtrip(db) -> None:
    created = db.insert("categories", {"user_id": USER_EMAIL, "name": "Food", "color": "#FF6B6B"})
    assert created["id"]
    assert created["created_at"].endswith("Z")

    found = db.find("categories", {"user_id": USER_EMAIL, "name": "Food"})
    assert [c["id"] for c in found] == [created["id"]]

    updated = db.update("categories", created["id"], {"name": "Groceries", "id": "hijack"})
    assert updated["id"] == created["id"]
    assert db.find_by_id("categories", created["id"])["name"] == "Groceries"

    db.delete("categories", created["id"])
    assert db.find_by_id("categories", created["id"]) is None
    with pytest.raises(RecordNotFound, match="not found in categories"):
        db.delete("categories", created["id"])


def test_filters_compare_rendered_cell_text(db) -> None:
    db.insert("budgets", {"user_id": USER_EMAIL, "year": 2025, "month": 3, "income": 1500.0})

    assert render_cell(1500.0) == "1500"
    assert render_cell(True) == "TRUE"
    assert len(db.find("budgets", {"year": 2025, "month": 3})) == 1
    assert db.find("budgets", {"year": 2025, "month": 4}) == []


def test_missing_table_raises_table_not_found(db) -> None:
    with pytest.raises(TableNotFound, match="accounts"):
        db.find("accounts")


def test_ensure_table_creates_tab_and_appends_missing_columns(db) -> None:
    assert db.ensure_table(ACCOUNTS) == list(ACCOUNTS.columns)
    assert db.headers("accounts") == list(ACCOUNTS.columns)

    worksheet = db.spreadsheet.worksheet("categories")
    worksheet.values[0] = ["id", "user_id", "name", "color"]
    db._worksheets.clear()

    added = db.ensure_table(CATEGORIES)
    assert added == ["emoji", "created_at", "updated_at"]
    assert db.headers("categories") == ["id", "user_id", "name", "color", "emoji", "created_at", "updated_at"]


def test_validate_schema_reports_missing_tables(db) -> None:
    goals = db.spreadsheet.worksheet("goals")
    db.spreadsheet.del_worksheet(goals)

    result = db.validate_schema()
    assert result["isValid"] is False
    assert result["missingTables"] == ["goals"]

    assert db.setup_schema() == ["goals"]
    assert db.validate_schema()["isValid"] is True


def test_recreate_resets_data(db) -> None:
    db.insert("categories", {"user_id": USER_EMAIL, "name": "Food"})
    db.recreate(USER_EMAIL, "Ada")

    assert db.find("categories") == []
    assert len(db.find("users")) == 1


def test_open_database_translates_missing_spreadsheet() -> None:
    with pytest.raises(SheetsError, match="not found"):
        open_database(FakeClient(), "does-not-exist")


def test_is_accessible_reflects_remote_failures(db) -> None:
    assert db.is_accessible() is True
    db.spreadsheet.reachable = False
    assert db.is_accessible() is False


def test_import_modes(db) -> None:
    header = ["id", "user_id", "name", "emoji", "color", "created_at", "updated_at"]
    rows = [header, ["c1", USER_EMAIL, "Food", "", "", "", ""]]
    assert db.import_rows("categories", rows, ImportMode.append) == 1

    assert db.import_rows("categories", [["c0", USER_EMAIL, "Rent"]], ImportMode.insert) == 1
    assert [c["id"] for c in db.find("categories")] == ["c0", "c1"]

    assert db.import_rows("categories", [["c9", USER_EMAIL, "Fun"]], ImportMode.overwrite) == 1
    assert [c["id"] for c in db.find("categories")] == ["c9"]

    with pytest.raises(ValueError, match="Unknown table"):
        db.import_rows("secrets", rows, ImportMode.append)


def test_export_share_info_and_backup(client, db) -> None:
    db.insert("categories", {"user_id": USER_EMAIL, "name": "Food"})

    exported = db.export(["categories", "accounts"])
    assert [c["name"] for c in exported["categories"]] == ["Food"]
    assert exported["accounts"] == []

    db.share("friend@example.com", ShareRole.editor)
    assert db.spreadsheet.shared == [("friend@example.com", "writer")]

    info = db.info()
    assert info["spreadsheet_id"] == db.spreadsheet_id
    assert info["url"].endswith(db.spreadsheet_id)
    assert {s["title"] for s in info["sheets"]} >= {"users", "settings"}

    result = backup(client, db)
    assert result["backup_spreadsheet_id"] != db.spreadsheet_id
    assert "Backup" in result["title"]
