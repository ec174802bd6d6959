from conftest import USER_EMAIL
from schemas import SettingsUpdate
from services import SettingsService, UserService


def test_settings_defaults_update_and_reset(db) -> None:
    settings = SettingsService(db, USER_EMAIL)
    assert settings.get() == {
        "currency": "USD",
        "language": "en",
        "dark_mode": False,
        "telegram_notifications": False,
        "telegram_chat_id": None,
    }

    updated = settings.update(SettingsUpdate(currency="eur", dark_mode=True, telegram_chat_id=12345))
    assert updated["currency"] == "EUR"
    assert updated["dark_mode"] is True
    assert updated["telegram_chat_id"] == "12345"
    assert updated["language"] == "en"

    assert settings.reset()["currency"] == "USD"


def test_settings_row_is_created_on_first_access(db) -> None:
    settings = SettingsService(db, "new@example.com")
    assert settings.get()["currency"] == "USD"
    assert db.find_by_id("settings", "new@example.com") is not None


def test_profile_and_telegram_link(db) -> None:
    users = UserService(db)
    users.update_telegram(USER_EMAIL, "ada_l", "987")

    profile = users.profile(USER_EMAIL)
    assert profile["telegram_username"] == "ada_l"
    assert profile["chatId"] == "987"
    assert profile["spreadsheetId"] == db.spreadsheet_id

    users.update_telegram(USER_EMAIL, None, None)
    assert users.profile(USER_EMAIL)["chatId"] is None
