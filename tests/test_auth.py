import time

import pytest

from auth import (
    InvalidToken,
    UserSession,
    decode_session_token,
    display_name,
    issue_session_token,
    strip_credentials,
)
from config import get_settings, parse_duration
from csrf import generate_state_token, validate_state_token


def _session() -> UserSession:
    return UserSession(
        email="ada@example.com",
        name="Ada",
        spreadsheet_id="sheet-1",
        chat_id="42",
        google_credentials={"access_token": "at", "refresh_token": "rt", "id_token": "drop-me"},
    )


def test_session_token_roundtrip_keeps_only_credential_fields() -> None:
    token = issue_session_token(_session())
    session = decode_session_token(token)

    assert session.email == "ada@example.com"
    assert session.spreadsheet_id == "sheet-1"
    assert session.chat_id == "42"
    assert session.telegram_username is None
    assert session.google_credentials == {"access_token": "at", "refresh_token": "rt"}


def test_expired_token_is_rejected_unless_within_grace() -> None:
    expires = get_settings().jwt_expires_secs
    issued = int(time.time()) - expires - 60
    token = issue_session_token(_session(), now=issued)

    with pytest.raises(InvalidToken, match="Invalid or expired token"):
        decode_session_token(token)
    assert decode_session_token(token, leeway=3600).email == "ada@example.com"


def test_tampered_or_foreign_token_is_rejected(monkeypatch) -> None:
    token = issue_session_token(_session())
    with pytest.raises(InvalidToken):
        decode_session_token(token[:-2] + "xx")

    monkeypatch.setenv("JWT_SECRET", "another-secret")
    get_settings.cache_clear()
    with pytest.raises(InvalidToken):
        decode_session_token(token)


def test_state_token_validation(monkeypatch) -> None:
    token = generate_state_token()
    assert validate_state_token(token) is True
    assert validate_state_token("") is False
    assert validate_state_token(token + "x") is False

    monkeypatch.setenv("STATE_SECRET", "rotated")
    get_settings.cache_clear()
    assert validate_state_token(token) is False


def test_helpers() -> None:
    assert parse_duration("7d", 1) == 7 * 24 * 3600
    assert parse_duration("12h", 1) == 12 * 3600
    assert parse_duration("soon", 99) == 99
    assert display_name({"email": "grace@example.com"}) == "grace"
    assert strip_credentials({"access_token": "a", "expires_at": None}) == {"access_token": "a"}
