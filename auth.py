import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import gspread
import requests
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.requests_client import OAuth2Session
from authlib.jose import JsonWebToken
from authlib.jose.errors import JoseError
from google.oauth2.credentials import Credentials

from config import get_settings

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

SCOPES = [
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive.file",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
]

# Only what is needed to rebuild Google credentials travels inside the JWT.
CREDENTIAL_FIELDS = ("access_token", "refresh_token", "expires_at", "scope", "token_type")

_jwt = JsonWebToken(["HS256"])


class InvalidToken(ValueError):
    pass


class GoogleAuthFailed(RuntimeError):
    pass


@dataclass(frozen=True)
class UserSession:
    email: str
    name: str
    spreadsheet_id: str
    telegram_username: Optional[str] = None
    chat_id: Optional[str] = None
    google_credentials: dict[str, Any] = field(default_factory=dict)


def strip_credentials(token: dict[str, Any]) -> dict[str, Any]:
    return {key: token[key] for key in CREDENTIAL_FIELDS if token.get(key) is not None}


def issue_session_token(session: UserSession, *, now: Optional[int] = None) -> str:
    settings = get_settings()
    issued_at = int(now if now is not None else time.time())
    payload = {
        "email": session.email,
        "name": session.name,
        "spreadsheet_id": session.spreadsheet_id,
        "telegram_username": session.telegram_username,
        "chat_id": session.chat_id,
        "google_credentials": strip_credentials(session.google_credentials),
        "iat": issued_at,
        "exp": issued_at + settings.jwt_expires_secs,
    }
    token = _jwt.encode({"alg": "HS256", "typ": "JWT"}, payload, settings.jwt_secret)
    return token.decode("ascii")


def decode_session_token(
    token: str, *, leeway: int = 0, now: Optional[int] = None
) -> UserSession:
    settings = get_settings()
    try:
        claims = _jwt.decode(token, settings.jwt_secret)
        claims.validate(now=now, leeway=leeway)
    except JoseError as exc:
        raise InvalidToken("Invalid or expired token") from exc
    if not claims.get("email") or not claims.get("spreadsheet_id"):
        raise InvalidToken("Invalid or expired token")
    return UserSession(
        email=claims["email"],
        name=claims.get("name") or claims["email"],
        spreadsheet_id=claims["spreadsheet_id"],
        telegram_username=claims.get("telegram_username") or None,
        chat_id=claims.get("chat_id") or None,
        google_credentials=dict(claims.get("google_credentials") or {}),
    )


def _oauth_session(token: Optional[dict[str, Any]] = None) -> OAuth2Session:
    settings = get_settings()
    return OAuth2Session(
        settings.google_client_id,
        settings.google_client_secret,
        scope=" ".join(SCOPES),
        redirect_uri=settings.google_redirect_uri,
        token=token,
    )


def authorization_url(state: str) -> str:
    url, _ = _oauth_session().create_authorization_url(
        GOOGLE_AUTH_URL, state=state, access_type="offline", prompt="consent"
    )
    return url


def exchange_code(code: str) -> dict[str, Any]:
    try:
        token = _oauth_session().fetch_token(
            GOOGLE_TOKEN_URL, code=code, timeout=get_settings().http_timeout_secs
        )
    except (AuthlibBaseError, requests.RequestException) as exc:
        logger.error(f"oauth_exchange_failed: error={exc}")
        raise GoogleAuthFailed("Failed to exchange authorization code") from exc
    return dict(token)


def display_name(info: dict[str, Any]) -> str:
    email = info.get("email") or ""
    return info.get("name") or info.get("given_name") or email.split("@")[0]


def fetch_user_info(token: dict[str, Any]) -> tuple[str, str]:
    try:
        response = _oauth_session(token).get(
            GOOGLE_USERINFO_URL, timeout=get_settings().http_timeout_secs
        )
        response.raise_for_status()
        info = response.json()
    except (AuthlibBaseError, requests.RequestException, ValueError) as exc:
        logger.error(f"oauth_userinfo_failed: error={exc}")
        raise GoogleAuthFailed("Failed to get user info") from exc
    email = info.get("email")
    if not email:
        raise GoogleAuthFailed("Google account has no email address")
    return email, display_name(info)


def refresh_credentials(credentials: dict[str, Any]) -> dict[str, Any]:
    refresh_token = credentials.get("refresh_token")
    if not refresh_token:
        return credentials
    try:
        token = _oauth_session().refresh_token(
            GOOGLE_TOKEN_URL,
            refresh_token=refresh_token,
            timeout=get_settings().http_timeout_secs,
        )
    except (AuthlibBaseError, requests.RequestException) as exc:
        logger.error(f"oauth_refresh_failed: error={exc}")
        raise GoogleAuthFailed("Failed to refresh Google credentials") from exc
    refreshed = dict(token)
    refreshed.setdefault("refresh_token", refresh_token)
    return strip_credentials(refreshed)


def google_credentials(token: dict[str, Any]) -> Credentials:
    settings = get_settings()
    expiry = None
    if token.get("expires_at"):
        # google-auth compares against naive UTC datetimes
        expiry = datetime.fromtimestamp(int(token["expires_at"]), timezone.utc).replace(
            tzinfo=None
        )
    return Credentials(
        token=token.get("access_token"),
        refresh_token=token.get("refresh_token"),
        token_uri=GOOGLE_TOKEN_URL,
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
        scopes=SCOPES,
        expiry=expiry,
    )


def sheets_client(token: dict[str, Any]) -> gspread.Client:
    return gspread.authorize(google_credentials(token))
